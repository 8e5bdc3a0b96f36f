"""
Checkout router for Paydesk.

Endpoints an operator terminal uses to settle a bill: open a session, send
an STK push, stage split tenders, link inbound C2B payments and confirm.
Every action answers with the session snapshot; payment errors are fields on
the snapshot, not HTTP errors.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from ..config import settings
from ..exceptions import BillNotFound, SessionNotFound
from ..schemas import (
    AddTenderRequest,
    ConfirmCheckoutRequest,
    InboundNotification,
    ManualReceiptRequest,
    OpenSessionRequest,
    SelectNotificationRequest,
    SessionSnapshot,
    StartPaymentRequest,
)
from ..services.inbound import InboundMatcher
from ..services.settlement import CheckoutSessions, SettlementCoordinator
from ..utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

# Initialize rate limiter (uses client IP address as key)
limiter = Limiter(key_func=get_remote_address)


def get_sessions(request: Request) -> CheckoutSessions:
    """Dependency returning the app's checkout session registry."""
    return request.app.state.sessions


def get_inbound(request: Request) -> InboundMatcher:
    return request.app.state.sessions.inbound


def get_coordinator(
    session_id: str, sessions: CheckoutSessions = Depends(get_sessions)
) -> SettlementCoordinator:
    """
    Resolve the session in the path.

    Raises:
        HTTPException 404: If the session is unknown
    """
    try:
        return sessions.get(session_id)
    except SessionNotFound as e:
        logger.warning("Checkout session not found", extra={"session_id": session_id})
        raise HTTPException(status_code=404, detail=e.message)


@router.post("/sessions", response_model=SessionSnapshot, status_code=status.HTTP_201_CREATED)
async def open_session(
    body: OpenSessionRequest,
    sessions: CheckoutSessions = Depends(get_sessions),
) -> SessionSnapshot:
    """
    Open a checkout session on a bill.

    Raises:
        HTTPException 404: If the bill does not exist
    """
    try:
        coordinator = await sessions.open(body.bill_id, operator=body.operator)
    except BillNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    return coordinator.snapshot()


@router.get("/sessions/{session_id}", response_model=SessionSnapshot)
async def get_session(
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> SessionSnapshot:
    """Current session state with a freshly read bill."""
    try:
        await coordinator.refresh()
    except BillNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    return coordinator.snapshot()


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_session(
    session_id: str,
    sessions: CheckoutSessions = Depends(get_sessions),
) -> None:
    try:
        sessions.close(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.post("/sessions/{session_id}/mpesa", response_model=SessionSnapshot)
@limiter.limit(settings.stk_rate_limit)
async def start_mpesa_payment(
    request: Request,
    body: StartPaymentRequest,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> SessionSnapshot:
    """
    Send an STK push to the payer's phone.

    Returns immediately in AwaitingConfirmation; poll the session (or wait
    for the callback) for the result. Rate limited per client IP.
    """
    logger.info(
        "STK push requested",
        extra={"session_id": coordinator.session_id, "bill_id": coordinator.bill_id},
    )
    return await coordinator.start_payment(body.phone, body.amount)


@router.post("/sessions/{session_id}/cancel", response_model=SessionSnapshot)
async def cancel_payment(
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> SessionSnapshot:
    return await coordinator.cancel_payment()


@router.post("/sessions/{session_id}/reset", response_model=SessionSnapshot)
async def reset_session(
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> SessionSnapshot:
    return await coordinator.reset()


@router.post("/sessions/{session_id}/tenders", response_model=SessionSnapshot)
async def add_tender(
    body: AddTenderRequest,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> SessionSnapshot:
    """Stage a cash, card, bank or credit tender."""
    return await coordinator.add_tender(body.method, body.amount, body.reference)


@router.delete("/sessions/{session_id}/tenders/{index}", response_model=SessionSnapshot)
async def remove_tender(
    index: int,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> SessionSnapshot:
    return await coordinator.remove_tender(index)


@router.delete("/sessions/{session_id}/tenders", response_model=SessionSnapshot)
async def clear_tenders(
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> SessionSnapshot:
    return await coordinator.clear_tenders()


@router.post("/sessions/{session_id}/confirm", response_model=SessionSnapshot)
async def confirm_checkout(
    body: Optional[ConfirmCheckoutRequest] = None,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> SessionSnapshot:
    """Apply all staged tenders to the bill."""
    allow_change = body.allow_change if body else False
    return await coordinator.confirm_checkout(allow_change=allow_change)


@router.post("/sessions/{session_id}/manual-receipt", response_model=SessionSnapshot)
async def enter_manual_receipt(
    body: ManualReceiptRequest,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> SessionSnapshot:
    """Record an M-PESA receipt code read off the payer's confirmation SMS."""
    return await coordinator.enter_manual_receipt(body.receipt_code)


@router.post(
    "/sessions/{session_id}/notifications/{notification_id}",
    response_model=SessionSnapshot,
)
async def select_notification(
    notification_id: str,
    body: Optional[SelectNotificationRequest] = None,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> SessionSnapshot:
    """Link an inbound C2B payment to the session's bill."""
    amount = body.amount if body else None
    return await coordinator.select_notification(notification_id, amount)


@router.get("/notifications", response_model=List[InboundNotification])
async def list_notifications(
    limit: Optional[int] = Query(None, ge=1, le=100),
    inbound: InboundMatcher = Depends(get_inbound),
) -> List[InboundNotification]:
    """Unlinked inbound C2B payments, most recent first."""
    return await inbound.list(limit)
