"""
Settlement coordinator.

One coordinator drives one checkout session on one bill: it sends STK
pushes, owns the status poll, stages non-mobile tenders, links inbound C2B
collections and hands every confirmed payment to the ledger exactly once.

State machine::

    Idle -> Sending -> AwaitingConfirmation -> Succeeded | Failed | TimedOut -> Idle

Every state change goes through ``_transition``; a move the table does not
allow is refused, which is how duplicate success signals are discarded.
Errors never escape a coordinator: they are reported on the snapshot.
"""

import time
import uuid
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..exceptions import (
    AlreadyConsumed,
    BillNotFound,
    GatewayRejected,
    GatewayUnavailable,
    InvalidMSISDN,
    InvalidTender,
    NotificationNotFound,
    OverpaymentRejected,
    PaymentDeclined,
    PaymentTimedOut,
    SessionNotFound,
    StaleBillError,
)
from ..schemas import (
    Bill,
    LedgerResult,
    PaymentRequest,
    PaymentRequestState,
    PollOutcome,
    QueryResult,
    QueryStatus,
    SessionSnapshot,
    SessionState,
    StagedTender,
    Tender,
    TenderMethod,
)
from ..utils.logging import get_logger, log_event
from ..utils.money import to_decimal, total
from ..utils.phone import mask_msisdn, normalize_msisdn
from .inbound import InboundMatcher
from .ledger import PaymentLedger
from .mpesa import describe_failure
from .poller import ActivePolls, PollHandle, StatusPoller, placeholder_receipt
from .store import BillStore

logger = get_logger(__name__)

_TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.IDLE: frozenset(
        {SessionState.IDLE, SessionState.SENDING, SessionState.SUCCEEDED}
    ),
    SessionState.SENDING: frozenset(
        {SessionState.IDLE, SessionState.AWAITING_CONFIRMATION, SessionState.FAILED}
    ),
    SessionState.AWAITING_CONFIRMATION: frozenset(
        {
            SessionState.IDLE,
            SessionState.SUCCEEDED,
            SessionState.FAILED,
            SessionState.TIMED_OUT,
        }
    ),
    SessionState.SUCCEEDED: frozenset({SessionState.IDLE}),
    SessionState.FAILED: frozenset({SessionState.IDLE, SessionState.SUCCEEDED}),
    SessionState.TIMED_OUT: frozenset({SessionState.IDLE, SessionState.SUCCEEDED}),
}

_TERMINAL_STATES = frozenset(
    {SessionState.SUCCEEDED, SessionState.FAILED, SessionState.TIMED_OUT}
)

_LEDGER_ERRORS = (InvalidTender, OverpaymentRejected, BillNotFound, StaleBillError)

READY_MESSAGE = "Ready"


class SettlementCoordinator:
    """
    Checkout session for a single bill.

    Args:
        session_id: Session identifier, used as the log correlation ID
        bill_id: Bill being settled
        store: Record store
        gateway: Object exposing ``async initiate(...)``
        poller: Status poller used for STK pushes
        ledger: Payment ledger
        inbound: Inbound C2B matcher
        active_polls: Registry shared by every session of the app
        operator: Staff member recorded on payment history rows
    """

    def __init__(
        self,
        session_id: str,
        bill_id: str,
        *,
        store: BillStore,
        gateway,
        poller: StatusPoller,
        ledger: PaymentLedger,
        inbound: InboundMatcher,
        active_polls: ActivePolls,
        operator: Optional[str] = None,
    ) -> None:
        self.session_id = session_id
        self.bill_id = bill_id
        self.store = store
        self.gateway = gateway
        self.poller = poller
        self.ledger = ledger
        self.inbound = inbound
        self.active_polls = active_polls
        self.operator = operator

        self.state = SessionState.IDLE
        self.message = READY_MESSAGE
        self.request: Optional[PaymentRequest] = None
        self.receipt_code: Optional[str] = None
        self.last_result: Optional[LedgerResult] = None
        self.error: Optional[str] = None
        self.error_type: Optional[str] = None

        self._bill: Optional[Bill] = None
        self._staged: List[Tender] = []
        self._handle: Optional[PollHandle] = None
        # Requests whose amount has been applied to the bill
        self._committed: set = set()
        # Bumped whenever an in-flight initiate must be ignored on return
        self._generation = 0
        self.touched_at = time.monotonic()

    # State helpers

    def _transition(self, target: SessionState, message: str) -> bool:
        if target not in _TRANSITIONS[self.state]:
            logger.info(
                "Refused session transition",
                extra={
                    "session_id": self.session_id,
                    "from_state": self.state.value,
                    "to_state": target.value,
                },
            )
            return False

        previous = self.state
        self.state = target
        self.message = message
        self.touched_at = time.monotonic()
        log_event(
            "Checkout session state changed",
            correlation_id=self.session_id,
            bill_id=self.bill_id,
            from_state=previous.value,
            to_state=target.value,
        )
        return True

    def _set_error(self, error: Exception) -> None:
        self.error = getattr(error, "message", None) or str(error)
        self.error_type = type(error).__name__
        logger.warning(
            "Checkout session error",
            extra={
                "session_id": self.session_id,
                "bill_id": self.bill_id,
                "error_type": self.error_type,
                "error": self.error,
            },
        )

    def _clear_error(self) -> None:
        self.error = None
        self.error_type = None

    def _fail(self, error: Exception) -> SessionSnapshot:
        self._set_error(error)
        return self.snapshot()

    def _cancel_poll(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self.active_polls.discard(self.bill_id, self._handle)

    def _reset_if_terminal(self) -> None:
        if self.state in _TERMINAL_STATES:
            self._transition(SessionState.IDLE, READY_MESSAGE)

    @property
    def staged_total(self) -> Decimal:
        return total(t.amount for t in self._staged)

    async def refresh(self) -> Bill:
        """Re-read the bill from the store."""
        self._bill = await self.store.get_bill(self.bill_id)
        return self._bill

    # STK push flow

    async def start_payment(self, phone: str, amount) -> SessionSnapshot:
        """
        Send an STK push for ``amount`` to ``phone``.

        A request still being sent is never doubled; a request awaiting
        confirmation is cancelled and replaced.
        """
        self._clear_error()

        if self.state == SessionState.SENDING:
            return self._fail(
                GatewayRejected("A payment request is already being sent", error_code="busy")
            )

        if self.state == SessionState.AWAITING_CONFIRMATION:
            self._cancel_poll()
            self._transition(SessionState.IDLE, "Previous payment request replaced")
        else:
            self._reset_if_terminal()

        try:
            try:
                msisdn = normalize_msisdn(phone)
            except ValueError:
                raise InvalidMSISDN(str(phone))

            amount = to_decimal(amount)
            if amount <= 0:
                raise InvalidTender(f"Amount must be greater than zero: {amount}")

            bill = await self.refresh()
            available = bill.outstanding - self.staged_total
            if amount > available:
                raise OverpaymentRejected(self.bill_id, amount, available)
        except (InvalidMSISDN, InvalidTender, OverpaymentRejected, BillNotFound) as e:
            return self._fail(e)

        self._transition(SessionState.SENDING, "Sending payment request...")
        logger.info(
            "Sending STK push",
            extra={
                "session_id": self.session_id,
                "bill_id": self.bill_id,
                "phone_masked": mask_msisdn(msisdn),
                "amount": str(amount),
            },
        )
        self._generation += 1
        generation = self._generation

        try:
            ids = await self.gateway.initiate(
                msisdn, amount, bill.receipt_no, f"Bill {bill.receipt_no}"
            )
        except (GatewayUnavailable, GatewayRejected) as e:
            if generation == self._generation:
                self._transition(SessionState.FAILED, e.message)
                self._set_error(e)
            return self.snapshot()

        request = PaymentRequest(
            id=ids["checkout_request_id"],
            bill_id=self.bill_id,
            phone=msisdn,
            amount=amount,
            account_reference=bill.receipt_no,
            merchant_request_id=ids.get("merchant_request_id"),
        )
        request.advance(PaymentRequestState.AWAITING_CONFIRMATION)
        await self.store.save_payment_request(request, session_id=self.session_id)

        if generation != self._generation or self.state != SessionState.SENDING:
            logger.warning(
                "Payment request was cancelled while being sent",
                extra={"session_id": self.session_id, "checkout_request_id": request.id},
            )
            return self.snapshot()

        self.request = request
        self.receipt_code = None
        self._transition(
            SessionState.AWAITING_CONFIRMATION,
            "Waiting for the payer to enter their M-PESA PIN",
        )
        self._handle = self.poller.start(request.id, self._on_terminal, self._on_cancelled)
        self.active_polls.replace(self.bill_id, self._handle)
        return self.snapshot()

    def _owns(self, request_id: str) -> bool:
        return self.request is not None and self.request.id == request_id

    def _on_cancelled(self, request_id: str) -> None:
        # Only reached for an outside cancel; our own cancels leave Awaiting first
        if self._owns(request_id) and self.state == SessionState.AWAITING_CONFIRMATION:
            self._transition(
                SessionState.IDLE,
                "Payment request superseded by a newer request for this bill",
            )

    async def _on_terminal(self, request_id: str, outcome: PollOutcome) -> None:
        if not self._owns(request_id):
            logger.info(
                "Discarding poll result for a replaced request",
                extra={"session_id": self.session_id, "checkout_request_id": request_id},
            )
            return

        if self._handle is not None:
            self.active_polls.discard(self.bill_id, self._handle)

        await self._settle_safely(
            outcome.state,
            receipt_code=outcome.receipt_code,
            reason_code=outcome.reason_code,
            message=outcome.message,
            attempts=outcome.attempts,
        )

    async def _settle_safely(self, state: PaymentRequestState, **fields) -> None:
        try:
            await self._settle(state, **fields)
        except Exception as e:
            logger.error(
                "Failed to settle payment result",
                extra={
                    "session_id": self.session_id,
                    "checkout_request_id": self.request.id if self.request else None,
                },
                exc_info=True,
            )
            self._set_error(e)

    async def notify_result(self, request_id: str, result: QueryResult) -> SessionSnapshot:
        """
        Feed a result that arrived outside the poll (the STK callback).

        A result for a request this session no longer tracks, or one that
        arrives after the session already settled, is ignored.
        """
        if not self._owns(request_id) or result.status == QueryStatus.PENDING:
            return self.snapshot()

        if self.state != SessionState.AWAITING_CONFIRMATION:
            logger.info(
                "Ignoring late payment result",
                extra={
                    "session_id": self.session_id,
                    "checkout_request_id": request_id,
                    "state": self.state.value,
                },
            )
            return self.snapshot()

        self._cancel_poll()

        if result.status == QueryStatus.SUCCEEDED:
            receipt = result.receipt_code or placeholder_receipt(request_id)
            await self._settle_safely(
                PaymentRequestState.SUCCEEDED,
                receipt_code=receipt,
                message=f"Payment received. Receipt: {receipt}",
            )
        else:
            await self._settle_safely(
                PaymentRequestState.FAILED,
                reason_code=result.reason_code,
                message=describe_failure(result.reason_code),
            )
        return self.snapshot()

    async def _settle(
        self,
        state: PaymentRequestState,
        *,
        receipt_code: Optional[str] = None,
        reason_code: Optional[int] = None,
        message: str = "",
        attempts: int = 0,
    ) -> None:
        request = self.request

        if state == PaymentRequestState.SUCCEEDED:
            if not self._transition(SessionState.SUCCEEDED, message):
                logger.info(
                    "Duplicate success signal discarded",
                    extra={"session_id": self.session_id, "checkout_request_id": request.id},
                )
                return
            request.advance(PaymentRequestState.SUCCEEDED, receipt_code)
            self.receipt_code = receipt_code
            # Money has moved; a ledger failure is reported but the state stands
            await self._commit_request(request, receipt_code)
            await self._record_attempt(
                request.id, PaymentRequestState.SUCCEEDED, receipt_code=receipt_code, result_code=0
            )
            return

        if state == PaymentRequestState.FAILED:
            if not self._transition(SessionState.FAILED, message):
                return
            request.advance(PaymentRequestState.FAILED)
            self._set_error(PaymentDeclined(request.id, reason_code, message))
            await self._record_attempt(
                request.id, PaymentRequestState.FAILED, result_code=reason_code, result_desc=message
            )
            return

        if not self._transition(SessionState.TIMED_OUT, message):
            return
        request.advance(PaymentRequestState.TIMED_OUT)
        self._set_error(PaymentTimedOut(request.id, attempts))
        await self._record_attempt(request.id, PaymentRequestState.TIMED_OUT)

    async def _record_attempt(self, request_id: str, state: PaymentRequestState, **fields) -> None:
        """Audit write for an STK attempt. The bill never depends on it."""
        try:
            await self.store.update_payment_request(request_id, state, **fields)
        except SQLAlchemyError:
            logger.error(
                "Failed to record payment request state",
                extra={
                    "session_id": self.session_id,
                    "checkout_request_id": request_id,
                    "state": state.value,
                },
                exc_info=True,
            )

    async def _commit_request(
        self, request: PaymentRequest, receipt_code: str
    ) -> Optional[LedgerResult]:
        """Apply an STK attempt's amount to the bill, at most once per attempt."""
        if request.id in self._committed:
            logger.warning(
                "Payment request already applied",
                extra={"session_id": self.session_id, "checkout_request_id": request.id},
            )
            return None

        result = await self._commit(
            [
                Tender(
                    method=TenderMethod.MOBILE_MONEY,
                    amount=request.amount,
                    external_reference=receipt_code,
                )
            ]
        )
        if result is not None:
            self._committed.add(request.id)
        return result

    async def _commit(
        self, tenders: List[Tender], allow_change: bool = False
    ) -> Optional[LedgerResult]:
        try:
            result = await self.ledger.apply(
                self.bill_id,
                tenders,
                operator=self.operator,
                session_id=self.session_id,
                allow_change=allow_change,
            )
        except _LEDGER_ERRORS as e:
            self._set_error(e)
            if not isinstance(e, BillNotFound):
                await self.refresh()
            return None

        self.last_result = result
        await self.refresh()
        log_event(
            "Payment committed",
            correlation_id=self.session_id,
            bill_id=self.bill_id,
            new_status=result.new_status.value,
            balance=str(result.balance),
        )
        return result

    async def cancel_payment(self) -> SessionSnapshot:
        """Abandon the current attempt and return to Idle."""
        self._clear_error()
        if self.state == SessionState.SENDING:
            self._generation += 1
        self._cancel_poll()
        self._transition(SessionState.IDLE, "Payment cancelled")
        return self.snapshot()

    async def reset(self) -> SessionSnapshot:
        """Acknowledge a terminal result and return to Idle."""
        self._clear_error()
        self._reset_if_terminal()
        return self.snapshot()

    # Operator-confirmed payments

    async def enter_manual_receipt(self, receipt_code: str) -> SessionSnapshot:
        """
        Record an M-PESA receipt the operator obtained out of band.

        Used after a timeout or failure when the payer shows a confirmation
        SMS. The amount is that of the last payment request.
        """
        self._clear_error()
        receipt_code = (receipt_code or "").strip().upper()
        request = self.request

        if not receipt_code:
            return self._fail(InvalidTender("A receipt code is required"))
        if request is None:
            return self._fail(InvalidTender("There is no payment request to confirm"))
        # A failed or timed-out attempt stays in that state once confirmed here
        if request.state == PaymentRequestState.SUCCEEDED or request.id in self._committed:
            return self._fail(InvalidTender("This payment request is already confirmed"))

        previous = self.state
        if previous == SessionState.AWAITING_CONFIRMATION:
            self._cancel_poll()
        if not self._transition(SessionState.SUCCEEDED, f"Payment recorded. Receipt: {receipt_code}"):
            return self._fail(
                InvalidTender(f"Cannot record a receipt while {previous.value}")
            )

        confirm_attempt = request.state == PaymentRequestState.AWAITING_CONFIRMATION
        if confirm_attempt:
            request.advance(PaymentRequestState.SUCCEEDED, receipt_code)
        self.receipt_code = receipt_code

        result = await self._commit_request(request, receipt_code)
        if confirm_attempt:
            await self._record_attempt(
                request.id, PaymentRequestState.SUCCEEDED, receipt_code=receipt_code
            )
        if result is None:
            self._transition(SessionState.IDLE, "Receipt was not recorded")
        return self.snapshot()

    async def list_unconsumed_notifications(self, limit: Optional[int] = None):
        """Inbound C2B collections available for linking."""
        return await self.inbound.list(limit)

    async def select_notification(
        self, notification_id: str, amount=None
    ) -> SessionSnapshot:
        """
        Link an inbound C2B collection to this bill.

        The collection is applied as a mobile-money tender referencing its
        M-PESA transaction ID, then marked consumed.
        """
        self._clear_error()

        if self.state == SessionState.SENDING:
            return self._fail(
                GatewayRejected("A payment request is being sent", error_code="busy")
            )

        try:
            notification = await self.inbound.get(notification_id)
            apply_amount = notification.amount if amount is None else to_decimal(amount)
            if apply_amount <= 0 or apply_amount > notification.amount:
                raise InvalidTender(
                    f"Amount must be between 0 and {notification.amount}: {apply_amount}"
                )
        except (NotificationNotFound, AlreadyConsumed, InvalidTender) as e:
            return self._fail(e)

        if self.state == SessionState.AWAITING_CONFIRMATION:
            self._cancel_poll()
        elif self.state == SessionState.SUCCEEDED:
            self._transition(SessionState.IDLE, READY_MESSAGE)

        self._transition(
            SessionState.SUCCEEDED,
            f"Inbound payment {notification.external_transaction_id} linked",
        )

        result = await self._commit(
            [
                Tender(
                    method=TenderMethod.MOBILE_MONEY,
                    amount=apply_amount,
                    external_reference=notification.external_transaction_id,
                    inbound_notification_id=notification.id,
                )
            ]
        )
        if result is None:
            self._transition(SessionState.IDLE, "Inbound payment was not linked")
            return self.snapshot()

        self.receipt_code = notification.external_transaction_id
        try:
            await self.inbound.mark_consumed(notification.id)
        except (AlreadyConsumed, NotificationNotFound) as e:
            logger.error(
                "Inbound payment applied but could not be marked consumed",
                extra={
                    "session_id": self.session_id,
                    "bill_id": self.bill_id,
                    "notification_id": notification.id,
                },
            )
            self._set_error(e)
        return self.snapshot()

    # Staged tenders

    async def add_tender(
        self, method: TenderMethod, amount, reference: Optional[str] = None
    ) -> SessionSnapshot:
        """Stage a non-STK tender; staging never exceeds the outstanding balance."""
        self._clear_error()
        try:
            tender = Tender(method=method, amount=amount, external_reference=reference)
        except ValidationError as e:
            return self._fail(InvalidTender(e.errors()[0]["msg"]))

        if tender.method == TenderMethod.MOBILE_MONEY and not tender.external_reference:
            return self._fail(
                InvalidTender("Mobile money tenders need an M-PESA receipt code")
            )

        try:
            bill = await self.refresh()
        except BillNotFound as e:
            return self._fail(e)

        available = bill.outstanding - self.staged_total
        if tender.amount > available:
            return self._fail(OverpaymentRejected(self.bill_id, tender.amount, available))

        self._staged.append(tender)
        return self.snapshot()

    async def remove_tender(self, index: int) -> SessionSnapshot:
        self._clear_error()
        if not 0 <= index < len(self._staged):
            return self._fail(InvalidTender(f"No staged tender at position {index}"))
        self._staged.pop(index)
        return self.snapshot()

    async def clear_tenders(self) -> SessionSnapshot:
        self._clear_error()
        self._staged.clear()
        return self.snapshot()

    async def confirm_checkout(self, allow_change: bool = False) -> SessionSnapshot:
        """Apply every staged tender to the bill in one ledger call."""
        self._clear_error()
        if not self._staged:
            return self._fail(InvalidTender("No tenders staged"))

        result = await self._commit(list(self._staged), allow_change=allow_change)
        if result is not None:
            self._staged.clear()
            if result.change > 0:
                self.message = f"Payment recorded. Change due: {result.change}"
            else:
                self.message = f"Payment recorded. Balance: {result.balance}"
        return self.snapshot()

    # Views

    def snapshot(self) -> SessionSnapshot:
        bill = self._bill
        return SessionSnapshot(
            session_id=self.session_id,
            bill_id=self.bill_id,
            receipt_no=bill.receipt_no if bill else None,
            state=self.state,
            message=self.message,
            payment_request_id=self.request.id if self.request else None,
            receipt_code=self.receipt_code,
            total_amount=bill.total_amount if bill else None,
            amount_paid=bill.amount_paid if bill else None,
            outstanding=bill.outstanding if bill else None,
            bill_status=bill.status if bill else None,
            staged_tenders=[
                StagedTender(
                    index=i,
                    method=t.method,
                    amount=t.amount,
                    external_reference=t.external_reference,
                )
                for i, t in enumerate(self._staged)
            ],
            staged_total=self.staged_total,
            last_result=self.last_result,
            error=self.error,
            error_type=self.error_type,
        )

    async def wait(self) -> SessionSnapshot:
        """Wait for the current poll, including its commit, to finish."""
        if self._handle is not None:
            await self._handle.wait()
        return self.snapshot()

    def close(self) -> None:
        self._cancel_poll()
        self._generation += 1


class CheckoutSessions:
    """
    Registry of open checkout sessions.

    Owns the shared ActivePolls registry so cancel-and-replace works across
    sessions opened on the same bill.
    """

    def __init__(
        self,
        store: BillStore,
        gateway,
        poller: StatusPoller,
        ledger: PaymentLedger,
        inbound: InboundMatcher,
        idle_ttl: Optional[float] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.poller = poller
        self.ledger = ledger
        self.inbound = inbound
        self.idle_ttl = settings.session_idle_ttl_seconds if idle_ttl is None else idle_ttl
        self.active_polls = ActivePolls()
        self._sessions: Dict[str, SettlementCoordinator] = {}

    def evict_expired(self) -> List[str]:
        """
        Drop sessions untouched for longer than ``idle_ttl``.

        Sessions still sending or awaiting confirmation are kept whatever
        their age.

        Returns:
            IDs of the evicted sessions
        """
        cutoff = time.monotonic() - self.idle_ttl
        expired = [
            session_id
            for session_id, coordinator in self._sessions.items()
            if coordinator.touched_at < cutoff
            and coordinator.state
            not in (SessionState.SENDING, SessionState.AWAITING_CONFIRMATION)
        ]
        for session_id in expired:
            self._sessions.pop(session_id).close()
        if expired:
            logger.info("Evicted idle checkout sessions", extra={"count": len(expired)})
        return expired

    async def open(self, bill_id: str, operator: Optional[str] = None) -> SettlementCoordinator:
        """
        Open a session on a bill.

        Raises:
            BillNotFound: Unknown bill
        """
        self.evict_expired()
        coordinator = SettlementCoordinator(
            str(uuid.uuid4()),
            bill_id,
            store=self.store,
            gateway=self.gateway,
            poller=self.poller,
            ledger=self.ledger,
            inbound=self.inbound,
            active_polls=self.active_polls,
            operator=operator,
        )
        await coordinator.refresh()
        self._sessions[coordinator.session_id] = coordinator
        log_event(
            "Checkout session opened",
            correlation_id=coordinator.session_id,
            bill_id=bill_id,
        )
        return coordinator

    def get(self, session_id: str) -> SettlementCoordinator:
        try:
            coordinator = self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(session_id)
        coordinator.touched_at = time.monotonic()
        return coordinator

    def find_by_request(self, request_id: str) -> Optional[SettlementCoordinator]:
        """Session whose current payment request has this CheckoutRequestID."""
        self.evict_expired()
        for coordinator in self._sessions.values():
            if coordinator.request is not None and coordinator.request.id == request_id:
                return coordinator
        return None

    def close(self, session_id: str) -> None:
        coordinator = self.get(session_id)
        coordinator.close()
        del self._sessions[session_id]
        log_event("Checkout session closed", correlation_id=session_id)

    def close_all(self) -> None:
        for coordinator in self._sessions.values():
            coordinator.close()
        self._sessions.clear()
        self.active_polls.cancel_all()
