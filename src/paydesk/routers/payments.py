"""
Payment API router for M-PESA callbacks.

M-PESA posts STK Push results and C2B confirmations here. Both endpoints
always answer 200 with ResultCode 0 so Daraja does not retry; processing
problems are logged instead.
"""

from typing import Dict

from fastapi import APIRouter, Request
from sqlalchemy.exc import IntegrityError

from ..services.callbacks import callback_to_result, parse_callback_payload
from ..services.inbound import SqlInboundSource
from ..utils.logging import get_logger
from ..utils.money import to_decimal

logger = get_logger(__name__)

router = APIRouter()

ACCEPTED = {"ResultCode": "0", "ResultDesc": "Accepted"}


@router.post("/stk/callback", status_code=200)
async def handle_stk_callback(request: Request) -> Dict[str, str]:
    """
    Handle M-PESA STK Push callback.

    Records the result against the stored request (first callback wins) and
    forwards it to the checkout session awaiting it, if any.

    IMPORTANT: Must return 200 OK within 30 seconds to prevent M-PESA retries.

    Returns:
        Success response dict: {"ResultCode": "0", "ResultDesc": "Accepted"}
    """
    sessions = request.app.state.sessions

    try:
        payload = await request.json()
    except ValueError:
        logger.error("STK callback body is not JSON")
        return ACCEPTED

    if not isinstance(payload, dict):
        logger.error("STK callback body is not an object")
        return ACCEPTED

    logger.info("Received STK Push callback", extra={"payload_keys": list(payload.keys())})

    parsed = parse_callback_payload(payload)
    if parsed is None:
        return ACCEPTED

    request_id = parsed["checkout_request_id"]
    recorded = await sessions.store.record_callback(
        request_id,
        result_code=parsed["result_code"],
        result_desc=parsed.get("result_desc"),
        receipt_code=parsed.get("mpesa_receipt"),
        raw_callback=payload,
    )
    if not recorded:
        logger.info(
            "Duplicate or unknown STK callback ignored",
            extra={"checkout_request_id": request_id},
        )
        return ACCEPTED

    coordinator = sessions.find_by_request(request_id)
    if coordinator is None:
        logger.info(
            "No open session for STK callback; result stored only",
            extra={"checkout_request_id": request_id},
        )
        return ACCEPTED

    await coordinator.notify_result(request_id, callback_to_result(parsed))
    return ACCEPTED


@router.post("/c2b/confirmation", status_code=200)
async def handle_c2b_confirmation(request: Request) -> Dict[str, str]:
    """
    Handle M-PESA C2B confirmation callback.

    Stores the collection as an unlinked inbound payment for an operator to
    match. Only applies when inbound payments live in the local database.

    Expected C2B Payload Structure:
        {
            "TransID": "NLJ7RT61SV",
            "TransAmount": "100.00",
            "BillRefNumber": "account123",
            "MSISDN": "254708374149",
            "BusinessShortCode": "600984",
            "TransTime": "20191219102115",
            "FirstName": "John",
            "MiddleName": "",
            "LastName": "Doe"
        }
    """
    source = request.app.state.sessions.inbound.source
    if not isinstance(source, SqlInboundSource):
        logger.warning("C2B confirmation received but inbound payments are external")
        return ACCEPTED

    try:
        payload = await request.json()
    except ValueError:
        logger.error("C2B confirmation body is not JSON")
        return ACCEPTED

    if not isinstance(payload, dict):
        logger.error("C2B confirmation body is not an object")
        return ACCEPTED

    trans_id = payload.get("TransID")
    trans_amount = payload.get("TransAmount")

    if not trans_id:
        logger.error("Missing TransID in C2B payload")
        return ACCEPTED

    try:
        amount = to_decimal(trans_amount)
    except (ArithmeticError, TypeError, ValueError) as e:
        logger.error(
            "Invalid TransAmount format",
            extra={"trans_id": trans_id, "trans_amount": trans_amount, "error": str(e)},
        )
        return ACCEPTED

    if amount <= 0:
        logger.error("Non-positive TransAmount in C2B payload", extra={"trans_id": trans_id})
        return ACCEPTED

    names = [payload.get(k) for k in ("FirstName", "MiddleName", "LastName")]
    payer_name = " ".join(n for n in names if n) or None
    core = {"TransID", "TransAmount", "MSISDN", "BillRefNumber", "FirstName", "MiddleName", "LastName"}

    try:
        await source.record(
            trans_id=trans_id,
            amount=amount,
            msisdn=payload.get("MSISDN"),
            payer_name=payer_name,
            bill_ref_number=payload.get("BillRefNumber"),
            extra={k: v for k, v in payload.items() if k not in core},
        )
    except IntegrityError:
        logger.info("Duplicate C2B confirmation ignored", extra={"trans_id": trans_id})

    return ACCEPTED
