"""
STK Push callback intake.

M-PESA posts the final result of every STK Push to the callback URL. The
callback is the only place the receipt number arrives, so it is recorded
against the stored request and consulted before asking Daraja again.
"""

from typing import Any, Dict, Optional

from ..schemas import QueryResult, QueryStatus
from ..utils.logging import get_logger
from .mpesa import MPesaGateway
from .store import BillStore

logger = get_logger(__name__)


def parse_callback_payload(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Parse M-PESA STK Push callback payload.

    Extracts relevant fields from the callback structure:
    - Body.stkCallback.MerchantRequestID
    - Body.stkCallback.CheckoutRequestID
    - Body.stkCallback.ResultCode
    - Body.stkCallback.ResultDesc
    - Body.stkCallback.CallbackMetadata.Item (if ResultCode == 0)

    Args:
        payload: Raw callback payload from M-PESA

    Returns:
        Parsed dict with extracted fields, or None if parsing fails

    Example successful callback:
        {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": "29115-34620561-1",
                    "CheckoutRequestID": "ws_CO_191220191020363925",
                    "ResultCode": 0,
                    "ResultDesc": "The service request is processed successfully.",
                    "CallbackMetadata": {
                        "Item": [
                            {"Name": "Amount", "Value": 1.00},
                            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                            {"Name": "TransactionDate", "Value": 20191219102115},
                            {"Name": "PhoneNumber", "Value": 254708374149}
                        ]
                    }
                }
            }
        }
    """
    try:
        stk_callback = payload.get("Body", {}).get("stkCallback", {})

        if not stk_callback:
            logger.warning("No stkCallback found in payload")
            return None

        checkout_request_id = stk_callback.get("CheckoutRequestID")
        result_code = stk_callback.get("ResultCode")

        if not checkout_request_id:
            logger.warning("No CheckoutRequestID in callback")
            return None

        if result_code is None:
            logger.warning("No ResultCode in callback")
            return None

        parsed = {
            "merchant_request_id": stk_callback.get("MerchantRequestID"),
            "checkout_request_id": checkout_request_id,
            "result_code": int(result_code),
            "result_desc": stk_callback.get("ResultDesc"),
            "mpesa_receipt": None,
        }

        if parsed["result_code"] == 0:
            items = stk_callback.get("CallbackMetadata", {}).get("Item", [])
            metadata = {item.get("Name"): item.get("Value") for item in items if item.get("Name")}

            parsed["amount"] = metadata.get("Amount")
            parsed["mpesa_receipt"] = metadata.get("MpesaReceiptNumber")
            parsed["transaction_date"] = metadata.get("TransactionDate")

        logger.info(
            "Parsed STK callback",
            extra={
                "checkout_request_id": checkout_request_id,
                "result_code": parsed["result_code"],
                "mpesa_receipt": parsed["mpesa_receipt"],
            },
        )
        return parsed

    except (KeyError, TypeError, AttributeError, ValueError) as e:
        logger.error(
            "Failed to parse callback payload",
            extra={"error": str(e), "payload_keys": list(payload.keys())},
            exc_info=True,
        )
        return None


def callback_to_result(parsed: Dict[str, Any]) -> QueryResult:
    """Convert a parsed callback into the same shape a status query returns."""
    if parsed["result_code"] == 0:
        return QueryResult(
            status=QueryStatus.SUCCEEDED,
            receipt_code=parsed.get("mpesa_receipt"),
            result_desc=parsed.get("result_desc"),
        )
    return QueryResult(
        status=QueryStatus.FAILED,
        reason_code=parsed["result_code"],
        result_desc=parsed.get("result_desc"),
    )


class CallbackFirstGateway:
    """
    Gateway wrapper whose query() checks recorded callbacks before Daraja.

    A recorded callback is authoritative and carries the receipt number,
    which the Daraja query endpoint never returns.
    """

    def __init__(self, gateway: MPesaGateway, store: BillStore) -> None:
        self.gateway = gateway
        self.store = store

    async def initiate(self, phone, amount, account_reference, description):
        return await self.gateway.initiate(phone, amount, account_reference, description)

    async def query(self, request_id: str) -> QueryResult:
        record = await self.store.get_payment_request(request_id)
        if record is not None and record.result_code is not None:
            logger.debug(
                "Using recorded callback result",
                extra={"checkout_request_id": request_id, "result_code": record.result_code},
            )
            if record.result_code == 0:
                return QueryResult(
                    status=QueryStatus.SUCCEEDED,
                    receipt_code=record.receipt_code,
                    result_desc=record.result_desc,
                )
            return QueryResult(
                status=QueryStatus.FAILED,
                reason_code=record.result_code,
                result_desc=record.result_desc,
            )

        return await self.gateway.query(request_id)
