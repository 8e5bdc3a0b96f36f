"""
M-PESA Daraja API gateway for STK Push collection.

This module provides the MPesaGateway class for interacting with the M-PESA
Daraja API: OAuth token generation, STK Push initiation and STK Push status
queries. It is pure request/response; session state lives in the
settlement coordinator.
"""

import base64
import logging
import time
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from xml.sax.saxutils import escape as xml_escape

import httpx
import pybreaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import settings
from ..exceptions import GatewayRejected, GatewayUnavailable
from ..schemas import QueryResult, QueryStatus
from ..utils.logging import get_logger, log_api_call
from ..utils.money import to_gateway_units
from ..utils.phone import normalize_msisdn

logger = get_logger(__name__)

# Daraja field limits
ACCOUNT_REFERENCE_MAX = 12
TRANSACTION_DESC_MAX = 13

# Query error code meaning "the transaction is being processed"
STILL_PROCESSING_ERROR_CODE = "500.001.1001"


class FailureCategory(str, Enum):
    """Operator-facing category for a non-zero STK result code."""

    CANCELLED_BY_PAYER = "cancelled_by_payer"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    WRONG_AUTHORIZATION = "wrong_authorization"
    REQUEST_EXPIRED = "request_expired"
    UNKNOWN = "unknown"


RESULT_CODE_CATEGORIES: Dict[int, FailureCategory] = {
    1: FailureCategory.INSUFFICIENT_FUNDS,
    1032: FailureCategory.CANCELLED_BY_PAYER,
    2001: FailureCategory.WRONG_AUTHORIZATION,
    1019: FailureCategory.REQUEST_EXPIRED,
    1037: FailureCategory.REQUEST_EXPIRED,
}

_CATEGORY_TEXT = {
    FailureCategory.CANCELLED_BY_PAYER: "Cancelled by payer",
    FailureCategory.INSUFFICIENT_FUNDS: "Insufficient funds",
    FailureCategory.WRONG_AUTHORIZATION: "Wrong M-PESA PIN entered",
    FailureCategory.REQUEST_EXPIRED: "Payment request expired before the payer responded",
}


def categorize_result_code(reason_code: Optional[int]) -> FailureCategory:
    """Map an STK result code to a failure category."""
    if reason_code is None:
        return FailureCategory.UNKNOWN
    return RESULT_CODE_CATEGORIES.get(reason_code, FailureCategory.UNKNOWN)


def describe_failure(reason_code: Optional[int]) -> str:
    """
    Render operator-facing text for a failed STK result code.

    Advisory only; control flow never depends on it.

    Examples:
        >>> describe_failure(1032)
        'Cancelled by payer'
        >>> describe_failure(9999)
        'Payment failed (code 9999)'
    """
    category = categorize_result_code(reason_code)
    if category is FailureCategory.UNKNOWN:
        return f"Payment failed (code {reason_code})"
    return _CATEGORY_TEXT[category]


class MPesaCircuitBreakerListener(pybreaker.CircuitBreakerListener):
    """Custom listener to log M-PESA circuit breaker state changes."""

    def state_change(self, cb, old_state, new_state):
        """Log when circuit breaker state changes."""
        logger.warning(
            f"M-PESA circuit breaker state changed from {old_state.name} to {new_state.name}",
            extra={
                "old_state": old_state.name,
                "new_state": new_state.name,
                "fail_counter": cb.fail_counter,
            },
        )


class _ServerError(Exception):
    """5xx from Daraja; counted by the circuit breaker."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        super().__init__(f"M-PESA returned {response.status_code}")


class MPesaGateway:
    """
    Gateway for M-PESA Daraja API integration.

    Handles OAuth token generation with caching, password generation,
    STK Push initiation and STK Push status queries. Transport failures are
    retried with exponential backoff and tracked by a circuit breaker.
    """

    # Token cache: stores access_token and expiration timestamp
    _token_cache: Dict[str, Any] = {}

    # M-PESA API base URLs
    SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
    PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

    def __init__(
        self,
        environment: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_backoff: float = 1.0,
        breaker: Optional[pybreaker.CircuitBreaker] = None,
    ) -> None:
        """
        Initialize MPesaGateway.

        Args:
            environment: API environment ("sandbox" or "production"),
                         defaults to settings.mpesa_environment
            transport: Optional httpx transport (tests pass a MockTransport)
            timeout: Per-request timeout in seconds
            retry_attempts: Attempts per call on transport errors
            retry_backoff: Exponential backoff multiplier in seconds
            breaker: Circuit breaker; one is created per gateway if omitted
        """
        self.environment = (environment or settings.mpesa_environment).lower()
        self.base_url = (
            self.PRODUCTION_BASE_URL
            if self.environment == "production"
            else self.SANDBOX_BASE_URL
        )
        self.consumer_key = settings.mpesa_consumer_key
        self.consumer_secret = settings.mpesa_consumer_secret
        self.shortcode = settings.mpesa_shortcode
        self.passkey = settings.mpesa_passkey
        self.callback_url = settings.mpesa_callback_url
        self.payment_type = settings.mpesa_payment_type.upper()

        self.timeout = timeout if timeout is not None else settings.mpesa_request_timeout
        self.retry_attempts = retry_attempts or settings.mpesa_retry_attempts
        self.retry_backoff = retry_backoff
        self._transport = transport
        self.breaker = breaker or pybreaker.CircuitBreaker(
            fail_max=settings.mpesa_breaker_fail_max,
            reset_timeout=settings.mpesa_breaker_reset_timeout,
            listeners=[MPesaCircuitBreakerListener()],
        )

        logger.info(
            f"MPesaGateway initialized for {self.environment} environment",
            extra={"environment": self.environment, "base_url": self.base_url},
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
        )

    async def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        headers: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """
        Send one request with retry and circuit breaker protection.

        Retries on network errors and 5xx responses with exponential backoff.
        4xx responses are returned to the caller untouched.

        Raises:
            GatewayUnavailable: If the request cannot complete after retries,
                                or the circuit breaker is open
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((httpx.TransportError, _ServerError)),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, min=0, max=4),
            before_sleep=before_sleep_log(logger, logging.INFO),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await self._send_once(
                        method, path, operation=operation, headers=headers, json=json
                    )

        except pybreaker.CircuitBreakerError as e:
            logger.error(
                "Circuit breaker is OPEN - M-PESA API is unavailable",
                extra={"operation": operation, "error": str(e)},
            )
            raise GatewayUnavailable(operation, "Payment service is temporarily unavailable")

        except httpx.TimeoutException:
            logger.error(
                "M-PESA request timed out",
                extra={"operation": operation, "timeout": self.timeout},
                exc_info=True,
            )
            raise GatewayUnavailable(operation, "Payment service timed out. Please try again.")

        except httpx.TransportError as e:
            logger.error(
                "M-PESA request failed",
                extra={"operation": operation, "error": str(e)},
                exc_info=True,
            )
            raise GatewayUnavailable(operation, f"Payment service unreachable: {e}")

        except _ServerError as e:
            logger.error(
                "M-PESA API returned server error",
                extra={
                    "operation": operation,
                    "status_code": e.response.status_code,
                    "response": e.response.text[:500],
                },
            )
            raise GatewayUnavailable(
                operation, f"Payment service error: {e.response.status_code}"
            )

    async def _send_once(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        headers: Optional[Dict[str, str]],
        json: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        started = time.perf_counter()
        status_code = 0
        error_type = None
        try:
            with self.breaker.calling():
                async with self._client() as client:
                    response = await client.request(method, path, headers=headers, json=json)
                status_code = response.status_code
                # Daraja reports "still processing" as a 500 on the query
                # endpoint; that is an answer, not an outage.
                if response.status_code >= 500 and not _is_still_processing(response):
                    raise _ServerError(response)
                return response
        except Exception as e:
            error_type = type(e).__name__
            raise
        finally:
            log_api_call(
                service="mpesa",
                endpoint=path,
                method=method,
                status_code=status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
                correlation_id=operation,
                error_type=error_type,
            )

    async def get_access_token(self) -> str:
        """
        Get OAuth access token with caching.

        Returns the cached token while it is valid; otherwise requests a new
        one and caches it until 60 seconds before it expires.

        Returns:
            M-PESA OAuth access token

        Raises:
            GatewayUnavailable: If the token endpoint cannot be reached
            GatewayRejected: If the credentials are refused or the response is invalid
        """
        current_time = time.time()
        cached_token = self._token_cache.get("access_token")
        cached_expiry = self._token_cache.get("expires_at", 0)

        if cached_token and current_time < cached_expiry:
            logger.debug(
                "Using cached M-PESA access token",
                extra={"expires_in": int(cached_expiry - current_time)},
            )
            return cached_token

        logger.info("Generating new M-PESA access token")

        credentials = f"{self.consumer_key}:{self.consumer_secret}"
        encoded_credentials = base64.b64encode(credentials.encode()).decode()

        response = await self._send(
            "GET",
            "/oauth/v1/generate?grant_type=client_credentials",
            operation="token",
            headers={"Authorization": f"Basic {encoded_credentials}"},
        )

        if response.status_code >= 400:
            logger.error(
                "M-PESA OAuth request refused",
                extra={"status_code": response.status_code},
            )
            raise GatewayRejected(
                f"M-PESA credentials refused ({response.status_code})",
                error_code=str(response.status_code),
            )

        try:
            data = response.json()
            access_token = data["access_token"]
            expires_in = int(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(
                "Invalid response from M-PESA OAuth API",
                extra={"error": str(e)},
                exc_info=True,
            )
            raise GatewayRejected(f"Invalid OAuth response: {e}")

        self._token_cache["access_token"] = access_token
        self._token_cache["expires_at"] = current_time + expires_in - 60

        logger.info(
            "M-PESA access token generated successfully",
            extra={"expires_in": expires_in},
        )

        return access_token

    def generate_password(self, shortcode: str, passkey: str, timestamp: str) -> str:
        """
        Generate password for STK Push requests.

        Password is base64 encoded string of: shortcode + passkey + timestamp
        """
        raw_password = f"{shortcode}{passkey}{timestamp}"
        return base64.b64encode(raw_password.encode()).decode()

    def generate_timestamp(self) -> str:
        """
        Generate timestamp for STK Push requests.

        Returns:
            Timestamp in YYYYMMDDHHmmss format (e.g., "20250112153045")
        """
        return datetime.now().strftime("%Y%m%d%H%M%S")

    def _sanitize_text(self, text: str, limit: int) -> str:
        """
        Escape XML special characters and truncate to a Daraja field limit.

        Daraja processes these fields through XML, so &, < and > must be
        escaped. Truncation happens before escaping so an entity is never cut.
        """
        if not text:
            return text
        return xml_escape(text.strip()[:limit])

    async def _auth_headers(self) -> Dict[str, str]:
        access_token = await self.get_access_token()
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    async def initiate(
        self,
        phone: str,
        amount: Decimal,
        account_reference: str,
        description: str,
    ) -> Dict[str, Optional[str]]:
        """
        Send an STK Push to the payer's phone.

        Args:
            phone: Payer phone number in any Kenyan format
            amount: Amount to collect; rounded up to whole units
            account_reference: Reference shown to the payer (bill receipt number)
            description: Transaction description

        Returns:
            Dict with "checkout_request_id" and "merchant_request_id"

        Raises:
            GatewayRejected: Invalid phone or amount, or the gateway declined
                             the request
            GatewayUnavailable: Network error, timeout, 5xx or open breaker
        """
        try:
            msisdn = normalize_msisdn(phone)
        except ValueError as e:
            raise GatewayRejected(str(e), error_code="invalid_phone")

        units = to_gateway_units(amount)
        if units <= 0:
            raise GatewayRejected(f"Amount must be positive: {amount}", error_code="invalid_amount")

        logger.info(
            "Initiating STK Push",
            extra={
                "amount": units,
                "account_reference": account_reference,
                "payment_type": self.payment_type,
            },
        )

        headers = await self._auth_headers()
        timestamp = self.generate_timestamp()

        transaction_type = (
            "CustomerBuyGoodsOnline" if self.payment_type == "TILL"
            else "CustomerPayBillOnline"
        )

        # CRITICAL: M-PESA API expects numeric fields as integers, not strings
        payload = {
            "BusinessShortCode": int(self.shortcode),
            "Password": self.generate_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": transaction_type,
            "Amount": units,
            "PartyA": int(msisdn),
            "PartyB": int(self.shortcode),
            "PhoneNumber": int(msisdn),
            "CallBackURL": self.callback_url,
            "AccountReference": self._sanitize_text(account_reference, ACCOUNT_REFERENCE_MAX) or "Payment",
            "TransactionDesc": self._sanitize_text(description, TRANSACTION_DESC_MAX) or "Payment",
        }

        response = await self._send(
            "POST",
            "/mpesa/stkpush/v1/processrequest",
            operation="initiate",
            headers=headers,
            json=payload,
        )
        data = _json_or_empty(response)

        if response.status_code >= 400 or str(data.get("ResponseCode")) != "0":
            error_code = data.get("errorCode") or data.get("ResponseCode") or str(response.status_code)
            message = (
                data.get("errorMessage")
                or data.get("ResponseDescription")
                or f"STK Push rejected ({response.status_code})"
            )
            logger.warning(
                "STK Push rejected by M-PESA",
                extra={"status_code": response.status_code, "error_code": error_code},
            )
            raise GatewayRejected(message, error_code=str(error_code))

        checkout_request_id = data.get("CheckoutRequestID")
        if not checkout_request_id:
            raise GatewayRejected("STK Push response had no CheckoutRequestID")

        logger.info(
            "STK Push initiated successfully",
            extra={
                "checkout_request_id": checkout_request_id,
                "merchant_request_id": data.get("MerchantRequestID"),
            },
        )

        return {
            "checkout_request_id": checkout_request_id,
            "merchant_request_id": data.get("MerchantRequestID"),
        }

    async def query(self, request_id: str) -> QueryResult:
        """
        Query the status of an STK Push.

        Args:
            request_id: CheckoutRequestID returned by initiate()

        Returns:
            QueryResult: pending, succeeded (receipt usually absent; Daraja
            only sends it on the callback) or failed with the result code

        Raises:
            GatewayUnavailable: Network error, timeout, 5xx or open breaker
            GatewayRejected: The query itself was refused (4xx)
        """
        headers = await self._auth_headers()
        timestamp = self.generate_timestamp()
        payload = {
            "BusinessShortCode": int(self.shortcode),
            "Password": self.generate_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": request_id,
        }

        response = await self._send(
            "POST",
            "/mpesa/stkpushquery/v1/query",
            operation="query",
            headers=headers,
            json=payload,
        )

        if _is_still_processing(response):
            logger.debug("STK Push still processing", extra={"checkout_request_id": request_id})
            return QueryResult.pending()

        data = _json_or_empty(response)
        if response.status_code >= 400:
            raise GatewayRejected(
                data.get("errorMessage") or f"STK query rejected ({response.status_code})",
                error_code=data.get("errorCode") or str(response.status_code),
            )

        return parse_query_response(data)


def parse_query_response(data: Dict[str, Any]) -> QueryResult:
    """
    Normalize a Daraja STK query body.

    ``ResultCode`` may arrive as a string or an int; its absence means the
    payer has not answered yet.

    Examples:
        >>> parse_query_response({"ResultCode": "1032", "ResultDesc": "Request cancelled by user"}).reason_code
        1032
    """
    raw_code = data.get("ResultCode")
    if raw_code is None or raw_code == "":
        return QueryResult.pending()

    try:
        result_code = int(raw_code)
    except (TypeError, ValueError):
        logger.warning("Unparseable ResultCode in STK query", extra={"result_code": raw_code})
        return QueryResult.pending()

    if result_code == 0:
        return QueryResult(
            status=QueryStatus.SUCCEEDED,
            receipt_code=data.get("MpesaReceiptNumber"),
            result_desc=data.get("ResultDesc"),
        )

    return QueryResult(
        status=QueryStatus.FAILED,
        reason_code=result_code,
        result_desc=data.get("ResultDesc"),
    )


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _is_still_processing(response: httpx.Response) -> bool:
    if response.status_code < 400:
        return False
    return _json_or_empty(response).get("errorCode") == STILL_PROCESSING_ERROR_CODE
