"""
Custom exception classes for Paydesk.

This module defines domain-specific exceptions for the payment collection
and reconciliation core. Services raise them; the settlement coordinator
turns them into session state the operator can see.
"""

from decimal import Decimal
from typing import Optional


class BillNotFound(Exception):
    """
    Exception raised when a bill cannot be found.

    Attributes:
        bill_id: The ID of the bill that was not found
        message: Explanation of the error
    """

    def __init__(self, bill_id: str, message: str = "Bill not found") -> None:
        self.bill_id = bill_id
        self.message = f"{message}: {bill_id}"
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return string representation of the exception."""
        return f"BillNotFound(bill_id={self.bill_id}, message={self.message})"


class GatewayUnavailable(Exception):
    """
    Exception raised when the payment gateway cannot be reached.

    Covers network errors, timeouts, 5xx responses and an open circuit
    breaker. Retryable by the operator.

    Attributes:
        operation: Gateway operation that failed ("initiate", "query", "token")
        message: Explanation of the error
    """

    def __init__(
        self, operation: str, message: str = "Payment gateway unavailable"
    ) -> None:
        self.operation = operation
        self.message = message
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return string representation of the exception."""
        return f"GatewayUnavailable(operation={self.operation}, message={self.message})"


class GatewayRejected(Exception):
    """
    Exception raised when the gateway validated and declined a request.

    Not retryable without the operator correcting inputs (phone number,
    shortcode configuration, etc.).

    Attributes:
        error_code: Gateway error code, if any
        message: Explanation of the error
    """

    def __init__(
        self,
        message: str = "Payment request rejected by gateway",
        error_code: Optional[str] = None,
    ) -> None:
        self.error_code = error_code
        self.message = message
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return string representation of the exception."""
        return f"GatewayRejected(error_code={self.error_code}, message={self.message})"


class PaymentDeclined(Exception):
    """
    Exception raised when the payer declined or failed to complete a payment.

    Attributes:
        request_id: Gateway request ID
        reason_code: Gateway result code
        reason: Operator-facing reason text
    """

    def __init__(self, request_id: str, reason_code: Optional[int], reason: str) -> None:
        self.request_id = request_id
        self.reason_code = reason_code
        self.reason = reason
        self.message = f"Payment {request_id} declined: {reason}"
        super().__init__(self.message)


class PaymentTimedOut(Exception):
    """Exception raised when polling exhausted its attempts without a result."""

    def __init__(self, request_id: str, attempts: int) -> None:
        self.request_id = request_id
        self.attempts = attempts
        self.message = f"No result for payment {request_id} after {attempts} checks"
        super().__init__(self.message)


class OverpaymentRejected(Exception):
    """
    Exception raised when tenders would push a bill past its total.

    Attributes:
        bill_id: The bill being paid
        attempted: Sum of the tenders
        outstanding: Balance still due on the bill
    """

    def __init__(self, bill_id: str, attempted: Decimal, outstanding: Decimal) -> None:
        self.bill_id = bill_id
        self.attempted = attempted
        self.outstanding = outstanding
        self.message = (
            f"Payment of {attempted} exceeds outstanding balance "
            f"{outstanding} on bill {bill_id}"
        )
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return string representation of the exception."""
        return (
            f"OverpaymentRejected(bill_id={self.bill_id}, attempted={self.attempted}, "
            f"outstanding={self.outstanding})"
        )


class InvalidTender(ValueError):
    """Exception raised for an empty tender list or a non-positive amount."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)


class StaleBillError(Exception):
    """
    Exception raised when a conditional bill update lost a race.

    The bill's amount paid changed between read and write.
    """

    def __init__(self, bill_id: str) -> None:
        self.bill_id = bill_id
        self.message = f"Bill {bill_id} was updated concurrently"
        super().__init__(self.message)


class AlreadyConsumed(Exception):
    """
    Exception raised when an inbound notification has already been linked.

    Attributes:
        notification_id: The inbound notification ID
    """

    def __init__(self, notification_id: str) -> None:
        self.notification_id = notification_id
        self.message = f"Inbound payment {notification_id} has already been linked"
        super().__init__(self.message)


class NotificationNotFound(Exception):
    """Exception raised when an inbound notification does not exist."""

    def __init__(self, notification_id: str) -> None:
        self.notification_id = notification_id
        self.message = f"Inbound payment not found: {notification_id}"
        super().__init__(self.message)


class SessionNotFound(Exception):
    """Exception raised when a checkout session ID is unknown."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.message = f"Checkout session not found: {session_id}"
        super().__init__(self.message)


class InvalidMSISDN(Exception):
    """
    Exception raised when a phone number (MSISDN) is invalid.

    Attributes:
        msisdn: The invalid MSISDN
        message: Explanation of the error
    """

    def __init__(self, msisdn: str, message: str = "Invalid MSISDN format") -> None:
        self.msisdn = msisdn
        self.message = f"{message}: {msisdn}"
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return string representation of the exception."""
        return f"InvalidMSISDN(msisdn={self.msisdn}, message={self.message})"
