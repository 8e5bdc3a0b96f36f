"""
Pydantic schemas for the payment core.

Defines Pydantic v2 models for domain values passed between services
(tenders, bills, gateway results, poll outcomes, session snapshots) and for
HTTP request bodies. Money is Decimal with two places throughout.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils.money import to_decimal


class TenderMethod(str, Enum):
    """Payment instrument used for a tender."""

    CASH = "Cash"
    CARD = "Card"
    MOBILE_MONEY = "MobileMoney"
    BANK_TRANSFER = "BankTransfer"
    CREDIT = "Credit"
    OTHER = "Other"


class BillStatus(str, Enum):
    """Payment status of a bill."""

    PENDING = "Pending"
    PARTIAL = "Partial"
    COMPLETED = "Completed"

    @classmethod
    def classify(cls, amount_paid: Decimal, total_amount: Decimal) -> "BillStatus":
        """
        Derive the status from amount paid vs total.

        Examples:
            >>> BillStatus.classify(Decimal("400"), Decimal("1000"))
            <BillStatus.PARTIAL: 'Partial'>
        """
        if amount_paid >= total_amount:
            return cls.COMPLETED
        if amount_paid > 0:
            return cls.PARTIAL
        return cls.PENDING


class PaymentRequestState(str, Enum):
    """Lifecycle of one STK push attempt."""

    CREATED = "Created"
    AWAITING_CONFIRMATION = "AwaitingConfirmation"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_REQUEST_STATES


_TERMINAL_REQUEST_STATES = frozenset(
    {
        PaymentRequestState.SUCCEEDED,
        PaymentRequestState.FAILED,
        PaymentRequestState.TIMED_OUT,
    }
)

_REQUEST_ORDER = {
    PaymentRequestState.CREATED: 0,
    PaymentRequestState.AWAITING_CONFIRMATION: 1,
    PaymentRequestState.SUCCEEDED: 2,
    PaymentRequestState.FAILED: 2,
    PaymentRequestState.TIMED_OUT: 2,
}


class SessionState(str, Enum):
    """State of a checkout session's mobile-money collection."""

    IDLE = "Idle"
    SENDING = "Sending"
    AWAITING_CONFIRMATION = "AwaitingConfirmation"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"


class QueryStatus(str, Enum):
    """Outcome category of a single gateway status query."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Tender(BaseModel):
    """
    One payment instrument's contribution toward a bill.

    Tenders are transient; applying them writes one history row each.
    """

    model_config = ConfigDict(frozen=True)

    method: TenderMethod
    amount: Decimal = Field(..., description="Tender amount, greater than zero")
    external_reference: Optional[str] = Field(
        None, description="M-PESA receipt code or bank reference"
    )
    inbound_notification_id: Optional[str] = Field(
        None, description="Set when the tender was sourced from a C2B record"
    )

    @field_validator("amount", mode="before")
    @classmethod
    def quantize_amount(cls, v: Any) -> Decimal:
        """Round the amount to cents."""
        return to_decimal(v)

    @field_validator("amount")
    @classmethod
    def validate_amount_positive(cls, v: Decimal) -> Decimal:
        """Validate the amount is greater than zero."""
        if v <= 0:
            raise ValueError("Tender amount must be greater than zero")
        return v

    @field_validator("external_reference")
    @classmethod
    def strip_reference(cls, v: Optional[str]) -> Optional[str]:
        """Normalize blank references to None."""
        if v is None:
            return None
        v = v.strip().upper()
        return v or None


class Bill(BaseModel):
    """
    Read model of a bill as stored by the record store.
    """

    id: str
    receipt_no: str
    total_amount: Decimal = Field(..., ge=0)
    amount_paid: Decimal = Field(Decimal("0.00"), ge=0)
    status: BillStatus = BillStatus.PENDING
    last_payment_method: Optional[str] = None
    last_payment_at: Optional[datetime] = None
    partial_payment_count: int = 0

    @property
    def outstanding(self) -> Decimal:
        """Balance still due, never negative."""
        return max(Decimal("0.00"), self.total_amount - self.amount_paid)


class LedgerResult(BaseModel):
    """Result of applying tenders to a bill."""

    bill_id: str
    new_amount_paid: Decimal
    new_status: BillStatus
    change: Decimal = Decimal("0.00")
    balance: Decimal = Decimal("0.00")
    tenders: List[Tender] = Field(default_factory=list)


class QueryResult(BaseModel):
    """Normalized answer from a gateway status query."""

    status: QueryStatus
    receipt_code: Optional[str] = None
    reason_code: Optional[int] = None
    result_desc: Optional[str] = None

    @classmethod
    def pending(cls) -> "QueryResult":
        return cls(status=QueryStatus.PENDING)


class PaymentRequest(BaseModel):
    """
    One outbound mobile-money collection attempt.

    ``id`` is the gateway's CheckoutRequestID and is assigned once, at
    initiation. ``receipt_code`` is set if and only if the state is
    Succeeded.
    """

    id: str
    bill_id: str
    phone: str
    amount: Decimal
    account_reference: str
    merchant_request_id: Optional[str] = None
    state: PaymentRequestState = PaymentRequestState.CREATED
    receipt_code: Optional[str] = None

    @model_validator(mode="after")
    def check_receipt_matches_state(self) -> "PaymentRequest":
        succeeded = self.state == PaymentRequestState.SUCCEEDED
        if succeeded != (self.receipt_code is not None):
            raise ValueError("receipt_code must be set if and only if state is Succeeded")
        return self

    def advance(
        self, state: PaymentRequestState, receipt_code: Optional[str] = None
    ) -> None:
        """
        Move to ``state``; transitions only go forward.

        Raises:
            ValueError: On a backward move or a move out of a terminal state
        """
        if self.state.is_terminal or _REQUEST_ORDER[state] < _REQUEST_ORDER[self.state]:
            raise ValueError(
                f"Cannot move payment request from {self.state.value} to {state.value}"
            )
        if (state == PaymentRequestState.SUCCEEDED) != (receipt_code is not None):
            raise ValueError("receipt_code must be set if and only if state is Succeeded")
        self.state = state
        self.receipt_code = receipt_code


class PollOutcome(BaseModel):
    """Terminal report from the status poller."""

    request_id: str
    state: PaymentRequestState
    receipt_code: Optional[str] = None
    reason_code: Optional[int] = None
    message: str = ""
    attempts: int = 0
    placeholder_receipt: bool = False


class InboundNotification(BaseModel):
    """
    A payment the gateway reported without a matching STK request (C2B).

    Producer-specific columns that are not part of the core record are kept
    in ``extra``.
    """

    id: str
    external_transaction_id: str
    amount: Decimal
    payer_msisdn: Optional[str] = None
    payer_name: Optional[str] = None
    consumed: bool = False
    created_at: Optional[datetime] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class StagedTender(BaseModel):
    """Tender shown in a session snapshot."""

    index: int
    method: TenderMethod
    amount: Decimal
    external_reference: Optional[str] = None


class SessionSnapshot(BaseModel):
    """
    Render-ready view of a checkout session.

    Errors are reported here rather than raised: ``error`` holds the
    operator-facing text and ``error_type`` the exception class name.
    """

    session_id: str
    bill_id: str
    receipt_no: Optional[str] = None
    state: SessionState
    message: str
    payment_request_id: Optional[str] = None
    receipt_code: Optional[str] = None
    total_amount: Optional[Decimal] = None
    amount_paid: Optional[Decimal] = None
    outstanding: Optional[Decimal] = None
    bill_status: Optional[BillStatus] = None
    staged_tenders: List[StagedTender] = Field(default_factory=list)
    staged_total: Decimal = Decimal("0.00")
    last_result: Optional[LedgerResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


# HTTP request bodies


class OpenSessionRequest(BaseModel):
    """Request body for opening a checkout session on a bill."""

    bill_id: str = Field(..., min_length=1)
    operator: Optional[str] = Field(None, max_length=60)


class StartPaymentRequest(BaseModel):
    """Request body for sending an STK push."""

    phone: str = Field(..., description="Payer phone number", examples=["0712345678"])
    amount: Decimal = Field(..., gt=0, examples=[1000])


class AddTenderRequest(BaseModel):
    """Request body for staging a tender."""

    method: TenderMethod
    amount: Decimal = Field(..., gt=0)
    reference: Optional[str] = Field(None, max_length=40)


class ConfirmCheckoutRequest(BaseModel):
    """Request body for applying staged tenders."""

    allow_change: bool = Field(
        False, description="Pay in full: return cash in excess of the balance as change"
    )


class ManualReceiptRequest(BaseModel):
    """Request body for an out-of-band M-PESA receipt code."""

    receipt_code: str = Field(..., min_length=6, max_length=20, examples=["RJX9KQ2L1M"])


class SelectNotificationRequest(BaseModel):
    """Request body for linking an inbound C2B payment."""

    amount: Optional[Decimal] = Field(
        None, gt=0, description="Portion to apply; defaults to the full collection"
    )
