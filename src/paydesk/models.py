"""
SQLAlchemy ORM models for Paydesk.

Defines the database schema using SQLAlchemy 2.0 declarative mapping with
Mapped types and mapped_column. Amounts are stored as integer cents.
Models include Bill, BillPayment, MpesaTransaction and C2BTransaction.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Bill(Base):
    """
    Bill model representing a sale, booking or back-office invoice awaiting payment.

    Status is derived from amount paid vs total: Pending → Partial → Completed.
    Only the payment ledger mutates amount_paid_cents, always with a
    conditional update keyed on the previously read value.
    """

    __tablename__ = "bills"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=lambda: str(uuid.uuid4())
    )
    receipt_no: Mapped[str] = mapped_column(String(40), nullable=False)

    total_cents: Mapped[int] = mapped_column(nullable=False)
    amount_paid_cents: Mapped[int] = mapped_column(nullable=False, default=0)
    change_cents: Mapped[int] = mapped_column(nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="Pending")

    last_payment_method: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)
    last_payment_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    partial_payment_count: Mapped[int] = mapped_column(nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, onupdate=utcnow
    )

    payments: Mapped[List["BillPayment"]] = relationship(
        "BillPayment", back_populates="bill", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('Pending', 'Partial', 'Completed')",
            name="ck_bill_status",
        ),
        CheckConstraint("total_cents >= 0", name="ck_bill_total_non_negative"),
        CheckConstraint("amount_paid_cents >= 0", name="ck_bill_paid_non_negative"),
        CheckConstraint(
            "amount_paid_cents <= total_cents", name="ck_bill_no_overpayment"
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"Bill(id={self.id!r}, receipt_no={self.receipt_no!r}, "
            f"total_cents={self.total_cents}, amount_paid_cents={self.amount_paid_cents}, "
            f"status={self.status!r})"
        )


class BillPayment(Base):
    """
    Append-only payment history: one row per tender applied to a bill.
    """

    __tablename__ = "bill_payments"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=lambda: str(uuid.uuid4())
    )
    bill_id: Mapped[str] = mapped_column(
        ForeignKey("bills.id", ondelete="CASCADE"), nullable=False
    )

    method: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_cents: Mapped[int] = mapped_column(nullable=False)
    external_reference: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    inbound_notification_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    balance_before_cents: Mapped[int] = mapped_column(nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(nullable=False)
    is_partial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    received_by: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    bill: Mapped["Bill"] = relationship("Bill", back_populates="payments")

    __table_args__ = (
        CheckConstraint(
            "method IN ('Cash', 'Card', 'MobileMoney', 'BankTransfer', 'Credit', 'Other')",
            name="ck_bill_payment_method",
        ),
        CheckConstraint("amount_cents > 0", name="ck_bill_payment_amount_positive"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"BillPayment(id={self.id!r}, bill_id={self.bill_id!r}, "
            f"method={self.method!r}, amount_cents={self.amount_cents})"
        )


class MpesaTransaction(Base):
    """
    One outbound STK push attempt, keyed by the gateway's CheckoutRequestID.

    Also holds the raw callback once M-PESA reports the result.
    """

    __tablename__ = "mpesa_transactions"

    checkout_request_id: Mapped[str] = mapped_column(String, primary_key=True)
    merchant_request_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    bill_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("bills.id", ondelete="SET NULL"), nullable=True
    )
    session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    phone_number: Mapped[str] = mapped_column(String(15), nullable=False)
    amount_cents: Mapped[int] = mapped_column(nullable=False)
    account_reference: Mapped[str] = mapped_column(String(40), nullable=False)

    state: Mapped[str] = mapped_column(String(30), nullable=False, default="Created")
    receipt_code: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    result_code: Mapped[Optional[int]] = mapped_column(nullable=True)
    result_desc: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    raw_callback: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "state IN ('Created', 'AwaitingConfirmation', 'Succeeded', 'Failed', 'TimedOut')",
            name="ck_mpesa_transaction_state",
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"MpesaTransaction(checkout_request_id={self.checkout_request_id!r}, "
            f"bill_id={self.bill_id!r}, state={self.state!r})"
        )


class C2BTransaction(Base):
    """
    Inbound collection reported by M-PESA without a prior STK request
    (payer dialled the paybill directly).
    """

    __tablename__ = "c2b_transactions"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=lambda: str(uuid.uuid4())
    )
    trans_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    amount_cents: Mapped[int] = mapped_column(nullable=False)
    msisdn: Mapped[Optional[str]] = mapped_column(String(15), nullable=True)
    payer_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    bill_ref_number: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_linked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    extra: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"C2BTransaction(id={self.id!r}, trans_id={self.trans_id!r}, "
            f"amount_cents={self.amount_cents}, is_linked={self.is_linked})"
        )
