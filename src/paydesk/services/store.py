"""
Record store for bills, payment history and STK push attempts.

Every mutation of a shared row is a single conditional statement: bills are
updated with a compare-and-swap on amount_paid_cents, callbacks are recorded
only while no result is stored yet.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import BillNotFound, StaleBillError
from ..models import Bill as BillRow
from ..models import BillPayment, MpesaTransaction
from ..schemas import Bill, BillStatus, PaymentRequest, PaymentRequestState
from ..utils.logging import get_logger
from ..utils.money import from_cents, to_cents

logger = get_logger(__name__)


@dataclass
class BillUpdate:
    """New values for a bill, applied only if amount paid is unchanged."""

    amount_paid: Decimal
    status: BillStatus
    last_payment_method: str
    last_payment_at: datetime
    change: Decimal
    payment_count: int


@dataclass
class HistoryEntry:
    """One payment history row to append alongside a bill update."""

    method: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    external_reference: Optional[str] = None
    inbound_notification_id: Optional[str] = None
    session_id: Optional[str] = None
    received_by: Optional[str] = None


def _bill_from_row(row: BillRow) -> Bill:
    return Bill(
        id=row.id,
        receipt_no=row.receipt_no,
        total_amount=from_cents(row.total_cents),
        amount_paid=from_cents(row.amount_paid_cents),
        status=BillStatus(row.status),
        last_payment_method=row.last_payment_method,
        last_payment_at=row.last_payment_at,
        partial_payment_count=row.partial_payment_count,
    )


class BillStore:
    """
    SQLAlchemy-backed record store.

    Args:
        session_factory: Async session factory bound to the payments database
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add_bill(
        self,
        receipt_no: str,
        total_amount: Decimal,
        bill_id: Optional[str] = None,
        amount_paid: Decimal = Decimal("0.00"),
    ) -> Bill:
        """
        Insert a bill. Bills normally come from the sale or booking flow;
        this is the store-side entry point that flow uses.
        """
        row = BillRow(
            receipt_no=receipt_no,
            total_cents=to_cents(total_amount),
            amount_paid_cents=to_cents(amount_paid),
            status=BillStatus.classify(amount_paid, total_amount).value,
        )
        if bill_id:
            row.id = bill_id

        async with self._session_factory() as session:
            async with session.begin():
                session.add(row)

        logger.info(
            "Bill created",
            extra={"bill_id": row.id, "receipt_no": receipt_no, "total_cents": row.total_cents},
        )
        return _bill_from_row(row)

    async def get_bill(self, bill_id: str) -> Bill:
        """
        Read a bill fresh from the database.

        Raises:
            BillNotFound: If no bill has this ID
        """
        async with self._session_factory() as session:
            row = await session.get(BillRow, bill_id)
            if row is None:
                raise BillNotFound(bill_id)
            return _bill_from_row(row)

    async def commit_payment(
        self,
        bill_id: str,
        expected_amount_paid: Decimal,
        bill_update: BillUpdate,
        history: Sequence[HistoryEntry],
    ) -> None:
        """
        Update a bill and append its payment history in one transaction.

        The update only matches while amount_paid still equals
        ``expected_amount_paid``.

        Raises:
            StaleBillError: If another session changed the bill since it was read
        """
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(BillRow)
                    .where(
                        BillRow.id == bill_id,
                        BillRow.amount_paid_cents == to_cents(expected_amount_paid),
                    )
                    .values(
                        amount_paid_cents=to_cents(bill_update.amount_paid),
                        status=bill_update.status.value,
                        last_payment_method=bill_update.last_payment_method,
                        last_payment_at=bill_update.last_payment_at,
                        change_cents=to_cents(bill_update.change),
                        partial_payment_count=bill_update.payment_count,
                        updated_at=datetime.now(timezone.utc),
                    )
                )

                if result.rowcount != 1:
                    logger.info(
                        "Conditional bill update matched no row",
                        extra={
                            "bill_id": bill_id,
                            "expected_paid_cents": to_cents(expected_amount_paid),
                        },
                    )
                    raise StaleBillError(bill_id)

                session.add_all(
                    BillPayment(
                        bill_id=bill_id,
                        method=entry.method,
                        amount_cents=to_cents(entry.amount),
                        external_reference=entry.external_reference,
                        inbound_notification_id=entry.inbound_notification_id,
                        balance_before_cents=to_cents(entry.balance_before),
                        balance_after_cents=to_cents(entry.balance_after),
                        is_partial=entry.balance_after > 0,
                        session_id=entry.session_id,
                        received_by=entry.received_by,
                    )
                    for entry in history
                )

    async def list_payment_history(self, bill_id: str) -> List[BillPayment]:
        """Return a bill's payment history, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(BillPayment)
                .where(BillPayment.bill_id == bill_id)
                .order_by(BillPayment.created_at, BillPayment.balance_before_cents.desc())
            )
            return list(result.scalars().all())

    async def save_payment_request(
        self, request: PaymentRequest, session_id: Optional[str] = None
    ) -> None:
        """Persist a new STK push attempt for audit and callback matching."""
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    MpesaTransaction(
                        checkout_request_id=request.id,
                        merchant_request_id=request.merchant_request_id,
                        bill_id=request.bill_id,
                        session_id=session_id,
                        phone_number=request.phone,
                        amount_cents=to_cents(request.amount),
                        account_reference=request.account_reference,
                        state=request.state.value,
                        receipt_code=request.receipt_code,
                    )
                )

    async def update_payment_request(
        self,
        request_id: str,
        state: PaymentRequestState,
        receipt_code: Optional[str] = None,
        result_code: Optional[int] = None,
        result_desc: Optional[str] = None,
    ) -> None:
        """Record the terminal state of an STK push attempt."""
        values: Dict[str, Any] = {
            "state": state.value,
            "updated_at": datetime.now(timezone.utc),
        }
        if receipt_code is not None:
            values["receipt_code"] = receipt_code
        if result_code is not None:
            values["result_code"] = result_code
        if result_desc is not None:
            values["result_desc"] = result_desc

        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(MpesaTransaction)
                    .where(MpesaTransaction.checkout_request_id == request_id)
                    .values(**values)
                )

    async def get_payment_request(self, request_id: str) -> Optional[MpesaTransaction]:
        """Return the stored STK push attempt, or None."""
        async with self._session_factory() as session:
            return await session.get(MpesaTransaction, request_id)

    async def record_callback(
        self,
        request_id: str,
        result_code: int,
        result_desc: Optional[str],
        receipt_code: Optional[str],
        raw_callback: Dict[str, Any],
    ) -> bool:
        """
        Store the result M-PESA posted for an STK push.

        Only the first callback for a request is recorded.

        Returns:
            True if this callback was recorded, False for a duplicate or an
            unknown CheckoutRequestID
        """
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(MpesaTransaction)
                    .where(
                        MpesaTransaction.checkout_request_id == request_id,
                        MpesaTransaction.result_code.is_(None),
                    )
                    .values(
                        result_code=result_code,
                        result_desc=result_desc,
                        receipt_code=receipt_code if result_code == 0 else None,
                        raw_callback=raw_callback,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                return result.rowcount == 1
