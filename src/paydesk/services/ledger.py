"""
Payment ledger: applies tenders to a bill.

A bill is only ever mutated here. Each apply reads the bill fresh, checks
the tenders against the outstanding balance and writes the new amount paid
with a conditional update. Losing a race to another session re-reads and
re-validates, so two tenders that each fit alone can never jointly overpay.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from ..config import settings
from ..exceptions import InvalidTender, OverpaymentRejected, StaleBillError
from ..schemas import Bill, BillStatus, LedgerResult, Tender, TenderMethod
from ..utils.logging import get_logger
from ..utils.money import total
from .store import BillStore, BillUpdate, HistoryEntry

logger = get_logger(__name__)


def describe_methods(tenders: Sequence[Tender]) -> str:
    """
    Label stored as a bill's last payment method.

    Examples:
        >>> describe_methods([Tender(method="Cash", amount=1)])
        'Cash'
        >>> describe_methods([Tender(method="Cash", amount=1), Tender(method="MobileMoney", amount=2)])
        'Split (Cash + MobileMoney)'
    """
    methods: List[str] = []
    for tender in tenders:
        if tender.method.value not in methods:
            methods.append(tender.method.value)
    if len(tenders) == 1:
        return methods[0]
    return f"Split ({' + '.join(methods)})"


class PaymentLedger:
    """
    Apply tenders to bills held in a BillStore.

    Args:
        store: Record store holding the bills
        max_attempts: Attempts before a lost conditional update is surfaced
    """

    def __init__(self, store: BillStore, max_attempts: Optional[int] = None) -> None:
        self.store = store
        self.max_attempts = max_attempts or settings.ledger_conflict_retries

    async def apply(
        self,
        bill_id: str,
        tenders: Sequence[Tender],
        *,
        operator: Optional[str] = None,
        session_id: Optional[str] = None,
        allow_change: bool = False,
    ) -> LedgerResult:
        """
        Apply one or more tenders to a bill atomically.

        Args:
            bill_id: Bill to pay
            tenders: Tenders to apply together
            operator: Staff member recorded on each history row
            session_id: Checkout session recorded on each history row
            allow_change: Accept cash beyond the balance and return it as change

        Returns:
            LedgerResult with the new amount paid, status, change and balance

        Raises:
            InvalidTender: Empty tender list or a non-positive amount
            OverpaymentRejected: Tenders exceed the outstanding balance
            BillNotFound: Unknown bill
            StaleBillError: Conditional update kept losing after all attempts
        """
        if not tenders:
            raise InvalidTender("At least one tender is required")
        for tender in tenders:
            if tender.amount <= 0:
                raise InvalidTender(f"Tender amount must be greater than zero: {tender.amount}")

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(StaleBillError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random(min=0, max=0.05),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "Retrying bill update after concurrent change",
                        extra={
                            "bill_id": bill_id,
                            "attempt": attempt.retry_state.attempt_number,
                        },
                    )
                return await self._apply_once(
                    bill_id,
                    list(tenders),
                    operator=operator,
                    session_id=session_id,
                    allow_change=allow_change,
                )

    async def _apply_once(
        self,
        bill_id: str,
        tenders: List[Tender],
        *,
        operator: Optional[str],
        session_id: Optional[str],
        allow_change: bool,
    ) -> LedgerResult:
        bill = await self.store.get_bill(bill_id)
        outstanding = bill.outstanding
        tendered = total(t.amount for t in tenders)
        change = Decimal("0.00")

        if tendered > outstanding:
            excess = tendered - outstanding
            cash = total(t.amount for t in tenders if t.method == TenderMethod.CASH)
            if not allow_change or outstanding <= 0 or cash < excess:
                logger.warning(
                    "Tenders exceed outstanding balance",
                    extra={
                        "bill_id": bill_id,
                        "tendered": str(tendered),
                        "outstanding": str(outstanding),
                    },
                )
                raise OverpaymentRejected(bill_id, tendered, outstanding)
            change = excess
            # Change comes out of cash, so cash is applied last
            tenders = [t for t in tenders if t.method != TenderMethod.CASH] + [
                t for t in tenders if t.method == TenderMethod.CASH
            ]

        history = self._history(bill, tenders, operator=operator, session_id=session_id)
        applied = tendered - change
        new_paid = bill.amount_paid + applied
        new_status = BillStatus.classify(new_paid, bill.total_amount)

        await self.store.commit_payment(
            bill_id,
            expected_amount_paid=bill.amount_paid,
            bill_update=BillUpdate(
                amount_paid=new_paid,
                status=new_status,
                last_payment_method=describe_methods(tenders),
                last_payment_at=datetime.now(timezone.utc),
                change=change,
                payment_count=bill.partial_payment_count + len(history),
            ),
            history=history,
        )

        logger.info(
            "Tenders applied to bill",
            extra={
                "bill_id": bill_id,
                "receipt_no": bill.receipt_no,
                "tender_count": len(tenders),
                "applied": str(applied),
                "new_status": new_status.value,
                "change": str(change),
            },
        )

        return LedgerResult(
            bill_id=bill_id,
            new_amount_paid=new_paid,
            new_status=new_status,
            change=change,
            balance=bill.total_amount - new_paid,
            tenders=tenders,
        )

    def _history(
        self,
        bill: Bill,
        tenders: Sequence[Tender],
        *,
        operator: Optional[str],
        session_id: Optional[str],
    ) -> List[HistoryEntry]:
        entries = []
        balance = bill.outstanding
        for tender in tenders:
            applied = min(tender.amount, balance)
            if applied <= 0:
                # Entirely returned as change
                continue
            entries.append(
                HistoryEntry(
                    method=tender.method.value,
                    amount=applied,
                    balance_before=balance,
                    balance_after=balance - applied,
                    external_reference=tender.external_reference,
                    inbound_notification_id=tender.inbound_notification_id,
                    session_id=session_id,
                    received_by=operator,
                )
            )
            balance -= applied
        return entries
