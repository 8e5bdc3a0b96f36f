"""
Inbound (C2B) collection matching.

Payers sometimes pay the paybill directly instead of answering an STK
prompt. Those collections arrive as unlinked C2B records which an operator
links to a bill by hand. Records are consumed at most once; the flip from
unlinked to linked is a single conditional update.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from supabase import Client

from ..config import settings
from ..exceptions import AlreadyConsumed, NotificationNotFound
from ..models import C2BTransaction
from ..schemas import InboundNotification
from ..utils.logging import get_logger
from ..utils.money import from_cents, to_cents, to_decimal

logger = get_logger(__name__)


class InboundSource(Protocol):
    async def list_unconsumed(self, limit: int) -> List[InboundNotification]: ...

    async def get(self, notification_id: str) -> Optional[InboundNotification]: ...

    async def mark_consumed(self, notification_id: str) -> None: ...


def _notification_from_row(row: C2BTransaction) -> InboundNotification:
    extra = dict(row.extra or {})
    if row.bill_ref_number:
        extra.setdefault("bill_ref_number", row.bill_ref_number)
    return InboundNotification(
        id=row.id,
        external_transaction_id=row.trans_id,
        amount=from_cents(row.amount_cents),
        payer_msisdn=row.msisdn,
        payer_name=row.payer_name,
        consumed=row.is_linked,
        created_at=row.created_at,
        extra=extra,
    )


class SqlInboundSource:
    """C2B records kept in the local ``c2b_transactions`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        trans_id: str,
        amount: Decimal,
        msisdn: Optional[str] = None,
        payer_name: Optional[str] = None,
        bill_ref_number: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> InboundNotification:
        """Insert a C2B confirmation as an unlinked record."""
        row = C2BTransaction(
            trans_id=trans_id,
            amount_cents=to_cents(amount),
            msisdn=msisdn,
            payer_name=payer_name,
            bill_ref_number=bill_ref_number,
            extra=extra,
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(row)

        logger.info(
            "C2B collection recorded",
            extra={"notification_id": row.id, "trans_id": trans_id, "amount_cents": row.amount_cents},
        )
        return _notification_from_row(row)

    async def list_unconsumed(self, limit: int) -> List[InboundNotification]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(C2BTransaction)
                .where(C2BTransaction.is_linked.is_(False))
                .order_by(C2BTransaction.created_at.desc())
                .limit(limit)
            )
            return [_notification_from_row(row) for row in result.scalars().all()]

    async def get(self, notification_id: str) -> Optional[InboundNotification]:
        async with self._session_factory() as session:
            row = await session.get(C2BTransaction, notification_id)
            return _notification_from_row(row) if row is not None else None

    async def mark_consumed(self, notification_id: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(C2BTransaction)
                    .where(
                        C2BTransaction.id == notification_id,
                        C2BTransaction.is_linked.is_(False),
                    )
                    .values(is_linked=True)
                )
                if result.rowcount == 1:
                    return
                exists = await session.get(C2BTransaction, notification_id)

        if exists is None:
            raise NotificationNotFound(notification_id)
        raise AlreadyConsumed(notification_id)


# Column aliases used by C2B producers, in preference order
_ID_COLUMNS = ("id",)
_TRANS_ID_COLUMNS = ("mpesa_receipt", "trans_id", "TransID", "transaction_id")
_AMOUNT_COLUMNS = ("amount", "TransAmount", "trans_amount")
_MSISDN_COLUMNS = ("phone", "msisdn", "MSISDN", "phone_number")
_NAME_COLUMNS = ("customer_name", "payer_name", "first_name", "FirstName")
_CREATED_COLUMNS = ("created_at", "TransTime")
_CONSUMED_COLUMNS = ("is_linked",)

_CORE_COLUMNS = frozenset(
    _ID_COLUMNS
    + _TRANS_ID_COLUMNS
    + _AMOUNT_COLUMNS
    + _MSISDN_COLUMNS
    + _NAME_COLUMNS
    + _CREATED_COLUMNS
    + _CONSUMED_COLUMNS
)


def _first(row: Dict[str, Any], columns) -> Any:
    for column in columns:
        value = row.get(column)
        if value not in (None, ""):
            return value
    return None


def notification_from_record(row: Dict[str, Any]) -> InboundNotification:
    """
    Map a producer row onto an InboundNotification.

    Known aliases fill the core fields; every other column goes to ``extra``.

    Raises:
        ValueError: If the row has no id, transaction id or amount
    """
    record_id = _first(row, _ID_COLUMNS)
    trans_id = _first(row, _TRANS_ID_COLUMNS)
    amount = _first(row, _AMOUNT_COLUMNS)
    if record_id is None or trans_id is None or amount is None:
        raise ValueError(f"C2B record is missing id, transaction id or amount: {sorted(row)}")

    created_at = _first(row, _CREATED_COLUMNS)
    if isinstance(created_at, str):
        try:
            created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
        except ValueError:
            created_at = None
    elif not isinstance(created_at, datetime):
        created_at = None

    msisdn = _first(row, _MSISDN_COLUMNS)
    return InboundNotification(
        id=str(record_id),
        external_transaction_id=str(trans_id),
        amount=to_decimal(amount),
        payer_msisdn=str(msisdn) if msisdn is not None else None,
        payer_name=_first(row, _NAME_COLUMNS),
        consumed=bool(row.get("is_linked", False)),
        created_at=created_at,
        extra={k: v for k, v in row.items() if k not in _CORE_COLUMNS},
    )


class SupabaseInboundSource:
    """
    C2B records held in the producer app's own Supabase project.

    Args:
        client: Supabase client for the producer project
        table: Table holding C2B confirmations
    """

    def __init__(self, client: Client, table: Optional[str] = None) -> None:
        self.client = client
        self.table = table or settings.c2b_table

    async def list_unconsumed(self, limit: int) -> List[InboundNotification]:
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("is_linked", False)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )

        notifications = []
        for row in response.data or []:
            try:
                notifications.append(notification_from_record(row))
            except ValueError as e:
                logger.warning("Skipping malformed C2B record", extra={"error": str(e)})
        return notifications

    async def get(self, notification_id: str) -> Optional[InboundNotification]:
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("id", notification_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        try:
            return notification_from_record(response.data[0])
        except ValueError as e:
            logger.warning(
                "Malformed C2B record",
                extra={"notification_id": notification_id, "error": str(e)},
            )
            raise NotificationNotFound(notification_id)

    async def mark_consumed(self, notification_id: str) -> None:
        response = (
            self.client.table(self.table)
            .update({"is_linked": True})
            .eq("id", notification_id)
            .eq("is_linked", False)
            .execute()
        )
        if response.data:
            return

        if await self.get(notification_id) is None:
            raise NotificationNotFound(notification_id)
        raise AlreadyConsumed(notification_id)


class InboundMatcher:
    """
    Operator-facing view over an inbound source.

    Only unconsumed notifications are listed or handed out.
    """

    def __init__(self, source: InboundSource, default_limit: Optional[int] = None) -> None:
        self.source = source
        self.default_limit = default_limit or settings.c2b_list_limit

    async def list(self, limit: Optional[int] = None) -> List[InboundNotification]:
        """Return the most recent unconsumed notifications."""
        notifications = await self.source.list_unconsumed(limit or self.default_limit)
        return [n for n in notifications if not n.consumed]

    async def get(self, notification_id: str) -> InboundNotification:
        """
        Return one unconsumed notification.

        Raises:
            NotificationNotFound: Unknown ID
            AlreadyConsumed: Notification was already linked to a bill
        """
        notification = await self.source.get(notification_id)
        if notification is None:
            raise NotificationNotFound(notification_id)
        if notification.consumed:
            raise AlreadyConsumed(notification_id)
        return notification

    async def mark_consumed(self, notification_id: str) -> None:
        """
        Flip a notification from unconsumed to consumed.

        Raises:
            AlreadyConsumed: A concurrent consumer got there first
            NotificationNotFound: Unknown ID
        """
        await self.source.mark_consumed(notification_id)
        logger.info("Inbound payment linked", extra={"notification_id": notification_id})
