"""
STK Push status poller.

Drives the gateway's status query on a fixed cadence until the payer
answers or the attempt budget runs out. Each run is owned through a
PollHandle; nothing here is module-level state.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional, Protocol

from ..config import settings
from ..exceptions import GatewayRejected, GatewayUnavailable
from ..schemas import PaymentRequestState, PollOutcome, QueryResult, QueryStatus
from ..utils.logging import get_logger
from .mpesa import describe_failure

logger = get_logger(__name__)

PLACEHOLDER_RECEIPT_PREFIX = "UNCONFIRMED-"

TerminalCallback = Callable[[str, PollOutcome], Awaitable[None]]
CancelCallback = Callable[[str], None]


class StatusGateway(Protocol):
    async def query(self, request_id: str) -> QueryResult: ...


def placeholder_receipt(request_id: str) -> str:
    """
    Synthetic receipt used when the gateway confirmed payment but never
    reported a receipt number.
    """
    return f"{PLACEHOLDER_RECEIPT_PREFIX}{request_id[-10:].upper()}"


class PollHandle:
    """
    Handle to one running poll.

    ``cancel()`` stops future ticks. Once the poll has produced its
    outcome the handle can no longer be cancelled, so whatever the owner
    does with the outcome (e.g. committing a payment) runs to completion.
    """

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self.outcome: Optional[PollOutcome] = None
        self._task: Optional[asyncio.Task] = None
        self._polling = True

    @property
    def active(self) -> bool:
        """True while the poll is still ticking."""
        return self._polling and self._task is not None and not self._task.done()

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> bool:
        """
        Stop future ticks.

        Returns:
            True if the poll was cancelled, False if it had already finished polling
        """
        if not self.active:
            return False
        logger.info("Cancelling status poll", extra={"checkout_request_id": self.request_id})
        self._polling = False
        self._task.cancel()
        return True

    async def wait(self) -> Optional[PollOutcome]:
        """
        Wait until the poll and its terminal callback have finished.

        Returns:
            The outcome, or None if the poll was cancelled
        """
        if self._task is None:
            return self.outcome
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
        return self.outcome


class StatusPoller:
    """
    Repeatedly query the gateway for one payment request.

    Args:
        gateway: Object exposing ``async query(request_id) -> QueryResult``
        interval: Seconds between ticks
        max_attempts: Ticks before reporting a timeout
        receipt_retries: Extra queries when success arrives without a receipt
        receipt_interval: Seconds between those extra queries
        sleep: Awaitable sleep function (tests pass a no-op)
    """

    def __init__(
        self,
        gateway: StatusGateway,
        interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        receipt_retries: Optional[int] = None,
        receipt_interval: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.interval = settings.poll_interval_seconds if interval is None else interval
        self.max_attempts = settings.poll_max_attempts if max_attempts is None else max_attempts
        self.receipt_retries = (
            settings.receipt_retry_attempts if receipt_retries is None else receipt_retries
        )
        self.receipt_interval = (
            settings.receipt_retry_interval_seconds
            if receipt_interval is None
            else receipt_interval
        )
        self._sleep = sleep

        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    async def _safe_query(self, request_id: str) -> QueryResult:
        # A flaky network must never be mistaken for a declined payment
        try:
            return await self.gateway.query(request_id)
        except (GatewayUnavailable, GatewayRejected) as e:
            logger.warning(
                "Status query failed; treating as pending",
                extra={"checkout_request_id": request_id, "error": str(e)},
            )
            return QueryResult.pending()

    async def _await_receipt(self, request_id: str) -> Optional[str]:
        for _ in range(self.receipt_retries):
            await self._sleep(self.receipt_interval)
            result = await self._safe_query(request_id)
            if result.status == QueryStatus.SUCCEEDED and result.receipt_code:
                return result.receipt_code
        return None

    async def run(self, request_id: str) -> PollOutcome:
        """
        Poll until a terminal result or ``max_attempts`` ticks.

        Returns:
            PollOutcome in Succeeded, Failed or TimedOut
        """
        logger.info(
            "Starting status poll",
            extra={
                "checkout_request_id": request_id,
                "interval": self.interval,
                "max_attempts": self.max_attempts,
            },
        )

        for attempt in range(1, self.max_attempts + 1):
            await self._sleep(self.interval)
            result = await self._safe_query(request_id)

            if result.status == QueryStatus.SUCCEEDED:
                receipt = result.receipt_code or await self._await_receipt(request_id)
                placeholder = receipt is None
                if placeholder:
                    receipt = placeholder_receipt(request_id)
                    logger.warning(
                        "Payment confirmed without receipt; using placeholder",
                        extra={"checkout_request_id": request_id, "receipt_code": receipt},
                    )
                return PollOutcome(
                    request_id=request_id,
                    state=PaymentRequestState.SUCCEEDED,
                    receipt_code=receipt,
                    message=f"Payment received. Receipt: {receipt}",
                    attempts=attempt,
                    placeholder_receipt=placeholder,
                )

            if result.status == QueryStatus.FAILED:
                return PollOutcome(
                    request_id=request_id,
                    state=PaymentRequestState.FAILED,
                    reason_code=result.reason_code,
                    message=describe_failure(result.reason_code),
                    attempts=attempt,
                )

            logger.debug(
                "Payment still pending",
                extra={"checkout_request_id": request_id, "attempt": attempt},
            )

        return PollOutcome(
            request_id=request_id,
            state=PaymentRequestState.TIMED_OUT,
            message=(
                "Payment timed out. Ask the payer to check their M-PESA messages "
                "and look for the payment under inbound collections before retrying."
            ),
            attempts=self.max_attempts,
        )

    def start(
        self,
        request_id: str,
        on_terminal: TerminalCallback,
        on_cancelled: Optional[CancelCallback] = None,
    ) -> PollHandle:
        """
        Run the poll in a background task.

        ``on_terminal`` is awaited with the outcome once polling ends;
        ``on_cancelled`` is called if the handle is cancelled first.
        """
        handle = PollHandle(request_id)

        async def _drive() -> None:
            try:
                outcome = await self.run(request_id)
            except asyncio.CancelledError:
                if on_cancelled is not None:
                    on_cancelled(request_id)
                raise
            handle._polling = False
            handle.outcome = outcome
            await on_terminal(request_id, outcome)

        handle._task = asyncio.get_running_loop().create_task(
            _drive(), name=f"stk-poll-{request_id}"
        )
        return handle


class ActivePolls:
    """
    Registry of the live poll per bill.

    Starting a new attempt for a bill cancels whatever poll was running for
    it (cancel-and-replace), so a bill never has two collections in flight.
    """

    def __init__(self) -> None:
        self._by_bill: Dict[str, PollHandle] = {}

    def replace(self, bill_id: str, handle: PollHandle) -> Optional[PollHandle]:
        """Register ``handle`` for ``bill_id``, cancelling the previous one."""
        previous = self._by_bill.get(bill_id)
        if previous is not None and previous is not handle and previous.cancel():
            logger.info(
                "Superseded active payment request",
                extra={
                    "bill_id": bill_id,
                    "previous_request_id": previous.request_id,
                    "new_request_id": handle.request_id,
                },
            )
        self._by_bill[bill_id] = handle
        return previous

    def discard(self, bill_id: str, handle: PollHandle) -> None:
        """Forget ``handle`` if it is still the registered one."""
        if self._by_bill.get(bill_id) is handle:
            del self._by_bill[bill_id]

    def get(self, bill_id: str) -> Optional[PollHandle]:
        return self._by_bill.get(bill_id)

    def cancel_all(self) -> None:
        for handle in list(self._by_bill.values()):
            handle.cancel()
        self._by_bill.clear()
