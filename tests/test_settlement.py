"""
Tests for the settlement coordinator.

Sessions run against a real SQLite store and a scripted Daraja, with
fast polling.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from src.paydesk.exceptions import SessionNotFound
from src.paydesk.schemas import (
    BillStatus,
    PaymentRequestState,
    QueryResult,
    QueryStatus,
    SessionState,
    Tender,
    TenderMethod,
)
from src.paydesk.services.settlement import CheckoutSessions, SettlementCoordinator
from tests.daraja import PENDING, QUERY_PATH, STK_PATH, failed, succeeded

PHONE = "0712345678"


def success(receipt="RJX9KQ2L1M") -> QueryResult:
    return QueryResult(status=QueryStatus.SUCCEEDED, receipt_code=receipt)


async def wait_for_state(coordinator, state: SessionState, timeout: float = 2.0) -> None:
    for _ in range(int(timeout / 0.01)):
        if coordinator.state == state:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"session stuck in {coordinator.state.value}, expected {state.value}")


class BlockingGateway:
    """initiate() waits until released."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.calls = 0

    async def initiate(self, phone, amount, account_reference, description):
        self.calls += 1
        await self.release.wait()
        return {"checkout_request_id": f"ws_CO_B{self.calls}", "merchant_request_id": None}


class BlockingStatus:
    """query() reports success once released."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def query(self, request_id):
        self.entered.set()
        await self.release.wait()
        return success()


async def broken(*args, **kwargs):
    raise SQLAlchemyError("disk I/O error")


class TestScenarios:
    """End-to-end settlement scenarios."""

    @pytest.mark.asyncio
    async def test_split_cash_then_mobile_money(self, sessions: CheckoutSessions, bill, daraja) -> None:
        """Cash 400 then M-PESA 600 completes a 1000 bill."""
        daraja.query_script = [succeeded("RJX9KQ2L1M")]
        coordinator = await sessions.open(bill.id, operator="jane")

        await coordinator.add_tender(TenderMethod.CASH, Decimal("400"))
        snap = await coordinator.confirm_checkout()
        assert snap.error is None
        assert snap.bill_status == BillStatus.PARTIAL
        assert snap.outstanding == Decimal("600.00")
        assert snap.staged_tenders == []

        snap = await coordinator.start_payment(PHONE, Decimal("600"))
        assert snap.state == SessionState.AWAITING_CONFIRMATION
        assert snap.payment_request_id == "ws_CO_000001"

        snap = await coordinator.wait()
        assert snap.state == SessionState.SUCCEEDED
        assert snap.receipt_code == "RJX9KQ2L1M"
        assert snap.bill_status == BillStatus.COMPLETED
        assert snap.amount_paid == Decimal("1000.00")

        history = await sessions.store.list_payment_history(bill.id)
        assert [(h.method, h.amount_cents) for h in history] == [
            ("Cash", 40000),
            ("MobileMoney", 60000),
        ]
        assert history[1].external_reference == "RJX9KQ2L1M"
        assert history[0].received_by == "jane"

        payload = daraja.payloads(STK_PATH)[0]
        assert payload["Amount"] == 600
        assert payload["PhoneNumber"] == 254712345678
        assert payload["AccountReference"] == "RCP-0001"

    @pytest.mark.asyncio
    async def test_success_after_five_pendings(self, sessions: CheckoutSessions, bill, daraja) -> None:
        """Success on the sixth query is committed exactly once."""
        daraja.query_script = [PENDING] * 5 + [succeeded("RJX9KQ2L1M")]
        coordinator = await sessions.open(bill.id)

        await coordinator.start_payment(PHONE, 1000)
        snap = await coordinator.wait()

        assert snap.state == SessionState.SUCCEEDED
        assert daraja.calls(QUERY_PATH) == 6
        assert snap.bill_status == BillStatus.COMPLETED
        assert len(await sessions.store.list_payment_history(bill.id)) == 1

        record = await sessions.store.get_payment_request(snap.payment_request_id)
        assert record.state == PaymentRequestState.SUCCEEDED.value
        assert record.receipt_code == "RJX9KQ2L1M"

    @pytest.mark.asyncio
    async def test_cancelled_by_payer(self, sessions: CheckoutSessions, bill, daraja) -> None:
        """Result code 1032 fails the session with no ledger effect."""
        daraja.query_script = [PENDING, failed(1032)]
        coordinator = await sessions.open(bill.id)

        await coordinator.start_payment(PHONE, 500)
        snap = await coordinator.wait()

        assert snap.state == SessionState.FAILED
        assert snap.message == "Cancelled by payer"
        assert snap.error_type == "PaymentDeclined"
        assert snap.receipt_code is None
        assert (await sessions.store.get_bill(bill.id)).amount_paid == Decimal("0.00")

        record = await sessions.store.get_payment_request(snap.payment_request_id)
        assert record.state == "Failed"
        assert record.result_code == 1032

    @pytest.mark.asyncio
    async def test_concurrent_sessions_cannot_overpay(self, sessions: CheckoutSessions, bill) -> None:
        """Two sessions confirm 600 each against 1000: one is rejected."""
        first = await sessions.open(bill.id)
        second = await sessions.open(bill.id)
        await first.add_tender(TenderMethod.CASH, 600)
        await second.add_tender(TenderMethod.CARD, 600, "card-1")

        snaps = await asyncio.gather(first.confirm_checkout(), second.confirm_checkout())

        errors = [s.error_type for s in snaps]
        assert sorted(errors, key=str) == sorted([None, "OverpaymentRejected"], key=str)
        stored = await sessions.store.get_bill(bill.id)
        assert stored.amount_paid == Decimal("600.00")
        assert stored.status == BillStatus.PARTIAL


class TestDuplicateSignals:
    """A payment request is committed at most once."""

    @pytest.mark.asyncio
    async def test_callback_then_duplicate_callback(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)
        snap = await coordinator.start_payment(PHONE, 300)
        request_id = snap.payment_request_id

        first = await coordinator.notify_result(request_id, success())
        second = await coordinator.notify_result(request_id, success())

        assert first.state == SessionState.SUCCEEDED
        assert second.state == SessionState.SUCCEEDED
        assert second.amount_paid == Decimal("300.00")
        assert len(await sessions.store.list_payment_history(bill.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_success_signals(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)
        snap = await coordinator.start_payment(PHONE, 300)
        request_id = snap.payment_request_id

        await asyncio.gather(
            coordinator.notify_result(request_id, success()),
            coordinator.notify_result(request_id, success()),
            coordinator.notify_result(request_id, success()),
        )
        await coordinator.wait()

        stored = await sessions.store.get_bill(bill.id)
        assert stored.amount_paid == Decimal("300.00")
        assert len(await sessions.store.list_payment_history(bill.id)) == 1

    @pytest.mark.asyncio
    async def test_poll_success_then_late_callback(self, sessions: CheckoutSessions, bill, daraja) -> None:
        daraja.query_script = [succeeded("RJX9KQ2L1M")]
        coordinator = await sessions.open(bill.id)
        snap = await coordinator.start_payment(PHONE, 300)
        await coordinator.wait()

        late = await coordinator.notify_result(snap.payment_request_id, success("OTHER12345"))

        assert late.receipt_code == "RJX9KQ2L1M"
        assert len(await sessions.store.list_payment_history(bill.id)) == 1

    @pytest.mark.asyncio
    async def test_result_for_replaced_request_ignored(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)
        old = await coordinator.start_payment(PHONE, 300)
        new = await coordinator.start_payment(PHONE, 300)
        assert old.payment_request_id != new.payment_request_id

        snap = await coordinator.notify_result(old.payment_request_id, success())

        assert snap.state == SessionState.AWAITING_CONFIRMATION
        assert (await sessions.store.get_bill(bill.id)).amount_paid == Decimal("0.00")


class TestStartPayment:
    """STK push initiation rules."""

    @pytest.mark.asyncio
    async def test_rejected_while_sending(self, sessions: CheckoutSessions, bill) -> None:
        """A second start while the first is in flight is refused."""
        blocking = BlockingGateway()
        coordinator = await sessions.open(bill.id)
        coordinator.gateway = blocking

        first = asyncio.create_task(coordinator.start_payment(PHONE, 100))
        await wait_for_state(coordinator, SessionState.SENDING)
        assert coordinator.state == SessionState.SENDING

        snap = await coordinator.start_payment(PHONE, 100)
        assert snap.error_type == "GatewayRejected"
        assert snap.state == SessionState.SENDING

        blocking.release.set()
        snap = await first
        assert snap.state == SessionState.AWAITING_CONFIRMATION
        assert blocking.calls == 1
        await coordinator.cancel_payment()

    @pytest.mark.asyncio
    async def test_cancel_while_sending_discards_request(self, sessions: CheckoutSessions, bill) -> None:
        blocking = BlockingGateway()
        coordinator = await sessions.open(bill.id)
        coordinator.gateway = blocking

        first = asyncio.create_task(coordinator.start_payment(PHONE, 100))
        await wait_for_state(coordinator, SessionState.SENDING)
        await coordinator.cancel_payment()
        blocking.release.set()
        snap = await first

        assert snap.state == SessionState.IDLE
        assert snap.payment_request_id is None

    @pytest.mark.asyncio
    async def test_awaiting_is_cancelled_and_replaced(self, sessions: CheckoutSessions, bill, daraja) -> None:
        coordinator = await sessions.open(bill.id)
        first = await coordinator.start_payment(PHONE, 100)
        first_handle = coordinator._handle

        second = await coordinator.start_payment(PHONE, 200)

        assert second.state == SessionState.AWAITING_CONFIRMATION
        assert second.payment_request_id != first.payment_request_id
        assert first_handle.active is False
        assert daraja.calls(STK_PATH) == 2
        assert sessions.active_polls.get(bill.id) is coordinator._handle

    @pytest.mark.asyncio
    async def test_other_session_supersedes(self, sessions: CheckoutSessions, bill) -> None:
        """A new attempt on the same bill sends the older session to Idle."""
        first = await sessions.open(bill.id)
        second = await sessions.open(bill.id)
        await first.start_payment(PHONE, 100)

        await second.start_payment(PHONE, 100)
        await wait_for_state(first, SessionState.IDLE)

        assert first.state == SessionState.IDLE
        assert "superseded" in first.message
        assert second.state == SessionState.AWAITING_CONFIRMATION

    @pytest.mark.asyncio
    async def test_invalid_phone(self, sessions: CheckoutSessions, bill, daraja) -> None:
        coordinator = await sessions.open(bill.id)

        snap = await coordinator.start_payment("12345", 100)

        assert snap.state == SessionState.IDLE
        assert snap.error_type == "InvalidMSISDN"
        assert daraja.calls(STK_PATH) == 0

    @pytest.mark.asyncio
    async def test_amount_must_fit_outstanding_less_staged(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)
        await coordinator.add_tender(TenderMethod.CASH, 700)

        snap = await coordinator.start_payment(PHONE, 400)

        assert snap.state == SessionState.IDLE
        assert snap.error_type == "OverpaymentRejected"

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)

        snap = await coordinator.start_payment(PHONE, 0)

        assert snap.error_type == "InvalidTender"

    @pytest.mark.asyncio
    async def test_gateway_rejection_fails_session(self, sessions: CheckoutSessions, bill, daraja) -> None:
        daraja.stk_responses = [
            (400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"})
        ]
        coordinator = await sessions.open(bill.id)

        snap = await coordinator.start_payment(PHONE, 100)

        assert snap.state == SessionState.FAILED
        assert snap.error_type == "GatewayRejected"
        assert "Invalid Amount" in snap.error

    @pytest.mark.asyncio
    async def test_start_from_terminal_resets(self, sessions: CheckoutSessions, bill, daraja) -> None:
        daraja.query_script = [failed(1)]
        coordinator = await sessions.open(bill.id)
        await coordinator.start_payment(PHONE, 100)
        snap = await coordinator.wait()
        assert snap.state == SessionState.FAILED
        assert snap.message == "Insufficient funds"

        daraja.query_script = [succeeded("RJX9KQ2L1M")]
        await coordinator.start_payment(PHONE, 100)
        snap = await coordinator.wait()

        assert snap.state == SessionState.SUCCEEDED
        assert snap.error is None


class TestTimeoutAndManualReceipt:
    """Timeouts and out-of-band confirmation."""

    @pytest.mark.asyncio
    async def test_timeout_then_manual_receipt(self, sessions: CheckoutSessions, bill, daraja) -> None:
        coordinator = await sessions.open(bill.id)
        await coordinator.start_payment(PHONE, 250)
        snap = await coordinator.wait()

        assert snap.state == SessionState.TIMED_OUT
        assert snap.error_type == "PaymentTimedOut"
        assert daraja.calls(QUERY_PATH) == 24

        snap = await coordinator.enter_manual_receipt("rkt8xyz123")

        assert snap.state == SessionState.SUCCEEDED
        assert snap.receipt_code == "RKT8XYZ123"
        assert snap.amount_paid == Decimal("250.00")
        history = await sessions.store.list_payment_history(bill.id)
        assert history[0].external_reference == "RKT8XYZ123"

    @pytest.mark.asyncio
    async def test_manual_receipt_requires_a_request(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)

        snap = await coordinator.enter_manual_receipt("RKT8XYZ123")

        assert snap.state == SessionState.IDLE
        assert snap.error_type == "InvalidTender"

    @pytest.mark.asyncio
    async def test_manual_receipt_not_applied_twice(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)
        snap = await coordinator.start_payment(PHONE, 250)
        await coordinator.enter_manual_receipt("RKT8XYZ123")

        again = await coordinator.enter_manual_receipt("RKT8XYZ123")

        assert again.error_type == "InvalidTender"
        assert again.amount_paid == Decimal("250.00")
        record = await sessions.store.get_payment_request(snap.payment_request_id)
        assert record.state == "Succeeded"

    @pytest.mark.asyncio
    async def test_receipt_after_timeout_survives_reset(self, sessions: CheckoutSessions, bill) -> None:
        """Resetting a confirmed timeout does not reopen the attempt to another receipt."""
        coordinator = await sessions.open(bill.id)
        await coordinator.start_payment(PHONE, 250)
        await coordinator.wait()
        await coordinator.enter_manual_receipt("RKT8XYZ123")
        await coordinator.reset()

        again = await coordinator.enter_manual_receipt("RKT8XYZ123")

        assert again.state == SessionState.IDLE
        assert again.error_type == "InvalidTender"
        assert again.amount_paid == Decimal("250.00")
        assert len(await sessions.store.list_payment_history(bill.id)) == 1

    @pytest.mark.asyncio
    async def test_receipt_after_decline_survives_reset(self, sessions: CheckoutSessions, bill, daraja) -> None:
        daraja.query_script = [failed(1032)]
        coordinator = await sessions.open(bill.id)
        await coordinator.start_payment(PHONE, 300)
        snap = await coordinator.wait()
        assert snap.state == SessionState.FAILED

        await coordinator.enter_manual_receipt("AAA111")
        await coordinator.reset()
        again = await coordinator.enter_manual_receipt("BBB222")

        assert again.error_type == "InvalidTender"
        stored = await sessions.store.get_bill(bill.id)
        assert stored.amount_paid == Decimal("300.00")
        history = await sessions.store.list_payment_history(bill.id)
        assert [row.external_reference for row in history] == ["AAA111"]

    @pytest.mark.asyncio
    async def test_ledger_failure_after_success_keeps_state(self, sessions: CheckoutSessions, bill) -> None:
        """Money received but the bill was settled elsewhere: report, do not revert."""
        coordinator = await sessions.open(bill.id)
        snap = await coordinator.start_payment(PHONE, 600)
        await sessions.ledger.apply(bill.id, [Tender(method=TenderMethod.CASH, amount=700)])

        snap = await coordinator.notify_result(snap.payment_request_id, success())

        assert snap.state == SessionState.SUCCEEDED
        assert snap.error_type == "OverpaymentRejected"
        assert snap.amount_paid == Decimal("700.00")


class TestStoreFailures:
    """Store errors stay inside the session."""

    @pytest.mark.asyncio
    async def test_audit_write_failure_still_applies_payment(
        self, sessions: CheckoutSessions, bill, monkeypatch
    ) -> None:
        coordinator = await sessions.open(bill.id)
        snap = await coordinator.start_payment(PHONE, 600)
        monkeypatch.setattr(sessions.store, "update_payment_request", broken)

        snap = await coordinator.notify_result(snap.payment_request_id, success())

        assert snap.state == SessionState.SUCCEEDED
        assert snap.error is None
        assert snap.amount_paid == Decimal("600.00")
        assert len(await sessions.store.list_payment_history(bill.id)) == 1

    @pytest.mark.asyncio
    async def test_audit_write_failure_on_manual_receipt(
        self, sessions: CheckoutSessions, bill, monkeypatch
    ) -> None:
        coordinator = await sessions.open(bill.id)
        await coordinator.start_payment(PHONE, 250)
        monkeypatch.setattr(sessions.store, "update_payment_request", broken)

        snap = await coordinator.enter_manual_receipt("RKT8XYZ123")

        assert snap.state == SessionState.SUCCEEDED
        assert snap.amount_paid == Decimal("250.00")

    @pytest.mark.asyncio
    async def test_ledger_crash_on_callback_is_reported(
        self, sessions: CheckoutSessions, bill, monkeypatch
    ) -> None:
        """notify_result returns a snapshot instead of raising."""
        coordinator = await sessions.open(bill.id)
        snap = await coordinator.start_payment(PHONE, 600)
        monkeypatch.setattr(sessions.ledger, "apply", broken)

        snap = await coordinator.notify_result(snap.payment_request_id, success())

        assert snap.state == SessionState.SUCCEEDED
        assert snap.error_type == "SQLAlchemyError"
        assert (await sessions.store.get_bill(bill.id)).amount_paid == Decimal("0.00")


class TestCallbackFirst:
    @pytest.mark.asyncio
    async def test_recorded_callback_supplies_receipt(self, sessions: CheckoutSessions, bill) -> None:
        """The poller picks up a recorded callback before asking Daraja."""
        coordinator = await sessions.open(bill.id)
        snap = await coordinator.start_payment(PHONE, 100)

        recorded = await sessions.store.record_callback(
            snap.payment_request_id, 0, "Processed", "RCB1234567", {"Body": {}}
        )
        snap = await coordinator.wait()

        assert recorded is True
        assert snap.state == SessionState.SUCCEEDED
        assert snap.receipt_code == "RCB1234567"


class TestStagedTenders:
    @pytest.mark.asyncio
    async def test_staging_never_exceeds_outstanding(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)
        await coordinator.add_tender(TenderMethod.CASH, 600)

        snap = await coordinator.add_tender(TenderMethod.CARD, 500)

        assert snap.error_type == "OverpaymentRejected"
        assert snap.staged_total == Decimal("600.00")

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)
        await coordinator.add_tender(TenderMethod.CASH, 100)
        await coordinator.add_tender(TenderMethod.CARD, 200)

        snap = await coordinator.remove_tender(0)
        assert [t.method for t in snap.staged_tenders] == [TenderMethod.CARD]

        snap = await coordinator.remove_tender(5)
        assert snap.error_type == "InvalidTender"

        snap = await coordinator.clear_tenders()
        assert snap.staged_tenders == []

    @pytest.mark.asyncio
    async def test_mobile_money_tender_needs_reference(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)

        snap = await coordinator.add_tender(TenderMethod.MOBILE_MONEY, 100)

        assert snap.error_type == "InvalidTender"

    @pytest.mark.asyncio
    async def test_invalid_amount(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)

        snap = await coordinator.add_tender(TenderMethod.CASH, -5)

        assert snap.error_type == "InvalidTender"

    @pytest.mark.asyncio
    async def test_confirm_with_nothing_staged(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)

        snap = await coordinator.confirm_checkout()

        assert snap.error_type == "InvalidTender"

    @pytest.mark.asyncio
    async def test_multiple_tenders_in_one_confirm(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)
        await coordinator.add_tender(TenderMethod.CASH, 300)
        await coordinator.add_tender(TenderMethod.BANK_TRANSFER, 700, "bank-77")

        snap = await coordinator.confirm_checkout()

        assert snap.bill_status == BillStatus.COMPLETED
        assert snap.last_result.balance == Decimal("0.00")
        stored = await sessions.store.get_bill(bill.id)
        assert stored.last_payment_method == "Split (Cash + BankTransfer)"


class TestInboundNotifications:
    @pytest.mark.asyncio
    async def test_select_links_and_consumes(self, sessions: CheckoutSessions, bill, inbound_source) -> None:
        notification = await inbound_source.record("SAB1C2D3E4", Decimal("450"), msisdn="254712345678")
        coordinator = await sessions.open(bill.id)

        listed = await coordinator.list_unconsumed_notifications()
        assert [n.id for n in listed] == [notification.id]

        snap = await coordinator.select_notification(notification.id)

        assert snap.state == SessionState.SUCCEEDED
        assert snap.error is None
        assert snap.amount_paid == Decimal("450.00")
        assert snap.receipt_code == "SAB1C2D3E4"
        history = await sessions.store.list_payment_history(bill.id)
        assert history[0].inbound_notification_id == notification.id
        assert await coordinator.list_unconsumed_notifications() == []

    @pytest.mark.asyncio
    async def test_select_twice_rejected(self, sessions: CheckoutSessions, bill, inbound_source) -> None:
        notification = await inbound_source.record("SAB1C2D3E4", Decimal("100"))
        coordinator = await sessions.open(bill.id)
        await coordinator.select_notification(notification.id)

        snap = await coordinator.select_notification(notification.id)

        assert snap.error_type == "AlreadyConsumed"
        assert snap.amount_paid == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_partial_amount(self, sessions: CheckoutSessions, bill, inbound_source) -> None:
        notification = await inbound_source.record("SAB1C2D3E4", Decimal("1500"))
        coordinator = await sessions.open(bill.id)

        snap = await coordinator.select_notification(notification.id, amount=Decimal("1000"))

        assert snap.bill_status == BillStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_overpaying_notification_not_consumed(self, sessions: CheckoutSessions, bill, inbound_source) -> None:
        notification = await inbound_source.record("SAB1C2D3E4", Decimal("1500"))
        coordinator = await sessions.open(bill.id)

        snap = await coordinator.select_notification(notification.id)

        assert snap.error_type == "OverpaymentRejected"
        assert snap.state == SessionState.IDLE
        listed = await coordinator.list_unconsumed_notifications()
        assert [n.id for n in listed] == [notification.id]

    @pytest.mark.asyncio
    async def test_unknown_notification(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)

        snap = await coordinator.select_notification("missing")

        assert snap.error_type == "NotificationNotFound"


class TestCheckoutSessions:
    @pytest.mark.asyncio
    async def test_find_and_close(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)
        snap = await coordinator.start_payment(PHONE, 100)

        assert sessions.find_by_request(snap.payment_request_id) is coordinator
        assert sessions.get(coordinator.session_id) is coordinator

        sessions.close(coordinator.session_id)

        with pytest.raises(SessionNotFound):
            sessions.get(coordinator.session_id)
        assert sessions.active_polls.get(bill.id) is None

    @pytest.mark.asyncio
    async def test_cancel_payment_returns_to_idle(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)
        await coordinator.start_payment(PHONE, 100)
        handle = coordinator._handle

        snap = await coordinator.cancel_payment()

        assert snap.state == SessionState.IDLE
        assert handle.active is False
        assert isinstance(coordinator, SettlementCoordinator)

    @pytest.mark.asyncio
    async def test_success_after_cancel_has_no_effect(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)
        snap = await coordinator.start_payment(PHONE, 300)
        await coordinator.cancel_payment()

        snap = await coordinator.notify_result(snap.payment_request_id, success())

        assert snap.state == SessionState.IDLE
        assert (await sessions.store.get_bill(bill.id)).amount_paid == Decimal("0.00")
        assert await sessions.store.list_payment_history(bill.id) == []

    @pytest.mark.asyncio
    async def test_in_flight_query_discarded_on_cancel(self, sessions: CheckoutSessions, bill) -> None:
        """A success still on the wire when the operator cancels is dropped."""
        status = BlockingStatus()
        sessions.poller.gateway = status
        coordinator = await sessions.open(bill.id)
        await coordinator.start_payment(PHONE, 300)
        handle = coordinator._handle
        await status.entered.wait()

        await coordinator.cancel_payment()
        status.release.set()

        assert await handle.wait() is None
        assert coordinator.state == SessionState.IDLE
        assert (await sessions.store.get_bill(bill.id)).amount_paid == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_idle_sessions_evicted(self, sessions: CheckoutSessions, bill) -> None:
        stale = await sessions.open(bill.id)
        await stale.add_tender(TenderMethod.CASH, 100)
        stale.touched_at -= sessions.idle_ttl + 1

        fresh = await sessions.open(bill.id)

        with pytest.raises(SessionNotFound):
            sessions.get(stale.session_id)
        assert sessions.get(fresh.session_id) is fresh

    @pytest.mark.asyncio
    async def test_awaiting_sessions_kept(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)
        snap = await coordinator.start_payment(PHONE, 100)
        coordinator.touched_at -= sessions.idle_ttl + 1

        assert sessions.evict_expired() == []
        assert sessions.find_by_request(snap.payment_request_id) is coordinator

    @pytest.mark.asyncio
    async def test_lookup_keeps_session_alive(self, sessions: CheckoutSessions, bill) -> None:
        coordinator = await sessions.open(bill.id)
        coordinator.touched_at -= sessions.idle_ttl + 1

        sessions.get(coordinator.session_id)

        assert sessions.evict_expired() == []
