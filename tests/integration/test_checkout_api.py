"""
Integration tests for the checkout and payment callback HTTP API.

The FastAPI app runs in-process through httpx.ASGITransport with a session
registry wired to a SQLite database and a scripted Daraja.
"""

from decimal import Decimal

import httpx
import pytest
from sqlalchemy.exc import SQLAlchemyError

from src.paydesk.main import app
from src.paydesk.routers import checkout
from src.paydesk.services.callbacks import CallbackFirstGateway
from src.paydesk.services.inbound import InboundMatcher
from src.paydesk.services.ledger import PaymentLedger
from src.paydesk.services.poller import StatusPoller
from src.paydesk.services.settlement import CheckoutSessions
from tests.daraja import STK_PATH, FakeDaraja


@pytest.fixture
def api_sessions(store, gateway, inbound_source):
    """Registry whose poller is slow enough that callbacks arrive first."""
    registry = CheckoutSessions(
        store=store,
        gateway=gateway,
        poller=StatusPoller(
            CallbackFirstGateway(gateway, store),
            interval=5,
            max_attempts=24,
            receipt_retries=5,
            receipt_interval=0,
        ),
        ledger=PaymentLedger(store),
        inbound=InboundMatcher(inbound_source),
    )
    yield registry
    registry.close_all()


@pytest.fixture
async def client(api_sessions):
    app.state.sessions = api_sessions
    checkout.limiter.reset()
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as http_client:
        yield http_client
    app.state.sessions = None


def stk_callback(request_id: str, result_code: int = 0, receipt: str = "NLJ7RT61SV") -> dict:
    body = {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully.",
    }
    if result_code == 0:
        body["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": 600},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": body}}


async def open_session(client: httpx.AsyncClient, bill_id: str) -> dict:
    response = await client.post("/checkout/sessions", json={"bill_id": bill_id, "operator": "jane"})
    assert response.status_code == 201
    return response.json()


class TestSessions:
    """Opening, reading and closing sessions."""

    @pytest.mark.asyncio
    async def test_open_session(self, client: httpx.AsyncClient, bill) -> None:
        snapshot = await open_session(client, bill.id)

        assert snapshot["state"] == "Idle"
        assert snapshot["receipt_no"] == "RCP-0001"
        assert Decimal(snapshot["outstanding"]) == Decimal("1000")
        assert snapshot["bill_status"] == "Pending"

    @pytest.mark.asyncio
    async def test_open_unknown_bill(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/checkout/sessions", json={"bill_id": "missing"})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_session(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/checkout/sessions/nope")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_close_session(self, client: httpx.AsyncClient, bill) -> None:
        snapshot = await open_session(client, bill.id)
        session_id = snapshot["session_id"]

        response = await client.delete(f"/checkout/sessions/{session_id}")
        assert response.status_code == 204

        response = await client.get(f"/checkout/sessions/{session_id}")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        assert response.json() == {"status": "ok"}
        assert "X-Correlation-ID" in response.headers


class TestStkPushFlow:
    """STK push settled by the Daraja callback."""

    @pytest.mark.asyncio
    async def test_callback_settles_session(self, client: httpx.AsyncClient, bill, store) -> None:
        session_id = (await open_session(client, bill.id))["session_id"]

        response = await client.post(
            f"/checkout/sessions/{session_id}/mpesa", json={"phone": "0712345678", "amount": 600}
        )
        snapshot = response.json()
        assert snapshot["state"] == "AwaitingConfirmation"
        request_id = snapshot["payment_request_id"]

        response = await client.post("/payments/stk/callback", json=stk_callback(request_id))
        assert response.json() == {"ResultCode": "0", "ResultDesc": "Accepted"}

        snapshot = (await client.get(f"/checkout/sessions/{session_id}")).json()
        assert snapshot["state"] == "Succeeded"
        assert snapshot["receipt_code"] == "NLJ7RT61SV"
        assert Decimal(snapshot["amount_paid"]) == Decimal("600")
        assert snapshot["bill_status"] == "Partial"

        record = await store.get_payment_request(request_id)
        assert record.result_code == 0

    @pytest.mark.asyncio
    async def test_duplicate_callback_not_applied_twice(self, client: httpx.AsyncClient, bill, store) -> None:
        session_id = (await open_session(client, bill.id))["session_id"]
        snapshot = (
            await client.post(
                f"/checkout/sessions/{session_id}/mpesa", json={"phone": "0712345678", "amount": 600}
            )
        ).json()
        payload = stk_callback(snapshot["payment_request_id"])

        await client.post("/payments/stk/callback", json=payload)
        response = await client.post("/payments/stk/callback", json=payload)

        assert response.status_code == 200
        assert (await store.get_bill(bill.id)).amount_paid == Decimal("600.00")
        assert len(await store.list_payment_history(bill.id)) == 1

    @pytest.mark.asyncio
    async def test_callback_acknowledged_when_ledger_errors(
        self, client: httpx.AsyncClient, bill, api_sessions, monkeypatch
    ) -> None:
        session_id = (await open_session(client, bill.id))["session_id"]
        snapshot = (
            await client.post(
                f"/checkout/sessions/{session_id}/mpesa", json={"phone": "0712345678", "amount": 600}
            )
        ).json()

        async def unavailable(*args, **kwargs):
            raise SQLAlchemyError("database is locked")

        monkeypatch.setattr(api_sessions.ledger, "apply", unavailable)
        response = await client.post(
            "/payments/stk/callback", json=stk_callback(snapshot["payment_request_id"])
        )

        assert response.status_code == 200
        assert response.json() == {"ResultCode": "0", "ResultDesc": "Accepted"}
        snapshot = (await client.get(f"/checkout/sessions/{session_id}")).json()
        assert snapshot["error_type"] == "SQLAlchemyError"

    @pytest.mark.asyncio
    async def test_failed_callback(self, client: httpx.AsyncClient, bill) -> None:
        session_id = (await open_session(client, bill.id))["session_id"]
        snapshot = (
            await client.post(
                f"/checkout/sessions/{session_id}/mpesa", json={"phone": "0712345678", "amount": 600}
            )
        ).json()

        await client.post("/payments/stk/callback", json=stk_callback(snapshot["payment_request_id"], 1032))

        snapshot = (await client.get(f"/checkout/sessions/{session_id}")).json()
        assert snapshot["state"] == "Failed"
        assert snapshot["message"] == "Cancelled by payer"
        assert snapshot["error_type"] == "PaymentDeclined"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content",
        [b"not json", b"[]", b'{"Body": {}}', b'{"Body": {"stkCallback": {"CheckoutRequestID": "x", "ResultCode": 0}}}'],
    )
    async def test_unusable_callbacks_still_accepted(self, client: httpx.AsyncClient, content: bytes) -> None:
        """Daraja must always get a 200 so it stops redelivering."""
        response = await client.post(
            "/payments/stk/callback", content=content, headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 200
        assert response.json()["ResultCode"] == "0"

    @pytest.mark.asyncio
    async def test_manual_receipt_and_cancel(self, client: httpx.AsyncClient, bill) -> None:
        session_id = (await open_session(client, bill.id))["session_id"]
        await client.post(
            f"/checkout/sessions/{session_id}/mpesa", json={"phone": "0712345678", "amount": 200}
        )

        snapshot = (
            await client.post(
                f"/checkout/sessions/{session_id}/manual-receipt", json={"receipt_code": "rjx9kq2l1m"}
            )
        ).json()

        assert snapshot["state"] == "Succeeded"
        assert snapshot["receipt_code"] == "RJX9KQ2L1M"
        assert Decimal(snapshot["amount_paid"]) == Decimal("200")

        snapshot = (await client.post(f"/checkout/sessions/{session_id}/reset")).json()
        assert snapshot["state"] == "Idle"

    @pytest.mark.asyncio
    async def test_invalid_body(self, client: httpx.AsyncClient, bill) -> None:
        session_id = (await open_session(client, bill.id))["session_id"]

        response = await client.post(
            f"/checkout/sessions/{session_id}/mpesa", json={"phone": "0712345678", "amount": 0}
        )

        assert response.status_code == 422


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_stk_push_rate_limited(self, client: httpx.AsyncClient, bill, daraja: FakeDaraja) -> None:
        """The eleventh STK push in a minute from one client is refused."""
        session_id = (await open_session(client, bill.id))["session_id"]
        url = f"/checkout/sessions/{session_id}/mpesa"

        statuses = []
        for _ in range(11):
            response = await client.post(url, json={"phone": "0712345678", "amount": 100})
            statuses.append(response.status_code)

        assert statuses[:10] == [200] * 10
        assert statuses[10] == 429
        assert daraja.calls(STK_PATH) == 10


class TestTendersAndInbound:
    """Split tenders and C2B payments over HTTP."""

    @pytest.mark.asyncio
    async def test_stage_and_confirm(self, client: httpx.AsyncClient, bill) -> None:
        session_id = (await open_session(client, bill.id))["session_id"]

        snapshot = (
            await client.post(f"/checkout/sessions/{session_id}/tenders", json={"method": "Cash", "amount": 400})
        ).json()
        assert Decimal(snapshot["staged_total"]) == Decimal("400")

        snapshot = (await client.post(f"/checkout/sessions/{session_id}/confirm")).json()

        assert snapshot["bill_status"] == "Partial"
        assert Decimal(snapshot["outstanding"]) == Decimal("600")
        assert snapshot["staged_tenders"] == []

    @pytest.mark.asyncio
    async def test_pay_in_full_with_change(self, client: httpx.AsyncClient, bill) -> None:
        session_id = (await open_session(client, bill.id))["session_id"]
        await client.post(f"/checkout/sessions/{session_id}/tenders", json={"method": "Cash", "amount": 1000})

        snapshot = (
            await client.post(f"/checkout/sessions/{session_id}/confirm", json={"allow_change": True})
        ).json()

        assert snapshot["bill_status"] == "Completed"

    @pytest.mark.asyncio
    async def test_remove_tender(self, client: httpx.AsyncClient, bill) -> None:
        session_id = (await open_session(client, bill.id))["session_id"]
        await client.post(f"/checkout/sessions/{session_id}/tenders", json={"method": "Cash", "amount": 100})
        await client.post(f"/checkout/sessions/{session_id}/tenders", json={"method": "Card", "amount": 200})

        snapshot = (await client.delete(f"/checkout/sessions/{session_id}/tenders/0")).json()
        assert [t["method"] for t in snapshot["staged_tenders"]] == ["Card"]

        snapshot = (await client.delete(f"/checkout/sessions/{session_id}/tenders")).json()
        assert snapshot["staged_tenders"] == []

    @pytest.mark.asyncio
    async def test_c2b_confirmation_then_link(self, client: httpx.AsyncClient, bill) -> None:
        confirmation = {
            "TransactionType": "Pay Bill",
            "TransID": "SJK4H7XY2P",
            "TransTime": "20260301101500",
            "TransAmount": "400.00",
            "BusinessShortCode": "174379",
            "BillRefNumber": "RCP-0001",
            "MSISDN": "254712345678",
            "FirstName": "Jane",
            "MiddleName": "",
            "LastName": "Wanjiku",
        }

        response = await client.post("/payments/c2b/confirmation", json=confirmation)
        assert response.json()["ResultCode"] == "0"
        # Redelivery of the same TransID is ignored
        await client.post("/payments/c2b/confirmation", json=confirmation)

        listed = (await client.get("/checkout/notifications")).json()
        assert len(listed) == 1
        notification = listed[0]
        assert notification["external_transaction_id"] == "SJK4H7XY2P"
        assert notification["payer_name"] == "Jane Wanjiku"
        assert notification["extra"]["BusinessShortCode"] == "174379"

        session_id = (await open_session(client, bill.id))["session_id"]
        snapshot = (
            await client.post(f"/checkout/sessions/{session_id}/notifications/{notification['id']}")
        ).json()

        assert snapshot["state"] == "Succeeded"
        assert snapshot["receipt_code"] == "SJK4H7XY2P"
        assert Decimal(snapshot["amount_paid"]) == Decimal("400")
        assert (await client.get("/checkout/notifications")).json() == []

    @pytest.mark.asyncio
    async def test_c2b_confirmation_without_amount(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/payments/c2b/confirmation", json={"TransID": "SJK4H7XY2P"})

        assert response.status_code == 200
        assert (await client.get("/checkout/notifications")).json() == []

    @pytest.mark.asyncio
    async def test_notification_limit_bounds(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/checkout/notifications", params={"limit": 0})

        assert response.status_code == 422
