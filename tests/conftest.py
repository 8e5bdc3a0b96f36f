"""
Shared fixtures for Paydesk tests.

Each test gets its own SQLite file database and a scripted Daraja served
through httpx.MockTransport, so no test touches the network.
"""

from decimal import Decimal

import httpx
import pybreaker
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.paydesk.db import init_db
from src.paydesk.services.callbacks import CallbackFirstGateway
from src.paydesk.services.inbound import InboundMatcher, SqlInboundSource
from src.paydesk.services.ledger import PaymentLedger
from src.paydesk.services.mpesa import MPesaGateway
from src.paydesk.services.poller import StatusPoller
from src.paydesk.services.settlement import CheckoutSessions
from src.paydesk.services.store import BillStore
from tests.daraja import FakeDaraja


@pytest.fixture(autouse=True)
def clear_token_cache():
    """Token cache is class-level; keep tests independent."""
    MPesaGateway._token_cache.clear()
    yield
    MPesaGateway._token_cache.clear()


@pytest.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'paydesk.db'}")
    await init_db(engine)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> BillStore:
    return BillStore(session_factory)


@pytest.fixture
def daraja() -> FakeDaraja:
    return FakeDaraja()


@pytest.fixture
def gateway(daraja: FakeDaraja) -> MPesaGateway:
    return MPesaGateway(
        environment="sandbox",
        transport=httpx.MockTransport(daraja.handler),
        retry_backoff=0,
        breaker=pybreaker.CircuitBreaker(fail_max=5, reset_timeout=60),
    )


@pytest.fixture
def inbound_source(session_factory) -> SqlInboundSource:
    return SqlInboundSource(session_factory)


@pytest.fixture
def sessions(store, gateway, inbound_source) -> CheckoutSessions:
    """Fully wired session registry polling every 10ms."""
    poller = StatusPoller(
        CallbackFirstGateway(gateway, store),
        interval=0.01,
        max_attempts=24,
        receipt_retries=5,
        receipt_interval=0,
    )
    registry = CheckoutSessions(
        store=store,
        gateway=gateway,
        poller=poller,
        ledger=PaymentLedger(store),
        inbound=InboundMatcher(inbound_source),
    )
    yield registry
    registry.close_all()


@pytest.fixture
async def bill(store):
    """A KES 1,000 bill with nothing paid."""
    return await store.add_bill("RCP-0001", Decimal("1000.00"))
