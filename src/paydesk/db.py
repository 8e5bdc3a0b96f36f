"""
Database setup for Paydesk.

The payment ledger lives in a SQL database reached through SQLAlchemy's
async engine. Inbound C2B collections may instead come from a separate
Supabase project owned by the producer app; that client is created lazily
and only when configured.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from supabase import Client, create_client

from .config import settings
from .utils.logging import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


# Module-level caches for lazy initialization
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None
_c2b_client: Optional[Client] = None


def get_engine() -> AsyncEngine:
    """
    Get or create the async engine for ``settings.database_url``.

    Returns:
        AsyncEngine: The shared engine instance.
    """
    global _engine

    if _engine is None:
        logger.info(
            "Creating database engine",
            extra={"database": settings.database_url.split("://", 1)[0]},
        )
        _engine = create_async_engine(settings.database_url, echo=False)

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory bound to the shared engine."""
    global _session_factory

    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )

    return _session_factory


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables that do not exist yet."""
    # Models must be imported so their tables register on Base.metadata
    from . import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables ensured")


def get_c2b_supabase() -> Client:
    """
    Get or create the Supabase client for the external C2B producer.

    Uses lazy initialization to defer client creation until first use.

    Returns:
        Client: A Supabase client instance.

    Raises:
        ValueError: If the C2B Supabase URL or key is not configured
    """
    global _c2b_client

    if _c2b_client is None:
        if not settings.c2b_supabase_url or not settings.c2b_supabase_key:
            logger.error("C2B Supabase project is not configured")
            raise ValueError("C2B_SUPABASE_URL and C2B_SUPABASE_KEY must be set")

        logger.info("Initializing C2B Supabase client...")
        try:
            _c2b_client = create_client(
                supabase_url=settings.c2b_supabase_url,
                supabase_key=settings.c2b_supabase_key,
            )
            logger.info("C2B Supabase client initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize C2B Supabase client: {e}", exc_info=True)
            raise

    return _c2b_client
