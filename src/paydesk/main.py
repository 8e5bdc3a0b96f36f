"""
Main FastAPI application module for Paydesk.

This module initializes the FastAPI application, wires the payment core
(gateway, poller, ledger, inbound matcher) into a session registry,
configures middleware and registers API routers.
"""

import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from .config import settings
from .db import get_c2b_supabase, get_session_factory, init_db
from .routers import checkout, payments
from .services.callbacks import CallbackFirstGateway
from .services.inbound import InboundMatcher, SqlInboundSource, SupabaseInboundSource
from .services.ledger import PaymentLedger
from .services.mpesa import MPesaGateway
from .services.poller import StatusPoller
from .services.settlement import CheckoutSessions
from .services.store import BillStore
from .utils.logging import get_logger, setup_logging

# Set up structured logging
setup_logging(level="DEBUG" if settings.debug else "INFO")
logger = get_logger(__name__)

limiter = checkout.limiter


def build_sessions() -> CheckoutSessions:
    """
    Assemble the payment core from settings.

    Inbound C2B payments are read from the producer's Supabase project when
    one is configured, otherwise from the local database.
    """
    session_factory = get_session_factory()
    store = BillStore(session_factory)
    gateway = MPesaGateway(environment=settings.mpesa_environment)

    if settings.c2b_supabase_url and settings.c2b_supabase_key:
        inbound_source = SupabaseInboundSource(get_c2b_supabase())
    else:
        inbound_source = SqlInboundSource(session_factory)

    return CheckoutSessions(
        store=store,
        gateway=gateway,
        poller=StatusPoller(CallbackFirstGateway(gateway, store)),
        ledger=PaymentLedger(store),
        inbound=InboundMatcher(inbound_source),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.

    Creates missing tables and the session registry on startup; cancels
    outstanding polls on shutdown. A registry already placed on app.state
    (tests do this) is kept.
    """
    # Startup
    logger.info("Application starting up")
    await init_db()
    if getattr(app.state, "sessions", None) is None:
        app.state.sessions = build_sessions()

    yield

    # Shutdown
    logger.info("Application shutting down")
    app.state.sessions.close_all()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="Bill payment collection and reconciliation with M-PESA STK Push and C2B",
    version="1.0.0",
    lifespan=lifespan,
)

# Attach rate limiter to app
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Configure CORS middleware (operator terminals are served from other origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next) -> Response:
    """
    Correlation ID middleware.

    Generates a unique correlation ID for each request to enable request tracing
    across logs. The correlation ID is stored in request state and added to
    response headers.
    """
    correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
    request.state.correlation_id = correlation_id

    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id
    return response


@app.middleware("http")
async def log_requests(request: Request, call_next) -> Response:
    """Log method, path, status and processing time of every request."""
    start_time = time.time()
    correlation_id = getattr(request.state, "correlation_id", None)

    logger.info(
        f"Incoming request: {request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "correlation_id": correlation_id,
        },
    )

    response = await call_next(request)
    process_time = time.time() - start_time

    logger.info(
        f"Request completed: {request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "process_time": f"{process_time:.4f}s",
            "correlation_id": correlation_id,
        },
    )

    response.headers["X-Process-Time"] = str(process_time)
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.

    Logs the exception with full stack trace and returns a 500 with an error
    ID for tracking. Does not expose technical details to users.
    """
    error_id = str(uuid.uuid4())
    correlation_id = getattr(request.state, "correlation_id", None)

    logger.error(
        "Unhandled exception occurred",
        extra={
            "error_id": error_id,
            "correlation_id": correlation_id,
            "error_type": type(exc).__name__,
            "error_message": str(exc),
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "error_id": error_id,
            "message": "An unexpected error occurred. Please contact support with the error ID if the issue persists.",
        },
        headers={"X-Error-ID": error_id},
    )


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.get("/readyz", tags=["health"])
async def readiness_check() -> dict[str, str]:
    """
    Readiness check endpoint.

    Raises:
        HTTPException: 503 if the database is not reachable
    """
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        return {"status": "ready", "database": "connected"}
    except Exception as e:
        logger.error(
            "Readiness check failed - database connection error",
            extra={"error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=503, detail="Database connection unavailable")


# Register routers
app.include_router(checkout.router, prefix="/checkout", tags=["checkout"])
app.include_router(payments.router, prefix="/payments", tags=["payments"])

logger.info("Paydesk application initialized successfully")
