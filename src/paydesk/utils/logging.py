"""
Structured JSON logging utility for the Paydesk payment core.

This module provides structured logging capabilities with JSON output format,
making logs easily parseable and searchable in production environments.
"""

import json
import logging
import sys
from typing import Any

# LogRecord attributes that are not user-supplied "extra" fields
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "correlation_id",
    }
)

# PII fields dropped by log_event
PII_FIELDS = frozenset(
    {
        "phone",
        "msisdn",
        "phone_number",
        "payer_msisdn",
        "payer_name",
        "customer_name",
        "name",
        "full_name",
        "email",
        "address",
    }
)

SENSITIVE_SUBSTRINGS = ("password", "token", "secret", "passkey", "credential")


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.

    Formats log records as JSON objects with timestamp, level, logger name,
    message, and any additional fields passed via the 'extra' parameter.
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a log record as a JSON string.

        Args:
            record: The log record to format

        Returns:
            JSON-formatted string representation of the log record
        """
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "correlation_id"):
            log_data["correlation_id"] = record.correlation_id

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Decimal amounts and enums are rendered with str()
        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """
    Configure application logging with JSON formatting.

    Sets up the root logger with JSON formatter and console handler.

    Args:
        level: The logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to INFO.

    Example:
        >>> setup_logging("DEBUG")
        >>> logger = get_logger(__name__)
        >>> logger.info("Application started")
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the specified name.

    Args:
        name: The name for the logger, typically __name__ of the calling module

    Returns:
        A configured logger instance

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Applying tenders", extra={"bill_id": "B-123"})
    """
    return logging.getLogger(name)


def log_api_call(
    service: str,
    endpoint: str,
    method: str,
    status_code: int,
    duration_ms: float,
    correlation_id: str | None = None,
    error_type: str | None = None,
) -> None:
    """
    Log API calls with metadata only (no request/response bodies with PII).

    Args:
        service: API service name (e.g., "mpesa")
        endpoint: API endpoint path
        method: HTTP method (GET, POST, etc.)
        status_code: HTTP response status code (0 when no response arrived)
        duration_ms: Request duration in milliseconds
        correlation_id: Request correlation ID for tracing
        error_type: Exception type if error occurred
    """
    logger = get_logger(__name__)
    extra_data = {
        "service": service,
        "endpoint": endpoint,
        "method": method,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }

    if correlation_id:
        extra_data["correlation_id"] = correlation_id

    if error_type:
        extra_data["error_type"] = error_type

    logger.info(f"API call to {service}", extra=extra_data)


def log_event(
    event: str,
    level: str = "INFO",
    correlation_id: str | None = None,
    **metadata: Any,
) -> None:
    """
    Log an event with privacy-compliant metadata.

    Drops common PII fields (phone, msisdn, payer_name, ...) and anything
    whose key looks like a credential.

    Example:
        >>> log_event(
        ...     "Checkout session state changed",
        ...     correlation_id="sess-123",
        ...     bill_id="B-001",
        ...     state="AwaitingConfirmation",
        ... )
    """
    filtered_metadata = {}
    for key, value in metadata.items():
        lowered = key.lower()
        if lowered in PII_FIELDS:
            continue
        if any(substring in lowered for substring in SENSITIVE_SUBSTRINGS):
            continue
        filtered_metadata[key] = value

    if correlation_id:
        filtered_metadata["correlation_id"] = correlation_id

    logger = get_logger(__name__)
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.log(log_level, event, extra=filtered_metadata)

