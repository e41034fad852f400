"""Shared core utilities for microservices.

Health checks, structured logging and the retry primitive used across services.
"""

from .health import ServiceHealth, HealthStatus, check_result
from .logging_config import (
    setup_logging,
    get_logger,
    RequestLoggingMiddleware,
    set_request_context,
    clear_request_context,
    generate_request_id,
    LoggerAdapter,
)
from .retry import RetryExhausted, backoff_delays, retry_with_backoff

__all__ = [
    # Health checks
    "ServiceHealth",
    "HealthStatus",
    "check_result",
    # Logging
    "setup_logging",
    "get_logger",
    "RequestLoggingMiddleware",
    "set_request_context",
    "clear_request_context",
    "generate_request_id",
    "LoggerAdapter",
    # Retry
    "RetryExhausted",
    "backoff_delays",
    "retry_with_backoff",
]
