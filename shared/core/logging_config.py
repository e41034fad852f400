"""
Structured logging configuration

JSON log lines on stdout, one object per record, with the request and
checkout context attached so a single order can be followed across the
HTTP request, the webhook callback and the reconciliation sweep.
"""

import logging
import os
import re
import sys
import json
import time
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
checkout_id_var: ContextVar[Optional[str]] = ContextVar('checkout_id', default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "correlation_id": correlation_id_var,
    "user_id": user_id_var,
    "checkout_id": checkout_id_var,
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter understood by ELK, CloudWatch Insights and Datadog."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "@timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": os.getenv('SERVICE_NAME', 'unknown-service'),
            "environment": os.getenv('ENVIRONMENT', 'development'),
            "version": os.getenv('SERVICE_VERSION', '1.0.0'),
        }

        trace_context = current_context()
        if trace_context:
            log_obj["trace"] = trace_context

        log_obj["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
            "module": record.module
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_obj["error"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "stacktrace": traceback.format_exception(*record.exc_info)
            }

        if hasattr(record, 'extra_fields'):
            log_obj["custom"] = record.extra_fields

        if hasattr(record, 'duration_ms'):
            log_obj["performance"] = {
                "duration_ms": record.duration_ms
            }

        return json.dumps(log_obj, default=str)


class PerformanceFilter(logging.Filter):
    """Copies a ``duration`` (seconds) extra into ``duration_ms``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if hasattr(record, 'duration'):
            record.duration_ms = record.duration * 1000
        return True


class SecurityFilter(logging.Filter):
    """
    Redacts secrets and card data.

    Applies to the rendered message and to ``extra_fields`` keys such as
    authorization codes and webhook signatures.
    """

    SENSITIVE_FIELDS = {
        'password', 'token', 'api_key', 'secret', 'authorization',
        'authorization_code', 'signature', 'cookie', 'session', 'bin',
    }
    REDACTED = "***REDACTED***"
    PATTERNS = [
        # Paystack secret/public keys
        re.compile(r"\b(sk|pk)_(live|test)_[A-Za-z0-9]+\b"),
        # Bearer tokens
        re.compile(r"(?i)\bbearer\s+[A-Za-z0-9\-._~+/]+=*"),
        # Card numbers (13-19 digits, optional separators)
        re.compile(r"\b(?:\d[ -]?){13,19}\b"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern in self.PATTERNS:
            redacted = pattern.sub(self.REDACTED, redacted)
        if redacted != message:
            record.msg = redacted
            record.args = None

        extra_fields = getattr(record, 'extra_fields', None)
        if isinstance(extra_fields, dict):
            record.extra_fields = self._scrub(extra_fields)
        return True

    def _scrub(self, data: Dict[str, Any]) -> Dict[str, Any]:
        clean = {}
        for key, value in data.items():
            if key.lower() in self.SENSITIVE_FIELDS:
                clean[key] = self.REDACTED
            elif isinstance(value, dict):
                clean[key] = self._scrub(value)
            else:
                clean[key] = value
        return clean


QUIET_LOGGERS = ('uvicorn.access', 'httpx', 'httpcore', 'sqlalchemy.engine', 'alembic.runtime.migration')


def setup_logging(service_name: str, level: str = "INFO", quiet: tuple = QUIET_LOGGERS) -> None:
    """
    Route every log record to stdout as one JSON object per line.

    Args:
        service_name: Stamped on every record as ``service``
        level: Root log level name; unknown names fall back to INFO
        quiet: Chatty client/library loggers held at WARNING
    """
    os.environ['SERVICE_NAME'] = service_name

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    handler.addFilter(PerformanceFilter())
    handler.addFilter(SecurityFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers = [handler]

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized",
        extra={'extra_fields': {'service': service_name, 'level': level, 'quiet': list(quiet)}}
    )


class LoggerAdapter(logging.LoggerAdapter):
    """Merges the active request/checkout context into ``extra_fields``."""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get('extra') or {})
        fields = dict(extra.get('extra_fields') or {})
        for key, value in current_context().items():
            fields.setdefault(key, value)
        if fields:
            extra['extra_fields'] = fields
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str) -> LoggerAdapter:
    """Logger for ``name`` with request context support."""
    return LoggerAdapter(logging.getLogger(name), {})


def current_context() -> Dict[str, str]:
    """Non-empty context variables of the current task/thread."""
    return {key: var.get() for key, var in _CONTEXT_VARS.items() if var.get()}


def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    user_id: Optional[str] = None,
    checkout_id: Optional[Any] = None,
) -> None:
    """
    Set request context for distributed tracing

    Args:
        request_id: Unique request identifier
        correlation_id: Correlation ID for distributed tracing
        user_id: Authenticated user identifier
        checkout_id: Order being worked on
    """
    if request_id:
        request_id_var.set(request_id)
    if correlation_id:
        correlation_id_var.set(correlation_id)
    if user_id:
        user_id_var.set(str(user_id))
    if checkout_id is not None:
        checkout_id_var.set(str(checkout_id))


def clear_request_context() -> None:
    for var in _CONTEXT_VARS.values():
        var.set(None)


def generate_request_id() -> str:
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request and response.

    Assigns (or propagates) ``X-Request-ID`` and measures request duration.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        clear_request_context()
        request_id = request.headers.get('X-Request-ID') or generate_request_id()
        set_request_context(
            request_id=request_id,
            correlation_id=request.headers.get('X-Correlation-ID')
        )

        logger = get_logger(__name__)
        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={
                'extra_fields': {
                    'method': request.method,
                    'path': request.url.path,
                    'client_host': request.client.host if request.client else None
                }
            }
        )

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                exc_info=True,
                extra={
                    'extra_fields': {
                        'method': request.method,
                        'path': request.url.path,
                        'duration_ms': (time.perf_counter() - start_time) * 1000
                    }
                }
            )
            raise

        logger.info(
            f"Request completed: {request.method} {request.url.path}",
            extra={
                'extra_fields': {
                    'method': request.method,
                    'path': request.url.path,
                    'status_code': response.status_code,
                    'duration_ms': (time.perf_counter() - start_time) * 1000
                }
            }
        )
        response.headers['X-Request-ID'] = request_id
        return response
