"""
Structured logging for the provider gateway.

This module provides:
- JSON log records with consistent tenant/capability/provider fields
- A per-task context for request correlation
- Typed helpers for the billing pipeline (meter emission, upstream calls)
- Redaction helpers so keys and tokens never reach the log stream
"""

from __future__ import annotations

import json
import logging
import sys
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from .credit import Credit

_CONTEXT_FIELDS = ("request_id", "tenant_id", "capability", "provider")

# =============================================================================
# Log Context
# =============================================================================


@dataclass(frozen=True)
class LogContext:
    """Correlation fields stamped on every record emitted inside a request."""

    request_id: str | None = None
    tenant_id: str | None = None
    capability: str | None = None
    provider: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        fields = {name: getattr(self, name) for name in _CONTEXT_FIELDS if getattr(self, name) is not None}
        return {**fields, **self.extra}

    def with_update(self, **kwargs) -> LogContext:
        extra = kwargs.pop("extra", None) or {}
        known = {name: value for name, value in kwargs.items() if name in _CONTEXT_FIELDS}
        unknown = {name: value for name, value in kwargs.items() if name not in _CONTEXT_FIELDS}
        return replace(self, **known, extra={**self.extra, **unknown, **extra})


# Shared by every logger so a request id bound at the edge reaches all records.
_log_context: ContextVar[LogContext] = ContextVar("provider_gateway.log_context", default=LogContext())


def _json_default(value: Any) -> Any:
    if isinstance(value, Credit):
        return str(value.to_dollars())
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


# =============================================================================
# Structured Logger
# =============================================================================


class StructuredLogger:
    """
    Logger with structured JSON output and context tracking.

    Example:
        ```python
        logger = StructuredLogger("provider_gateway")

        with logger.request_context(tenant_id="t-1", capability="tts"):
            logger.info("upstream call complete", status=200)
        ```
    """

    def __init__(
        self,
        name: str = "provider_gateway",
        level: str = "INFO",
        json_output: bool = True,
    ):
        self.name = name
        self.json_output = json_output

        self._logger = logging.getLogger(name)
        self._logger.setLevel(logging.getLevelName(level.upper()))
        if not self._logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(JSONFormatter() if json_output else TextFormatter())
            self._logger.addHandler(handler)

    @property
    def context(self) -> LogContext:
        return _log_context.get()

    @contextmanager
    def request_context(self, request_id: str | None = None, **kwargs) -> Iterator[str]:
        """
        Bind a request id and billing fields to every record emitted inside the block.

        Args:
            request_id: Request ID (auto-generated if not provided)
            **kwargs: tenant_id, capability, provider, or any extra field

        Yields:
            The request ID
        """
        request_id = request_id or generate_request_id()
        token = _log_context.set(self.context.with_update(request_id=request_id, **kwargs))
        try:
            yield request_id
        finally:
            _log_context.reset(token)

    def _emit(self, level: int, message: str, event_type: str | None = None, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        payload: dict[str, Any] = {"message": message, **self.context.to_dict()}
        if event_type:
            payload["event_type"] = event_type
        payload.update(fields)

        if self.json_output:
            self._logger.log(level, json.dumps(payload, default=_json_default))
            return
        pairs = " ".join(f"{key}={_json_default(value)}" for key, value in payload.items() if key != "message")
        self._logger.log(level, f"{message} {pairs}".rstrip())

    def debug(self, message: str, **kwargs) -> None:
        self._emit(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        self._emit(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self._emit(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self._emit(logging.ERROR, message, **kwargs)

    # Pipeline events

    def log_upstream(
        self,
        provider: str,
        capability: str,
        *,
        status: int | None,
        duration_ms: float,
        **kwargs,
    ) -> None:
        """Log the outcome of a single upstream call."""
        ok = status is not None and 200 <= status < 300
        self._emit(
            logging.INFO if ok else logging.WARNING,
            f"Upstream {provider}/{capability} ({duration_ms:.0f}ms)",
            event_type="upstream",
            provider=provider,
            capability=capability,
            status=status,
            duration_ms=round(duration_ms, 2),
            **kwargs,
        )

    def log_meter_event(self, event: Any) -> None:
        self._emit(
            logging.INFO,
            f"Metered {event.capability} for {event.tenant} ({event.charge})",
            event_type="meter",
            meter_event_id=event.id,
            tenant_id=event.tenant,
            capability=event.capability,
            provider=event.provider,
            cost=event.cost,
            charge=event.charge,
            reference_id=event.reference_id,
        )

    def log_error(self, error: Exception, message: str | None = None, **kwargs) -> None:
        """Log an exception, lifting the gateway error code and HTTP status when present."""
        fields: dict[str, Any] = {"error_type": type(error).__name__, "error_message": str(error)}
        code = getattr(error, "code", None)
        if code is not None:
            fields["error_code"] = str(getattr(code, "value", code))
        status = getattr(error, "http_status", None)
        if status is not None:
            fields["http_status"] = status
        fields.update(kwargs)
        self._emit(logging.ERROR, message or f"{type(error).__name__}: {error}", event_type="error", **fields)


# =============================================================================
# Formatters
# =============================================================================


class JSONFormatter(logging.Formatter):
    """Wrap the JSON payload written by StructuredLogger with time, level and logger name."""

    def format(self, record: logging.LogRecord) -> str:
        body: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        raw = record.getMessage()
        try:
            parsed = json.loads(raw)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            body.update(parsed)
        else:
            body["message"] = raw
        if record.exc_info:
            body["exception"] = self.formatException(record.exc_info)
        return json.dumps(body, default=_json_default)


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        return f"{stamp} {record.levelname:<8} {record.name}: {record.getMessage()}"


# =============================================================================
# Utilities
# =============================================================================


def generate_request_id() -> str:
    return "req_" + uuid.uuid4().hex[:12]


def redact_secret(secret: str | None) -> str:
    """Redact an API key or auth token for safe logging."""
    if not secret:
        return "<not set>"
    if len(secret) <= 8:
        return "***"
    return f"{secret[:4]}...{secret[-4:]}"


def truncate_for_log(text: str, max_length: int = 200) -> str:
    if len(text) > max_length:
        return f"{text[:max_length]}... ({len(text)} chars total)"
    return text


@contextmanager
def timed() -> Iterator[dict[str, float]]:
    """Yield a dict whose ``elapsed_ms`` is filled in on exit."""
    timing = {"elapsed_ms": 0.0}
    start = time.perf_counter()
    try:
        yield timing
    finally:
        timing["elapsed_ms"] = (time.perf_counter() - start) * 1000


# =============================================================================
# Logger Registry
# =============================================================================

_loggers: dict[str, StructuredLogger] = {}


def get_logger(name: str = "provider_gateway") -> StructuredLogger:
    """Return the registered logger for ``name``, creating it on first use."""
    if name not in _loggers:
        _loggers[name] = StructuredLogger(name)
    return _loggers[name]


def configure_logging(level: str = "INFO", json_output: bool = True, name: str = "provider_gateway") -> StructuredLogger:
    """Configure and register the named logger."""
    logger = StructuredLogger(name, level=level, json_output=json_output)
    _loggers[name] = logger
    return logger


__all__ = [
    "LogContext",
    "StructuredLogger",
    "JSONFormatter",
    "TextFormatter",
    "generate_request_id",
    "redact_secret",
    "truncate_for_log",
    "timed",
    "get_logger",
    "configure_logging",
]
