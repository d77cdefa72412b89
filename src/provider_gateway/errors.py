"""
Error taxonomy for the provider gateway.

This module provides a hierarchical exception system with:
- Stable machine-readable codes shared with API clients
- The HTTP status each error maps to at the handler boundary
- Structured context for debugging
- Upstream status and Retry-After propagation for provider failures
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes returned in the ``error.code`` field."""

    # Authentication
    MISSING_API_KEY = "missing_api_key"
    INVALID_API_KEY = "invalid_api_key"
    INVALID_SIGNATURE = "invalid_signature"
    SIGNATURE_LOCKOUT = "signature_lockout"
    INVALID_TENANT = "invalid_tenant"

    # Budget / billing
    BUDGET_EXCEEDED = "budget_exceeded"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    CREDITS_EXHAUSTED = "credits_exhausted"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    CIRCUIT_BREAKER_TRIPPED = "circuit_breaker_tripped"

    # Validation
    MISSING_FIELD = "missing_field"
    VALIDATION_ERROR = "validation_error"
    PAYLOAD_TOO_LARGE = "payload_too_large"

    # Upstream
    UPSTREAM_ERROR = "upstream_error"
    UPSTREAM_TIMEOUT = "upstream_timeout"
    NO_NUMBERS_AVAILABLE = "no_numbers_available"
    NUMBER_NOT_FOUND = "number_not_found"

    # Configuration
    SERVICE_UNAVAILABLE = "service_unavailable"

    INTERNAL_ERROR = "internal_error"


@dataclass
class ErrorContext:
    """Structured context attached to an error and echoed in the response body."""

    provider: str | None = None
    capability: str | None = None
    tenant_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d = {
            "provider": self.provider,
            "capability": self.capability,
            "tenant_id": self.tenant_id,
        }
        d = {k: v for k, v in d.items() if v is not None}
        d.update(self.extra)
        return d


class GatewayError(Exception):
    """
    Base exception for all gateway errors.

    Attributes:
        code: Stable error code for programmatic handling
        message: Human-readable error message
        http_status: Status code returned to the API client
        error_type: OpenAI-style error category (``billing_error``, ...)
        retry_after: Seconds the client should wait before retrying, if known
        context: Structured debugging context
        cause: Original exception that caused this error
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    http_status: int = 500
    error_type: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        http_status: int | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "http_status": self.http_status,
            "retry_after": self.retry_after,
            "context": self.context.to_dict(),
            "cause": str(self.cause) if self.cause else None,
        }

    def to_body(self) -> dict[str, Any]:
        """Render the public ``{"error": {...}}`` response body."""
        body: dict[str, Any] = {
            "message": self.message,
            "type": self.error_type,
            "code": self.code.value,
        }
        for key, value in self.context.to_dict().items():
            body.setdefault(key, value)
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        return {"error": body}


# =============================================================================
# Authentication Errors
# =============================================================================


class AuthenticationError(GatewayError):
    code = ErrorCode.INVALID_API_KEY
    http_status = 401
    error_type = "authentication_error"


class MissingApiKeyError(AuthenticationError):
    code = ErrorCode.MISSING_API_KEY


class InvalidApiKeyError(AuthenticationError):
    code = ErrorCode.INVALID_API_KEY


class InvalidSignatureError(AuthenticationError):
    """Webhook signature missing or wrong. Recorded in the penalty store."""

    code = ErrorCode.INVALID_SIGNATURE


class InvalidTenantError(AuthenticationError):
    code = ErrorCode.INVALID_TENANT


class SignatureLockoutError(GatewayError):
    """Source is locked out after repeated signature failures."""

    code = ErrorCode.SIGNATURE_LOCKOUT
    http_status = 429
    error_type = "rate_limit_error"


# =============================================================================
# Budget Errors
# =============================================================================


class BillingError(GatewayError):
    error_type = "billing_error"


class BudgetExceededError(BillingError):
    code = ErrorCode.BUDGET_EXCEEDED
    http_status = 429


class InsufficientCreditsError(BillingError):
    code = ErrorCode.INSUFFICIENT_CREDITS
    http_status = 402


class CreditsExhaustedError(BillingError):
    code = ErrorCode.CREDITS_EXHAUSTED
    http_status = 402


class RateLimitExceededError(GatewayError):
    code = ErrorCode.RATE_LIMIT_EXCEEDED
    http_status = 429
    error_type = "rate_limit_error"


class CircuitBreakerTrippedError(RateLimitExceededError):
    """One tenant instance sent a burst of requests; it is paused until the circuit resets."""

    code = ErrorCode.CIRCUIT_BREAKER_TRIPPED


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(GatewayError):
    code = ErrorCode.VALIDATION_ERROR
    http_status = 400
    error_type = "invalid_request_error"


class MissingFieldError(ValidationError):
    code = ErrorCode.MISSING_FIELD


class PayloadTooLargeError(ValidationError):
    code = ErrorCode.PAYLOAD_TOO_LARGE
    http_status = 413


# =============================================================================
# Upstream Errors
# =============================================================================


class UpstreamError(GatewayError):
    """
    Provider call failed: network error or non-2xx response.

    ``upstream_status`` is the provider's own status; ``http_status`` is what
    the gateway returns to its client after mapping.
    """

    code = ErrorCode.UPSTREAM_ERROR
    http_status = 502
    error_type = "upstream_error"

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        retry_after: int | None = None,
        provider: str | None = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("http_status", client_status_for_upstream(upstream_status))
        context = kwargs.pop("context", None) or ErrorContext(provider=provider)
        super().__init__(message, retry_after=retry_after, context=context, **kwargs)
        self.upstream_status = upstream_status
        self.provider = provider


class UpstreamTimeoutError(UpstreamError):
    code = ErrorCode.UPSTREAM_TIMEOUT

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("http_status", 504)
        super().__init__(message, **kwargs)


class NoNumbersAvailableError(GatewayError):
    code = ErrorCode.NO_NUMBERS_AVAILABLE
    http_status = 404
    error_type = "not_found_error"


class NumberNotFoundError(GatewayError):
    code = ErrorCode.NUMBER_NOT_FOUND
    http_status = 404
    error_type = "not_found_error"


# =============================================================================
# Configuration Errors
# =============================================================================


class ServiceUnavailableError(GatewayError):
    code = ErrorCode.SERVICE_UNAVAILABLE
    http_status = 503


# =============================================================================
# Utilities
# =============================================================================


def client_status_for_upstream(upstream_status: int | None) -> int:
    """
    Map a provider's HTTP status to the status the gateway returns.

    429 and ordinary 4xx pass through. 401/403 mean the gateway's own provider
    credentials were rejected, so the client sees a 502 like any 5xx or
    network failure.
    """
    if upstream_status is None:
        return 502
    if upstream_status in (401, 403):
        return 502
    if 400 <= upstream_status < 500:
        return upstream_status
    return 502


__all__ = [
    "ErrorCode",
    "ErrorContext",
    "GatewayError",
    "AuthenticationError",
    "MissingApiKeyError",
    "InvalidApiKeyError",
    "InvalidSignatureError",
    "InvalidTenantError",
    "SignatureLockoutError",
    "BillingError",
    "BudgetExceededError",
    "InsufficientCreditsError",
    "CreditsExhaustedError",
    "RateLimitExceededError",
    "CircuitBreakerTrippedError",
    "ValidationError",
    "MissingFieldError",
    "PayloadTooLargeError",
    "UpstreamError",
    "UpstreamTimeoutError",
    "NoNumbersAvailableError",
    "NumberNotFoundError",
    "ServiceUnavailableError",
    "client_status_for_upstream",
]
