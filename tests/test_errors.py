"""
Tests for the error taxonomy.
"""

import pytest

from provider_gateway.errors import (
    BudgetExceededError,
    CreditsExhaustedError,
    ErrorCode,
    ErrorContext,
    GatewayError,
    InsufficientCreditsError,
    InvalidApiKeyError,
    InvalidSignatureError,
    MissingFieldError,
    NumberNotFoundError,
    RateLimitExceededError,
    ServiceUnavailableError,
    SignatureLockoutError,
    UpstreamError,
    UpstreamTimeoutError,
    client_status_for_upstream,
)


class TestErrorCodes:
    """Test error code enumeration."""

    def test_codes_are_snake_case_strings(self):
        for code in ErrorCode:
            assert code.value == code.value.lower()
            assert " " not in code.value

    def test_codes_unique(self):
        values = [e.value for e in ErrorCode]
        assert len(values) == len(set(values))


class TestGatewayError:
    """Test base error behavior."""

    def test_str_includes_code(self):
        err = InvalidApiKeyError("Invalid API key")
        assert str(err) == "[invalid_api_key] Invalid API key"

    def test_to_body_shape(self):
        err = InsufficientCreditsError(
            "Insufficient credits",
            context=ErrorContext(tenant_id="t1", capability="tts"),
        )
        body = err.to_body()
        assert body == {
            "error": {
                "message": "Insufficient credits",
                "type": "billing_error",
                "code": "insufficient_credits",
                "tenant_id": "t1",
                "capability": "tts",
            }
        }

    def test_retry_after_in_body(self):
        err = RateLimitExceededError("slow down", retry_after=12)
        assert err.to_body()["error"]["retry_after"] == 12

    def test_overrides(self):
        err = GatewayError("x", code=ErrorCode.VALIDATION_ERROR, http_status=418)
        assert err.code is ErrorCode.VALIDATION_ERROR
        assert err.http_status == 418

    def test_to_dict_for_logging(self):
        cause = ValueError("boom")
        err = ServiceUnavailableError("down", cause=cause)
        data = err.to_dict()
        assert data["error_type"] == "ServiceUnavailableError"
        assert data["cause"] == "boom"


@pytest.mark.parametrize(
    ("error_class", "status", "code"),
    [
        (InvalidSignatureError, 401, "invalid_signature"),
        (SignatureLockoutError, 429, "signature_lockout"),
        (BudgetExceededError, 429, "budget_exceeded"),
        (InsufficientCreditsError, 402, "insufficient_credits"),
        (CreditsExhaustedError, 402, "credits_exhausted"),
        (MissingFieldError, 400, "missing_field"),
        (NumberNotFoundError, 404, "number_not_found"),
        (ServiceUnavailableError, 503, "service_unavailable"),
    ],
)
def test_status_and_code(error_class, status, code):
    err = error_class("message")
    assert err.http_status == status
    assert err.code.value == code


class TestUpstreamStatusMapping:
    """Test provider status to client status mapping."""

    def test_rate_limit_passes_through(self):
        err = UpstreamError("busy", upstream_status=429, retry_after=30, provider="openrouter")
        assert err.http_status == 429
        assert err.retry_after == 30
        assert err.context.provider == "openrouter"

    def test_client_errors_pass_through(self):
        assert client_status_for_upstream(400) == 400
        assert client_status_for_upstream(422) == 422

    def test_credential_rejection_is_bad_gateway(self):
        assert client_status_for_upstream(401) == 502
        assert client_status_for_upstream(403) == 502

    def test_server_and_network_errors_are_bad_gateway(self):
        assert client_status_for_upstream(503) == 502
        assert client_status_for_upstream(None) == 502

    def test_timeout(self):
        err = UpstreamTimeoutError("slow", provider="replicate")
        assert err.http_status == 504
        assert err.code is ErrorCode.UPSTREAM_TIMEOUT
