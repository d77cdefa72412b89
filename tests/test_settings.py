"""
Tests for settings parsing and service wiring.
"""

import json
import logging

import httpx
import pytest

from gateway_api.services import build_adapters, build_services, credit_floors_from_json
from gateway_api.settings import Settings
from provider_gateway.adapters import Capability, OpenRouterAdapter, TwilioAdapter
from provider_gateway.budget import InMemoryCreditLedger
from provider_gateway.credit import Credit
from provider_gateway.metering import InMemoryMeterEventStore
from provider_gateway.rate_limit import CircuitBreaker

NO_PROVIDERS = dict(
    openrouter_api_key=None,
    replicate_api_token=None,
    elevenlabs_api_key=None,
    deepgram_api_key=None,
    twilio_account_sid=None,
    twilio_auth_token=None,
    pg_dsn=None,
    meter_wal_path=None,
    meter_dlq_path=None,
)


@pytest.fixture
async def http_client():
    async with httpx.AsyncClient() as client:
        yield client


class TestCreditFloors:
    def test_parses_dollar_amounts(self):
        floors = credit_floors_from_json('{"sms-outbound": "0.05", "tts": 0.02}')
        assert floors == {
            Capability.SMS_OUTBOUND: Credit.from_cents(5),
            Capability.TTS: Credit.from_cents(2),
        }

    def test_empty(self):
        assert credit_floors_from_json(None) == {}
        assert credit_floors_from_json("") == {}

    def test_rejects_non_object(self):
        with pytest.raises(ValueError):
            credit_floors_from_json("[]")

    def test_rejects_unknown_capability(self):
        with pytest.raises(ValueError):
            credit_floors_from_json('{"teleportation": 1}')


class TestSettings:
    def test_rate_limit_groups(self):
        settings = Settings(rate_limit_llm=5, rate_limit_telephony=7)
        limits = settings.rate_limits()
        assert limits["llm"] == 5
        assert limits["telephony"] == 7
        assert set(limits) == {"llm", "imageGen", "audioSpeech", "telephony"}


class TestBuildAdapters:
    """Test which adapters are configured and in what order."""

    def test_nothing_configured(self, http_client):
        assert build_adapters(Settings(**NO_PROVIDERS), http_client) == []

    def test_provider_order(self, http_client):
        settings = Settings(
            **{
                **NO_PROVIDERS,
                "openrouter_api_key": "or-key",
                "twilio_account_sid": "AC1",
                "twilio_auth_token": "token",
                "provider_order": ("twilio",),
            }
        )
        adapters = build_adapters(settings, http_client)
        assert [type(adapter) for adapter in adapters] == [TwilioAdapter, OpenRouterAdapter]

    def test_twilio_needs_sid_and_token(self, http_client):
        settings = Settings(**{**NO_PROVIDERS, "twilio_account_sid": "AC1"})
        assert build_adapters(settings, http_client) == []


class TestBuildServices:
    async def test_in_memory_without_database(self, http_client):
        services = await build_services(
            Settings(**{**NO_PROVIDERS, "service_keys_json": '{"sk-1": {"tenant_id": "t1"}}'}),
            http_client,
        )

        assert isinstance(services.gateway._credit_gate.ledger, InMemoryCreditLedger)
        assert isinstance(services.meter._store, InMemoryMeterEventStore)
        assert services.verifier is None
        assert services.telephony is None
        assert (await services.key_resolver.resolve("sk-1")).id == "t1"
        assert (await services.webhook_tenants.resolve("t1")).id == "t1"

        await services.start()
        await services.close()

    async def test_twilio_enables_webhooks(self, http_client):
        services = await build_services(
            Settings(**{**NO_PROVIDERS, "twilio_account_sid": "AC1", "twilio_auth_token": "token"}),
            http_client,
        )
        assert services.verifier is not None
        assert isinstance(services.telephony, TwilioAdapter)
        await services.close()

    async def test_spend_limits_see_buffered_meter(self, http_client):
        services = await build_services(Settings(**{**NO_PROVIDERS, "meter_flush_interval_sec": 0.5}), http_client)
        assert services.gateway._budget_checker._pending is services.meter
        assert services.meter._flush_interval == 0.5
        assert services.meter.start in services.startup
        await services.close()

    async def test_circuit_breaker_from_settings(self, http_client):
        settings = Settings(
            **{
                **NO_PROVIDERS,
                "circuit_breaker_max_requests": 7,
                "circuit_breaker_window_sec": 5,
                "circuit_breaker_pause_sec": 60,
            }
        )
        services = await build_services(settings, http_client)
        breaker = services.gateway._circuit_breaker
        assert isinstance(breaker, CircuitBreaker)
        assert (breaker.max_requests, breaker.window_seconds, breaker.pause_seconds) == (7, 5.0, 60.0)
        await services.close()

    async def test_configured_providers_log_redacted_credentials(self, http_client, caplog):
        settings = Settings(**{**NO_PROVIDERS, "openrouter_api_key": "sk-or-v1-abcdef123456"})
        with caplog.at_level(logging.INFO, logger="provider_gateway"):
            services = await build_services(settings, http_client)
        await services.close()

        assert "sk-or-v1-abcdef123456" not in caplog.text
        [record] = [
            json.loads(record.getMessage())
            for record in caplog.records
            if record.name == "provider_gateway" and "Provider configured" in record.getMessage()
        ]
        assert record["provider"] == "openrouter"
        assert record["credential"] == "sk-o...3456"
