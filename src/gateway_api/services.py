"""Explicit wiring of the gateway's collaborators for one application instance."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx

from provider_gateway.adapters import (
    AdapterRegistry,
    Capability,
    DeepgramAdapter,
    ElevenLabsAdapter,
    OpenRouterAdapter,
    ReplicateAdapter,
    TwilioAdapter,
)
from provider_gateway.budget import (
    CreditGate,
    InMemoryCreditLedger,
    SpendLimitBudgetChecker,
)
from provider_gateway.credit import Credit
from provider_gateway.gateway import MeteredGateway
from provider_gateway.logging import StructuredLogger, configure_logging, redact_secret
from provider_gateway.margin import margin_config_from_json
from provider_gateway.metering import InMemoryMeterEventStore, MeterEmitter
from provider_gateway.overrides import InMemoryRateOverrideRepository, RateOverrideCache, RateOverrideService
from provider_gateway.rate_limit import CapabilityRateLimiter, CircuitBreaker
from provider_gateway.webhooks import InMemorySigPenaltyStore, PenaltyPolicy, WebhookVerifier

from .auth import ServiceKeyResolver, StaticServiceKeyResolver, StaticWebhookTenantResolver, WebhookTenantResolver
from .pg import (
    GatewayDB,
    PgCreditLedger,
    PgMeterEventStore,
    PgRateOverrideRepository,
    PgSigPenaltyStore,
    PgSpendAggregator,
    create_pool,
)
from .settings import Settings


@dataclass
class GatewayServices:
    gateway: MeteredGateway
    key_resolver: ServiceKeyResolver
    webhook_tenants: WebhookTenantResolver
    logger: StructuredLogger
    verifier: WebhookVerifier | None = None
    telephony: TwilioAdapter | None = None
    meter: Any = None
    overrides: RateOverrideService | None = None
    startup: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)
    shutdown: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    async def start(self) -> None:
        for hook in self.startup:
            await hook()

    async def close(self) -> None:
        # reverse order of construction
        for hook in reversed(self.shutdown):
            await hook()


def credit_floors_from_json(raw: str | None) -> dict[Capability, Credit]:
    data = json.loads(raw or "{}")
    if not isinstance(data, dict):
        raise ValueError("credit floors must be a JSON object")
    return {Capability(key): Credit.from_dollars(str(value)) for key, value in data.items()}


def _credential(settings: Settings, provider: str) -> str | None:
    return {
        "openrouter": settings.openrouter_api_key,
        "deepgram": settings.deepgram_api_key,
        "replicate": settings.replicate_api_token,
        "elevenlabs": settings.elevenlabs_api_key,
        "twilio": settings.twilio_auth_token,
    }.get(provider)


def build_adapters(settings: Settings, client: httpx.AsyncClient) -> list[Any]:
    margin_config = margin_config_from_json(settings.margin_rules_json, default_margin=Decimal(settings.default_margin))
    adapters: dict[str, Any] = {}
    if settings.openrouter_api_key:
        adapters["openrouter"] = OpenRouterAdapter(
            api_key=settings.openrouter_api_key,
            client=client,
            margin_config=margin_config,
            base_url=settings.openrouter_base_url,
        )
    if settings.deepgram_api_key:
        adapters["deepgram"] = DeepgramAdapter(
            api_key=settings.deepgram_api_key,
            client=client,
            margin_config=margin_config,
            base_url=settings.deepgram_base_url,
        )
    if settings.replicate_api_token:
        adapters["replicate"] = ReplicateAdapter(
            api_token=settings.replicate_api_token,
            client=client,
            margin_config=margin_config,
            base_url=settings.replicate_base_url,
            max_poll_attempts=settings.replicate_max_poll_attempts,
            poll_interval=settings.replicate_poll_interval_sec,
        )
    if settings.elevenlabs_api_key:
        adapters["elevenlabs"] = ElevenLabsAdapter(
            api_key=settings.elevenlabs_api_key,
            client=client,
            margin_config=margin_config,
            base_url=settings.elevenlabs_base_url,
        )
    if settings.twilio_account_sid and settings.twilio_auth_token:
        adapters["twilio"] = TwilioAdapter(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            client=client,
            margin_config=margin_config,
            webhook_base_url=settings.webhook_base_url,
            base_url=settings.twilio_base_url,
            default_twiml_url=settings.twilio_default_twiml_url,
            cost_per_minute=Decimal(settings.phone_cost_per_minute),
            sms_cost=Decimal(settings.sms_cost),
            mms_cost=Decimal(settings.mms_cost),
            number_monthly_cost=Decimal(settings.number_monthly_cost),
        )
    ordered = [adapters.pop(name) for name in settings.provider_order if name in adapters]
    return ordered + list(adapters.values())


async def build_services(settings: Settings, client: httpx.AsyncClient) -> GatewayServices:
    """
    Construct the production collaborators.

    Postgres-backed stores are used when ``pg_dsn`` is set, in-memory ones
    otherwise. The caller owns ``client``.
    """
    logger = configure_logging(level=settings.log_level, json_output=settings.log_json)
    key_resolver = StaticServiceKeyResolver.from_json(settings.service_keys_json)
    policy = PenaltyPolicy(
        threshold=settings.sig_penalty_threshold,
        lockout_seconds=settings.sig_lockout_sec,
        decay_seconds=settings.sig_decay_sec,
    )
    startup: list[Callable[[], Awaitable[Any]]] = []
    shutdown: list[Callable[[], Awaitable[Any]]] = []

    if settings.pg_dsn:
        pool = await create_pool(settings.pg_dsn, min_size=settings.pg_pool_min, max_size=settings.pg_pool_max)
        await GatewayDB(pool=pool).ensure_schema()
        shutdown.append(pool.close)
        ledger = PgCreditLedger(pool=pool)
        store = PgMeterEventStore(pool=pool)
        aggregator = PgSpendAggregator(pool=pool)
        penalties = PgSigPenaltyStore(pool=pool, policy=policy)
        override_repository = PgRateOverrideRepository(pool=pool)
    else:
        logger.warning("GW_PG_DSN not set; ledger and meter are in-memory")
        ledger = InMemoryCreditLedger()
        store = InMemoryMeterEventStore()
        aggregator = store
        penalties = InMemorySigPenaltyStore(policy)
        override_repository = InMemoryRateOverrideRepository()

    meter = MeterEmitter(
        store,
        batch_size=settings.meter_batch_size,
        wal_path=settings.meter_wal_path,
        dlq_path=settings.meter_dlq_path,
        max_retries=settings.meter_max_retries,
        flush_interval=settings.meter_flush_interval_sec,
    )
    startup.append(meter.replay_wal)
    startup.append(meter.start)
    shutdown.append(meter.close)

    override_cache = RateOverrideCache(override_repository, ttl_seconds=settings.override_cache_ttl_sec)
    adapters = build_adapters(settings, client)
    for adapter in adapters:
        logger.info(
            "Provider configured",
            provider=adapter.name,
            capabilities=sorted(capability.value for capability in adapter.capabilities),
            credential=redact_secret(_credential(settings, adapter.name)),
        )
    gateway = MeteredGateway(
        registry=AdapterRegistry(adapters),
        meter=meter,
        budget_checker=SpendLimitBudgetChecker(
            aggregator,
            pending=meter,
            cache_ttl_seconds=settings.budget_cache_ttl_sec,
        ),
        credit_gate=CreditGate(ledger=ledger, floors=credit_floors_from_json(settings.credit_floors_json)),
        override_cache=override_cache,
        rate_limiter=CapabilityRateLimiter(settings.rate_limits()),
        circuit_breaker=CircuitBreaker(
            max_requests=settings.circuit_breaker_max_requests,
            window_seconds=settings.circuit_breaker_window_sec,
            pause_seconds=settings.circuit_breaker_pause_sec,
        ),
    )

    telephony = next((adapter for adapter in adapters if isinstance(adapter, TwilioAdapter)), None)
    verifier = None
    if settings.twilio_auth_token:
        verifier = WebhookVerifier(
            auth_token=settings.twilio_auth_token,
            webhook_base_url=settings.webhook_base_url,
            penalties=penalties,
        )

    return GatewayServices(
        gateway=gateway,
        key_resolver=key_resolver,
        webhook_tenants=StaticWebhookTenantResolver.from_service_keys(key_resolver),
        logger=logger,
        verifier=verifier,
        telephony=telephony,
        meter=meter,
        overrides=RateOverrideService(repository=override_repository, cache=override_cache),
        startup=startup,
        shutdown=shutdown,
    )
