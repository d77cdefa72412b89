"""
Fixtures for route tests.

The app is driven in-process through ``httpx.ASGITransport`` with
collaborators wired explicitly, so no lifespan or network is involved.
"""

from __future__ import annotations

import httpx
import pytest

from gateway_api.app import create_app
from gateway_api.auth import StaticServiceKeyResolver, StaticWebhookTenantResolver
from gateway_api.services import GatewayServices
from gateway_api.settings import Settings
from provider_gateway.adapters import AdapterRegistry
from provider_gateway.budget import CreditGate, GatewayTenant
from provider_gateway.gateway import MeteredGateway
from provider_gateway.logging import get_logger
from provider_gateway.webhooks import InMemorySigPenaltyStore, WebhookVerifier

from tests.fakes import FakeChatAdapter, RecordingTransport, make_twilio, twilio_handler

SERVICE_KEY = "sk-gw-test"
PUBLIC_BASE = "https://gw.example.com"


@pytest.fixture
def chat_adapter() -> FakeChatAdapter:
    return FakeChatAdapter()


@pytest.fixture
def twilio_upstream() -> RecordingTransport:
    return RecordingTransport(twilio_handler)


@pytest.fixture
def penalties() -> InMemorySigPenaltyStore:
    return InMemorySigPenaltyStore()


@pytest.fixture
def services(chat_adapter, twilio_upstream, penalties, ledger, meter) -> GatewayServices:
    twilio = make_twilio(twilio_upstream.client())
    keys = StaticServiceKeyResolver.from_keys({SERVICE_KEY: GatewayTenant(id="tenant-1")})
    return GatewayServices(
        gateway=MeteredGateway(
            registry=AdapterRegistry([chat_adapter, twilio]),
            meter=meter,
            credit_gate=CreditGate(ledger=ledger),
        ),
        key_resolver=keys,
        webhook_tenants=StaticWebhookTenantResolver.from_service_keys(keys),
        logger=get_logger("gateway_api.tests"),
        verifier=WebhookVerifier(
            auth_token="twilio-token",
            webhook_base_url=f"{PUBLIC_BASE}/v1",
            penalties=penalties,
        ),
        telephony=twilio,
        meter=meter,
    )


@pytest.fixture
async def client(services):
    app = create_app(services, settings=Settings(base_path="/v1"))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url=PUBLIC_BASE) as client:
        yield client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {SERVICE_KEY}"}
