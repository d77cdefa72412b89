"""
Shared fixtures for provider-gateway tests.

Fakes live in ``tests/fakes.py``; this module wires them into fixtures.
"""

from __future__ import annotations

from typing import Any

import pytest

from provider_gateway.adapters import AdapterRegistry
from provider_gateway.budget import CreditGate, GatewayTenant, InMemoryCreditLedger, SpendLimits
from provider_gateway.credit import Credit
from provider_gateway.gateway import MeteredGateway
from provider_gateway.metering import InMemoryMeterSink


@pytest.fixture
def tenant() -> GatewayTenant:
    return GatewayTenant(id="tenant-1")


@pytest.fixture
def limited_tenant() -> GatewayTenant:
    return GatewayTenant(
        id="tenant-1",
        spend_limits=SpendLimits(max_spend_per_hour=Credit.from_dollars(1), max_spend_per_month=Credit.from_dollars(10)),
    )


@pytest.fixture
def ledger() -> InMemoryCreditLedger:
    return InMemoryCreditLedger({"tenant-1": Credit.from_dollars(10)})


@pytest.fixture
def meter() -> InMemoryMeterSink:
    return InMemoryMeterSink()


@pytest.fixture
def make_gateway(meter, ledger):
    """Factory for a gateway over the shared in-memory meter and ledger."""

    def _make(*adapters: Any, **kwargs: Any) -> MeteredGateway:
        kwargs.setdefault("credit_gate", CreditGate(ledger=ledger))
        return MeteredGateway(registry=AdapterRegistry(adapters), meter=meter, **kwargs)

    return _make
