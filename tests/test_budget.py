"""
Tests for spend limits, credit floors and the ledger.
"""

from datetime import datetime, timedelta, timezone

import pytest

from provider_gateway.adapters import Capability
from provider_gateway.budget import (
    CreditGate,
    GatewayTenant,
    InMemoryCreditLedger,
    SpendLimitBudgetChecker,
    SpendLimits,
    month_start,
)
from provider_gateway.credit import Credit
from provider_gateway.errors import CreditsExhaustedError, InsufficientCreditsError
from provider_gateway.metering import InMemoryMeterEventStore, MeterEvent

from tests.fakes import FakeClock, FakeWallClock


class FailingAggregator:
    async def spend_since(self, tenant_id, since):
        raise ConnectionError("database unavailable")


class FailingLedger(InMemoryCreditLedger):
    async def debit(self, tenant_id, amount, *, reason, reference_id=None):
        raise ConnectionError("ledger down")


def _event(charge: Credit, at: datetime, tenant="tenant-1") -> MeterEvent:
    return MeterEvent(
        tenant=tenant,
        capability="chat-completions",
        provider="openrouter",
        cost=charge,
        charge=charge,
        timestamp=int(at.timestamp() * 1000),
    )


class TestInMemoryCreditLedger:
    """Test signed ledger entries."""

    async def test_debit_and_credit(self):
        ledger = InMemoryCreditLedger({"t1": Credit.from_dollars(5)})
        assert await ledger.debit("t1", Credit.from_dollars(2), reason="usage") == Credit.from_dollars(3)
        assert await ledger.credit("t1", Credit.from_dollars(1), reason="top-up") == Credit.from_dollars(4)
        assert [entry.amount for entry in ledger.entries] == [Credit.from_dollars(-2), Credit.from_dollars(1)]

    async def test_debit_may_go_negative(self):
        ledger = InMemoryCreditLedger({"t1": Credit.from_cents(1)})
        balance = await ledger.debit("t1", Credit.from_cents(5), reason="usage")
        assert balance == Credit.from_cents(-4)

    async def test_reference_id_applies_once(self):
        ledger = InMemoryCreditLedger({"t1": Credit.from_dollars(5)})
        await ledger.debit("t1", Credit.from_dollars(1), reason="call", reference_id="call:CA1")
        await ledger.debit("t1", Credit.from_dollars(1), reason="call", reference_id="call:CA1")
        assert await ledger.balance("t1") == Credit.from_dollars(4)
        assert await ledger.has_reference_id("call:CA1")
        assert len(ledger.entries) == 1

    async def test_unknown_tenant_has_zero_balance(self):
        assert await InMemoryCreditLedger().balance("nobody") == Credit.zero()


class TestCreditGate:
    """Test the credit floor check and post-call debit."""

    async def test_zero_balance_is_insufficient(self):
        gate = CreditGate(ledger=InMemoryCreditLedger({"t1": Credit.zero()}))
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await gate.check("t1", Capability.CHAT_COMPLETIONS)
        assert exc_info.value.http_status == 402
        assert exc_info.value.context.tenant_id == "t1"

    async def test_negative_balance_is_exhausted(self):
        gate = CreditGate(ledger=InMemoryCreditLedger({"t1": Credit.from_cents(-1)}))
        with pytest.raises(CreditsExhaustedError):
            await gate.check("t1", Capability.TTS)

    async def test_balance_below_capability_floor(self):
        gate = CreditGate(ledger=InMemoryCreditLedger({"t1": Credit.from_cents(10)}))
        assert await gate.check("t1", Capability.CHAT_COMPLETIONS) == Credit.from_cents(10)
        with pytest.raises(InsufficientCreditsError):
            await gate.check("t1", Capability.VIDEO_GENERATION)

    async def test_floor_overrides(self):
        gate = CreditGate(
            ledger=InMemoryCreditLedger(),
            floors={Capability.TTS: Credit.from_cents(50)},
        )
        assert gate.floor_for(Capability.TTS) == Credit.from_cents(50)
        assert gate.floor_for(Capability.SMS_INBOUND) == Credit.from_cents(1)

    def test_rejects_non_positive_floor(self):
        with pytest.raises(ValueError):
            CreditGate(ledger=InMemoryCreditLedger(), floors={Capability.TTS: Credit.zero()})

    async def test_debit_equals_charge(self):
        ledger = InMemoryCreditLedger({"t1": Credit.from_dollars(1)})
        gate = CreditGate(ledger=ledger)
        balance = await gate.debit("t1", Credit.from_cents(3), Capability.SMS_OUTBOUND)
        assert balance == Credit.from_cents(97)
        [entry] = ledger.entries
        assert entry.amount == Credit.from_cents(-3)
        assert entry.reason == "gateway:sms-outbound"

    async def test_zero_charge_is_not_debited(self):
        ledger = InMemoryCreditLedger({"t1": Credit.from_dollars(1)})
        assert await CreditGate(ledger=ledger).debit("t1", Credit.zero(), Capability.PHONE_OUTBOUND) is None
        assert ledger.entries == []

    async def test_debit_failure_is_logged_not_raised(self):
        gate = CreditGate(ledger=FailingLedger({"t1": Credit.from_dollars(1)}))
        assert await gate.debit("t1", Credit.from_cents(1), Capability.TTS) is None


class TestSpendLimitBudgetChecker:
    """Test hourly/monthly limits and the fail-closed path."""

    @pytest.fixture
    def wall(self):
        return FakeWallClock()

    @pytest.fixture
    def store(self):
        return InMemoryMeterEventStore()

    def _checker(self, store, wall, clock=None):
        return SpendLimitBudgetChecker(store, cache_ttl_seconds=30, clock=clock or FakeClock(), now=wall)

    async def test_tenant_without_limits_skips_aggregation(self, wall):
        checker = SpendLimitBudgetChecker(FailingAggregator(), now=wall)
        result = await checker.check(GatewayTenant(id="t1"), Credit.zero())
        assert result.allowed

    async def test_under_limits(self, store, wall, limited_tenant):
        await store.insert_many([_event(Credit.from_cents(50), wall.now - timedelta(minutes=5))])
        result = await self._checker(store, wall).check(limited_tenant, Credit.zero())
        assert result.allowed
        assert result.current_hourly_spend == Credit.from_cents(50)

    async def test_record_spend_bumps_cached_snapshot(self, store, wall, limited_tenant):
        checker = self._checker(store, wall)
        assert (await checker.check(limited_tenant, Credit.zero())).allowed
        checker.record_spend("tenant-1", Credit.from_dollars(1))
        result = await checker.check(limited_tenant, Credit.zero())
        assert not result.allowed
        assert result.current_hourly_spend == Credit.from_dollars(1)

    async def test_record_spend_without_snapshot_is_ignored(self, store, wall, limited_tenant):
        checker = self._checker(store, wall)
        checker.record_spend("tenant-1", Credit.from_dollars(5))
        assert (await checker.check(limited_tenant, Credit.zero())).allowed

    async def test_pending_spend_is_added(self, store, wall, limited_tenant):
        class Pending:
            def buffered_spend(self, tenant_id, since):
                return Credit.from_cents(70) if since > wall.now - timedelta(hours=2) else Credit.zero()

        await store.insert_many([_event(Credit.from_cents(40), wall.now - timedelta(minutes=5))])
        checker = SpendLimitBudgetChecker(store, pending=Pending(), clock=FakeClock(), now=wall)
        result = await checker.check(limited_tenant, Credit.zero())
        assert not result.allowed
        assert result.current_hourly_spend == Credit.from_cents(110)

    async def test_hourly_limit_exceeded(self, store, wall, limited_tenant):
        await store.insert_many([_event(Credit.from_dollars(1), wall.now - timedelta(minutes=5))])
        result = await self._checker(store, wall).check(limited_tenant, Credit.zero())
        assert not result.allowed
        assert result.http_status == 429
        assert result.reason.startswith("Hourly spending limit exceeded")

    async def test_old_spend_only_counts_toward_month(self, store, wall, limited_tenant):
        await store.insert_many([_event(Credit.from_dollars(10), wall.now - timedelta(hours=3))])
        result = await self._checker(store, wall).check(limited_tenant, Credit.zero())
        assert not result.allowed
        assert result.reason.startswith("Monthly spending limit exceeded")

    async def test_previous_month_is_ignored(self, store, wall, limited_tenant):
        await store.insert_many([_event(Credit.from_dollars(50), month_start(wall.now) - timedelta(seconds=1))])
        result = await self._checker(store, wall).check(limited_tenant, Credit.zero())
        assert result.allowed

    async def test_estimate_counts_toward_limit(self, store, wall, limited_tenant):
        await store.insert_many([_event(Credit.from_cents(90), wall.now)])
        result = await self._checker(store, wall).check(limited_tenant, Credit.from_cents(20))
        assert not result.allowed

    async def test_aggregator_failure_fails_closed(self, wall, limited_tenant):
        result = await SpendLimitBudgetChecker(FailingAggregator(), now=wall).check(limited_tenant, Credit.zero())
        assert not result.allowed
        assert result.http_status == 503

    async def test_snapshot_is_cached(self, store, wall, limited_tenant):
        clock = FakeClock()
        checker = self._checker(store, wall, clock)
        assert (await checker.check(limited_tenant, Credit.zero())).allowed

        await store.insert_many([_event(Credit.from_dollars(1), wall.now)])
        assert (await checker.check(limited_tenant, Credit.zero())).allowed

        clock.advance(31)
        assert not (await checker.check(limited_tenant, Credit.zero())).allowed

    async def test_invalidate(self, store, wall, limited_tenant):
        checker = self._checker(store, wall)
        await checker.check(limited_tenant, Credit.zero())
        await store.insert_many([_event(Credit.from_dollars(1), wall.now)])
        checker.invalidate(limited_tenant.id)
        assert not (await checker.check(limited_tenant, Credit.zero())).allowed


def test_month_start():
    now = datetime(2026, 3, 15, 12, 30, tzinfo=timezone.utc)
    assert month_start(now) == datetime(2026, 3, 1, tzinfo=timezone.utc)


def test_spend_limits_default_to_unlimited():
    limits = SpendLimits()
    assert limits.max_spend_per_hour is None
    assert limits.max_spend_per_month is None
