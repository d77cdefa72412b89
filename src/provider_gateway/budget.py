"""
Pre-flight budget checks and the post-call ledger debit.

Two gates run before any upstream call, in this order:
1. Spend limits: the tenant's rolling-hour and calendar-month spend plus a
   minimum billable unit must stay within its configured limits (429).
2. Credit balance: the ledger balance must cover a conservative per-capability
   floor (402). Floors are strictly positive, so an empty balance never passes.

Spend snapshots add charges that are metered but still buffered, and every
billed charge bumps the cached snapshot, so a burst inside one cache window
still counts against the limit. Both gates reserve nothing. A burst of concurrent
requests against a thin balance can therefore debit slightly past zero; the
ledger accepts that rather than locking.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol

from .adapters.base import Capability
from .credit import Credit
from .errors import CreditsExhaustedError, ErrorContext, InsufficientCreditsError
from .logging import StructuredLogger, get_logger


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Tenant and Results
# =============================================================================


@dataclass(frozen=True)
class SpendLimits:
    max_spend_per_hour: Credit | None = None
    max_spend_per_month: Credit | None = None


@dataclass(frozen=True)
class GatewayTenant:
    id: str
    spend_limits: SpendLimits = field(default_factory=SpendLimits)
    instance_id: str | None = None


@dataclass(frozen=True)
class BudgetCheckResult:
    allowed: bool
    reason: str | None = None
    http_status: int | None = None
    current_hourly_spend: Credit | None = None
    current_monthly_spend: Credit | None = None


class BudgetChecker(Protocol):
    async def check(self, tenant: GatewayTenant, estimated_cost: Credit) -> BudgetCheckResult: ...

    def record_spend(self, tenant_id: str, charge: Credit) -> None: ...


class SpendAggregator(Protocol):
    async def spend_since(self, tenant_id: str, since: datetime) -> Credit: ...


class PendingSpend(Protocol):
    """Spend metered in-process but not yet visible to the aggregator."""

    def buffered_spend(self, tenant_id: str, since: datetime) -> Credit: ...


# =============================================================================
# Spend Limit Checker
# =============================================================================


@dataclass
class _SpendSnapshot:
    hourly: Credit
    monthly: Credit
    expires_at: float


def month_start(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class SpendLimitBudgetChecker:
    """
    Compare current spend against a tenant's hourly and monthly limits.

    Spend snapshots are cached per tenant for ``cache_ttl_seconds``. When the
    aggregator fails the check fails closed with a 503. Charges billed while a
    snapshot is cached are added to it through ``record_spend``.
    """

    def __init__(
        self,
        aggregator: SpendAggregator,
        *,
        pending: PendingSpend | None = None,
        cache_ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._pending = pending
        self._ttl = float(cache_ttl_seconds)
        self._clock = clock
        self._now = now
        self._logger = logger or get_logger("provider_gateway.budget")
        self._cache: dict[str, _SpendSnapshot] = {}

    async def check(self, tenant: GatewayTenant, estimated_cost: Credit) -> BudgetCheckResult:
        limits = tenant.spend_limits
        if limits.max_spend_per_hour is None and limits.max_spend_per_month is None:
            return BudgetCheckResult(allowed=True)

        try:
            snapshot = await self._snapshot(tenant.id)
        except Exception as exc:
            self._logger.log_error(exc, "Spend aggregation failed; rejecting request", tenant_id=tenant.id)
            return BudgetCheckResult(allowed=False, reason="Budget service unavailable", http_status=503)

        unit = estimated_cost if estimated_cost.raw > 0 else Credit(1)

        if limits.max_spend_per_hour is not None and snapshot.hourly + unit > limits.max_spend_per_hour:
            return BudgetCheckResult(
                allowed=False,
                reason=f"Hourly spending limit exceeded: {snapshot.hourly}/{limits.max_spend_per_hour}",
                http_status=429,
                current_hourly_spend=snapshot.hourly,
                current_monthly_spend=snapshot.monthly,
            )
        if limits.max_spend_per_month is not None and snapshot.monthly + unit > limits.max_spend_per_month:
            return BudgetCheckResult(
                allowed=False,
                reason=f"Monthly spending limit exceeded: {snapshot.monthly}/{limits.max_spend_per_month}",
                http_status=429,
                current_hourly_spend=snapshot.hourly,
                current_monthly_spend=snapshot.monthly,
            )
        return BudgetCheckResult(
            allowed=True,
            current_hourly_spend=snapshot.hourly,
            current_monthly_spend=snapshot.monthly,
        )

    def record_spend(self, tenant_id: str, charge: Credit) -> None:
        snapshot = self._cache.get(tenant_id)
        if snapshot is None or charge.is_zero():
            return
        snapshot.hourly = snapshot.hourly + charge
        snapshot.monthly = snapshot.monthly + charge

    def invalidate(self, tenant_id: str) -> None:
        self._cache.pop(tenant_id, None)

    async def _snapshot(self, tenant_id: str) -> _SpendSnapshot:
        cached = self._cache.get(tenant_id)
        if cached is not None and self._clock() < cached.expires_at:
            return cached
        now = self._now()
        hour_ago, month = now - timedelta(hours=1), month_start(now)
        # read the buffer first: an event flushed in between is counted twice, never missed
        hourly = monthly = Credit.zero()
        if self._pending is not None:
            hourly = self._pending.buffered_spend(tenant_id, hour_ago)
            monthly = self._pending.buffered_spend(tenant_id, month)
        hourly = hourly + await self._aggregator.spend_since(tenant_id, hour_ago)
        monthly = monthly + await self._aggregator.spend_since(tenant_id, month)
        snapshot = _SpendSnapshot(hourly=hourly, monthly=monthly, expires_at=self._clock() + self._ttl)
        self._cache[tenant_id] = snapshot
        return snapshot


# =============================================================================
# Credit Ledger
# =============================================================================


@dataclass(frozen=True)
class LedgerEntry:
    id: str
    tenant_id: str
    amount: Credit
    reason: str
    reference_id: str | None
    created_at: datetime


class CreditLedger(Protocol):
    async def balance(self, tenant_id: str) -> Credit: ...

    async def debit(self, tenant_id: str, amount: Credit, *, reason: str, reference_id: str | None = None) -> Credit: ...

    async def credit(self, tenant_id: str, amount: Credit, *, reason: str, reference_id: str | None = None) -> Credit: ...

    async def has_reference_id(self, reference_id: str) -> bool: ...


class InMemoryCreditLedger:
    """Signed-entry ledger. Debits are unconditional and may push a balance below zero."""

    def __init__(self, balances: dict[str, Credit] | None = None) -> None:
        self._balances: dict[str, Credit] = dict(balances or {})
        self._references: set[str] = set()
        self.entries: list[LedgerEntry] = []
        self._lock = asyncio.Lock()

    async def balance(self, tenant_id: str) -> Credit:
        return self._balances.get(tenant_id, Credit.zero())

    async def debit(self, tenant_id: str, amount: Credit, *, reason: str, reference_id: str | None = None) -> Credit:
        return await self._apply(tenant_id, -amount, reason=reason, reference_id=reference_id)

    async def credit(self, tenant_id: str, amount: Credit, *, reason: str, reference_id: str | None = None) -> Credit:
        return await self._apply(tenant_id, amount, reason=reason, reference_id=reference_id)

    async def has_reference_id(self, reference_id: str) -> bool:
        return reference_id in self._references

    async def _apply(self, tenant_id: str, delta: Credit, *, reason: str, reference_id: str | None) -> Credit:
        async with self._lock:
            current = self._balances.get(tenant_id, Credit.zero())
            if reference_id is not None:
                if reference_id in self._references:
                    return current
                self._references.add(reference_id)
            updated = current + delta
            self._balances[tenant_id] = updated
            self.entries.append(
                LedgerEntry(
                    id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    amount=delta,
                    reason=reason,
                    reference_id=reference_id,
                    created_at=utcnow(),
                )
            )
            return updated


# =============================================================================
# Credit Gate
# =============================================================================

DEFAULT_CREDIT_FLOORS: dict[Capability, Credit] = {
    Capability.CHAT_COMPLETIONS: Credit.from_cents(1),
    Capability.TEXT_COMPLETIONS: Credit.from_cents(1),
    Capability.EMBEDDINGS: Credit.from_dollars("0.001"),
    Capability.TRANSCRIPTION: Credit.from_cents(1),
    Capability.TTS: Credit.from_cents(1),
    Capability.IMAGE_GENERATION: Credit.from_cents(5),
    Capability.VIDEO_GENERATION: Credit.from_cents(25),
    Capability.PHONE_OUTBOUND: Credit.from_cents(5),
    Capability.PHONE_INBOUND: Credit.from_cents(2),
    Capability.SMS_OUTBOUND: Credit.from_cents(3),
    Capability.MMS_OUTBOUND: Credit.from_cents(5),
    Capability.PHONE_NUMBER_PROVISION: Credit.from_dollars(3),
}


class CreditGate:
    def __init__(
        self,
        *,
        ledger: CreditLedger,
        floors: dict[Capability, Credit] | None = None,
        default_floor: Credit = Credit.from_cents(1),
        logger: StructuredLogger | None = None,
    ) -> None:
        merged = {**DEFAULT_CREDIT_FLOORS, **(floors or {})}
        if default_floor.raw <= 0 or any(floor.raw <= 0 for floor in merged.values()):
            raise ValueError("credit floors must be positive")
        self._ledger = ledger
        self._floors = merged
        self._default_floor = default_floor
        self._logger = logger or get_logger("provider_gateway.budget")

    @property
    def ledger(self) -> CreditLedger:
        return self._ledger

    def floor_for(self, capability: Capability) -> Credit:
        return self._floors.get(capability, self._default_floor)

    async def check(self, tenant_id: str, capability: Capability) -> Credit:
        """Return the current balance or raise when it cannot cover the capability floor."""
        balance = await self._ledger.balance(tenant_id)
        context = ErrorContext(tenant_id=tenant_id, capability=capability.value)
        if balance.is_negative():
            raise CreditsExhaustedError(
                f"Credits exhausted: balance {balance}. Add credits to continue.",
                context=context,
            )
        floor = self.floor_for(capability)
        if balance < floor:
            raise InsufficientCreditsError(
                f"Insufficient credits: balance {balance} is below the {floor} minimum for {capability.value}",
                context=context,
            )
        return balance

    async def debit(
        self,
        tenant_id: str,
        charge: Credit,
        capability: Capability,
        *,
        reference_id: str | None = None,
    ) -> Credit | None:
        """
        Debit ``charge`` after a metered success.

        The upstream work is already done at this point, so a ledger failure is
        logged for reconciliation instead of failing the caller's request.
        """
        if charge.is_zero():
            return None
        try:
            balance = await self._ledger.debit(
                tenant_id,
                charge,
                reason=f"gateway:{capability.value}",
                reference_id=reference_id,
            )
        except Exception as exc:
            self._logger.log_error(
                exc,
                "Ledger debit failed after metered success",
                tenant_id=tenant_id,
                capability=capability.value,
                charge=charge,
                reference_id=reference_id,
            )
            return None
        self._logger.info(
            "Ledger debited",
            tenant_id=tenant_id,
            capability=capability.value,
            charge=charge,
            balance_after=balance,
            reference_id=reference_id,
        )
        return balance


__all__ = [
    "SpendLimits",
    "GatewayTenant",
    "BudgetCheckResult",
    "BudgetChecker",
    "SpendAggregator",
    "PendingSpend",
    "SpendLimitBudgetChecker",
    "month_start",
    "LedgerEntry",
    "CreditLedger",
    "InMemoryCreditLedger",
    "DEFAULT_CREDIT_FLOORS",
    "CreditGate",
]
