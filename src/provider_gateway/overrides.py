"""
Time-boxed adapter discounts layered on top of the margin config.

An override is active when its status is ``active`` and ``now`` falls in
``[starts_at, ends_at)``; a missing ``ends_at`` means open-ended. Lookups go
through a per-adapter TTL cache that expires lazily at read time and is
invalidated explicitly whenever an override is created, updated or cancelled.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

from .logging import get_logger

logger = get_logger("provider_gateway.overrides")

STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AdapterRateOverride:
    id: str
    adapter_id: str
    discount_percent: Decimal
    starts_at: datetime
    ends_at: datetime | None = None
    status: str = STATUS_ACTIVE
    name: str = ""
    notes: str | None = None

    def is_active(self, now: datetime) -> bool:
        if self.status != STATUS_ACTIVE:
            return False
        if now < self.starts_at:
            return False
        return self.ends_at is None or now < self.ends_at


class RateOverrideRepository(Protocol):
    async def create(self, override: AdapterRateOverride) -> AdapterRateOverride: ...

    async def update(self, override_id: str, **changes: Any) -> AdapterRateOverride | None: ...

    async def get(self, override_id: str) -> AdapterRateOverride | None: ...

    async def find_active_for_adapter(self, adapter_id: str, now: datetime) -> AdapterRateOverride | None: ...


class InMemoryRateOverrideRepository:
    def __init__(self) -> None:
        self._rows: dict[str, AdapterRateOverride] = {}

    async def create(self, override: AdapterRateOverride) -> AdapterRateOverride:
        self._rows[override.id] = override
        return override

    async def update(self, override_id: str, **changes: Any) -> AdapterRateOverride | None:
        current = self._rows.get(override_id)
        if current is None:
            return None
        updated = replace(current, **changes)
        self._rows[override_id] = updated
        return updated

    async def get(self, override_id: str) -> AdapterRateOverride | None:
        return self._rows.get(override_id)

    async def find_active_for_adapter(self, adapter_id: str, now: datetime) -> AdapterRateOverride | None:
        # newest start wins when windows overlap
        active = [row for row in self._rows.values() if row.adapter_id == adapter_id and row.is_active(now)]
        if not active:
            return None
        return max(active, key=lambda row: row.starts_at)


@dataclass
class _CacheEntry:
    value: AdapterRateOverride | None
    expires_at: float


class RateOverrideCache:
    """
    Per-adapter cache in front of ``find_active_for_adapter``.

    Negative results are cached too, so an adapter without a discount does
    not hit the repository on every request.
    """

    def __init__(
        self,
        repository: RateOverrideRepository,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._now = now
        self._entries: dict[str, _CacheEntry] = {}

    async def get_active(self, adapter_id: str) -> AdapterRateOverride | None:
        entry = self._entries.get(adapter_id)
        if entry is not None and self._clock() < entry.expires_at:
            # cached value may have ended since it was read
            if entry.value is None or entry.value.is_active(self._now()):
                return entry.value
        value = await self._repository.find_active_for_adapter(adapter_id, self._now())
        self._entries[adapter_id] = _CacheEntry(value=value, expires_at=self._clock() + self._ttl)
        return value

    def invalidate(self, adapter_id: str) -> None:
        self._entries.pop(adapter_id, None)

    def invalidate_all(self) -> None:
        self._entries.clear()


class RateOverrideService:
    """Administrative mutations; each one invalidates the affected cache entry."""

    def __init__(self, *, repository: RateOverrideRepository, cache: RateOverrideCache) -> None:
        self._repository = repository
        self._cache = cache
        self._lock = asyncio.Lock()

    async def create(
        self,
        *,
        adapter_id: str,
        discount_percent: Decimal | int | str,
        starts_at: datetime | None = None,
        ends_at: datetime | None = None,
        name: str = "",
        notes: str | None = None,
    ) -> AdapterRateOverride:
        percent = Decimal(str(discount_percent))
        if percent < 0 or percent > 100:
            raise ValueError("discount_percent must be between 0 and 100")
        starts = starts_at or utcnow()
        if ends_at is not None and ends_at <= starts:
            raise ValueError("ends_at must be after starts_at")
        override = AdapterRateOverride(
            id=str(uuid.uuid4()),
            adapter_id=adapter_id,
            discount_percent=percent,
            starts_at=starts,
            ends_at=ends_at,
            name=name,
            notes=notes,
        )
        async with self._lock:
            created = await self._repository.create(override)
            self._cache.invalidate(adapter_id)
        logger.info("Rate override created", override_id=created.id, adapter_id=adapter_id, discount_percent=percent)
        return created

    async def update(self, override_id: str, **changes: Any) -> AdapterRateOverride | None:
        async with self._lock:
            previous = await self._repository.get(override_id)
            updated = await self._repository.update(override_id, **changes)
            if previous is not None:
                self._cache.invalidate(previous.adapter_id)
            if updated is not None:
                self._cache.invalidate(updated.adapter_id)
        return updated

    async def cancel(self, override_id: str) -> AdapterRateOverride | None:
        cancelled = await self.update(override_id, status=STATUS_CANCELLED)
        if cancelled is not None:
            logger.info("Rate override cancelled", override_id=override_id, adapter_id=cancelled.adapter_id)
        return cancelled


__all__ = [
    "STATUS_ACTIVE",
    "STATUS_CANCELLED",
    "AdapterRateOverride",
    "RateOverrideRepository",
    "InMemoryRateOverrideRepository",
    "RateOverrideCache",
    "RateOverrideService",
]
