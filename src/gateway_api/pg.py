"""Postgres-backed ledger, meter store, penalty store and override repository."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

import asyncpg

from provider_gateway.credit import Credit
from provider_gateway.metering import MeterEvent
from provider_gateway.overrides import AdapterRateOverride
from provider_gateway.webhooks import PenaltyPolicy, SigPenalty, next_penalty

_OVERRIDE_COLUMNS = ("adapter_id", "discount_percent", "starts_at", "ends_at", "status", "name", "notes")


async def create_pool(dsn: str, *, min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    return await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size)


@dataclass(frozen=True)
class GatewayDB:
    pool: asyncpg.Pool

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("CREATE SCHEMA IF NOT EXISTS gateway;")
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gateway.credit_ledger (
                  entry_id UUID PRIMARY KEY,
                  tenant_id TEXT NOT NULL,
                  amount_raw BIGINT NOT NULL,
                  reason TEXT NOT NULL,
                  reference_id TEXT NULL,
                  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                  CONSTRAINT credit_ledger_reference_uq UNIQUE (reference_id)
                );
                """
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS credit_ledger_tenant ON gateway.credit_ledger (tenant_id, created_at DESC);"
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gateway.meter_events (
                  event_id UUID PRIMARY KEY,
                  tenant_id TEXT NOT NULL,
                  capability TEXT NOT NULL,
                  provider TEXT NOT NULL,
                  cost_raw BIGINT NOT NULL,
                  charge_raw BIGINT NOT NULL,
                  timestamp_ms BIGINT NOT NULL,
                  reference_id TEXT NULL,
                  metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                  created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS meter_events_tenant_ts ON gateway.meter_events (tenant_id, timestamp_ms DESC);"
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gateway.sig_penalties (
                  ip TEXT NOT NULL,
                  source TEXT NOT NULL,
                  failures INT NOT NULL DEFAULT 0,
                  blocked_until TIMESTAMPTZ NULL,
                  updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                  PRIMARY KEY (ip, source)
                );
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gateway.rate_overrides (
                  override_id UUID PRIMARY KEY,
                  adapter_id TEXT NOT NULL,
                  discount_percent NUMERIC(5, 2) NOT NULL,
                  starts_at TIMESTAMPTZ NOT NULL,
                  ends_at TIMESTAMPTZ NULL,
                  status TEXT NOT NULL DEFAULT 'active',
                  name TEXT NOT NULL DEFAULT '',
                  notes TEXT NULL,
                  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                  updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                  CONSTRAINT rate_overrides_discount_ck CHECK (discount_percent >= 0 AND discount_percent <= 100)
                );
                """
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS rate_overrides_adapter ON gateway.rate_overrides (adapter_id, status, starts_at DESC);"
            )


# =============================================================================
# Credit Ledger
# =============================================================================


@dataclass(frozen=True)
class PgCreditLedger:
    pool: asyncpg.Pool

    async def balance(self, tenant_id: str) -> Credit:
        async with self.pool.acquire() as conn:
            total = await conn.fetchval(
                "SELECT COALESCE(SUM(amount_raw), 0) FROM gateway.credit_ledger WHERE tenant_id=$1;",
                tenant_id,
            )
        return Credit(int(total))

    async def debit(self, tenant_id: str, amount: Credit, *, reason: str, reference_id: str | None = None) -> Credit:
        return await self._apply(tenant_id, -amount.raw, reason=reason, reference_id=reference_id)

    async def credit(self, tenant_id: str, amount: Credit, *, reason: str, reference_id: str | None = None) -> Credit:
        return await self._apply(tenant_id, amount.raw, reason=reason, reference_id=reference_id)

    async def has_reference_id(self, reference_id: str) -> bool:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT 1 FROM gateway.credit_ledger WHERE reference_id=$1;",
                reference_id,
            )
        return row is not None

    async def _apply(self, tenant_id: str, delta_raw: int, *, reason: str, reference_id: str | None) -> Credit:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO gateway.credit_ledger (entry_id, tenant_id, amount_raw, reason, reference_id)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (reference_id) DO NOTHING;
                    """,
                    uuid.uuid4(),
                    tenant_id,
                    delta_raw,
                    reason,
                    reference_id,
                )
                total = await conn.fetchval(
                    "SELECT COALESCE(SUM(amount_raw), 0) FROM gateway.credit_ledger WHERE tenant_id=$1;",
                    tenant_id,
                )
        return Credit(int(total))


# =============================================================================
# Meter Events
# =============================================================================


@dataclass(frozen=True)
class PgMeterEventStore:
    pool: asyncpg.Pool

    async def insert_many(self, events: list[MeterEvent]) -> None:
        if not events:
            return
        rows = [
            (
                uuid.UUID(event.id),
                event.tenant,
                event.capability,
                event.provider,
                event.cost.raw,
                event.charge.raw,
                event.timestamp,
                event.reference_id,
                json.dumps(dict(event.metadata), default=str),
            )
            for event in events
        ]
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO gateway.meter_events
                      (event_id, tenant_id, capability, provider, cost_raw, charge_raw, timestamp_ms, reference_id, metadata)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
                    ON CONFLICT (event_id) DO NOTHING;
                    """,
                    rows,
                )


@dataclass(frozen=True)
class PgSpendAggregator:
    pool: asyncpg.Pool

    async def spend_since(self, tenant_id: str, since: datetime) -> Credit:
        async with self.pool.acquire() as conn:
            total = await conn.fetchval(
                """
                SELECT COALESCE(SUM(charge_raw), 0)
                FROM gateway.meter_events
                WHERE tenant_id=$1 AND timestamp_ms >= $2;
                """,
                tenant_id,
                int(since.timestamp() * 1000),
            )
        return Credit(int(total))


# =============================================================================
# Signature Penalties
# =============================================================================


def _penalty_from_row(row: Any) -> SigPenalty:
    return SigPenalty(
        ip=str(row["ip"]),
        source=str(row["source"]),
        failures=int(row["failures"]),
        blocked_until=row["blocked_until"],
        updated_at=row["updated_at"],
    )


@dataclass(frozen=True)
class PgSigPenaltyStore:
    pool: asyncpg.Pool
    policy: PenaltyPolicy = PenaltyPolicy()

    async def get(self, ip: str, source: str) -> SigPenalty | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT ip, source, failures, blocked_until, updated_at FROM gateway.sig_penalties WHERE ip=$1 AND source=$2;",
                ip,
                source,
            )
        return _penalty_from_row(row) if row is not None else None

    async def record_failure(self, ip: str, source: str, now: datetime) -> SigPenalty:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT ip, source, failures, blocked_until, updated_at
                    FROM gateway.sig_penalties
                    WHERE ip=$1 AND source=$2
                    FOR UPDATE;
                    """,
                    ip,
                    source,
                )
                current = _penalty_from_row(row) if row is not None else None
                updated = next_penalty(current, ip=ip, source=source, now=now, policy=self.policy)
                await conn.execute(
                    """
                    INSERT INTO gateway.sig_penalties (ip, source, failures, blocked_until, updated_at)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (ip, source) DO UPDATE
                    SET failures=EXCLUDED.failures,
                        blocked_until=EXCLUDED.blocked_until,
                        updated_at=EXCLUDED.updated_at;
                    """,
                    ip,
                    source,
                    updated.failures,
                    updated.blocked_until,
                    updated.updated_at,
                )
        return updated

    async def purge_stale(self, before: datetime) -> int:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                """
                DELETE FROM gateway.sig_penalties
                WHERE updated_at < $1 AND (blocked_until IS NULL OR blocked_until <= $1);
                """,
                before,
            )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(status.split()[-1])


# =============================================================================
# Rate Overrides
# =============================================================================


def _override_from_row(row: Any) -> AdapterRateOverride:
    return AdapterRateOverride(
        id=str(row["override_id"]),
        adapter_id=str(row["adapter_id"]),
        discount_percent=Decimal(row["discount_percent"]),
        starts_at=row["starts_at"],
        ends_at=row["ends_at"],
        status=str(row["status"]),
        name=str(row["name"] or ""),
        notes=row["notes"],
    )


_OVERRIDE_SELECT = """
SELECT override_id, adapter_id, discount_percent, starts_at, ends_at, status, name, notes
FROM gateway.rate_overrides
"""


@dataclass(frozen=True)
class PgRateOverrideRepository:
    pool: asyncpg.Pool

    async def create(self, override: AdapterRateOverride) -> AdapterRateOverride:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO gateway.rate_overrides
                  (override_id, adapter_id, discount_percent, starts_at, ends_at, status, name, notes)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING override_id, adapter_id, discount_percent, starts_at, ends_at, status, name, notes;
                """,
                uuid.UUID(override.id),
                override.adapter_id,
                override.discount_percent,
                override.starts_at,
                override.ends_at,
                override.status,
                override.name,
                override.notes,
            )
        return _override_from_row(row)

    async def update(self, override_id: str, **changes: Any) -> AdapterRateOverride | None:
        unknown = set(changes) - set(_OVERRIDE_COLUMNS)
        if unknown:
            raise ValueError(f"unknown override fields: {sorted(unknown)}")
        if not changes:
            return await self.get(override_id)
        columns = list(changes)
        assignments = ", ".join(f"{column}=${index}" for index, column in enumerate(columns, start=2))
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE gateway.rate_overrides
                SET {assignments}, updated_at=now()
                WHERE override_id=$1
                RETURNING override_id, adapter_id, discount_percent, starts_at, ends_at, status, name, notes;
                """,
                uuid.UUID(override_id),
                *[changes[column] for column in columns],
            )
        return _override_from_row(row) if row is not None else None

    async def get(self, override_id: str) -> AdapterRateOverride | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(_OVERRIDE_SELECT + "WHERE override_id=$1;", uuid.UUID(override_id))
        return _override_from_row(row) if row is not None else None

    async def find_active_for_adapter(self, adapter_id: str, now: datetime) -> AdapterRateOverride | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                _OVERRIDE_SELECT
                + """
                WHERE adapter_id=$1
                  AND status='active'
                  AND starts_at <= $2
                  AND (ends_at IS NULL OR ends_at > $2)
                ORDER BY starts_at DESC
                LIMIT 1;
                """,
                adapter_id,
                now,
            )
        return _override_from_row(row) if row is not None else None
