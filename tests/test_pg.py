"""
Tests for the Postgres-backed stores against a scripted asyncpg stand-in.
"""

from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest

from gateway_api.pg import (
    GatewayDB,
    PgCreditLedger,
    PgMeterEventStore,
    PgRateOverrideRepository,
    PgSigPenaltyStore,
    PgSpendAggregator,
)
from provider_gateway.credit import Credit
from provider_gateway.metering import MeterEvent
from provider_gateway.webhooks import PenaltyPolicy

from tests.fakes import FakeWallClock


class _Conn:
    def __init__(self, pool: _Pool) -> None:
        self.pool = pool

    @asynccontextmanager
    async def transaction(self):
        self.pool.transactions += 1
        yield

    async def execute(self, query: str, *args: Any) -> str:
        self.pool.calls.append(("execute", query, args))
        return self.pool.execute_status

    async def executemany(self, query: str, rows: list[tuple]) -> None:
        self.pool.calls.append(("executemany", query, rows))

    async def fetchval(self, query: str, *args: Any) -> Any:
        self.pool.calls.append(("fetchval", query, args))
        return self.pool.results.pop(0)

    async def fetchrow(self, query: str, *args: Any) -> Any:
        self.pool.calls.append(("fetchrow", query, args))
        return self.pool.results.pop(0)


class _Pool:
    """Records every statement and answers fetches from ``results`` in order."""

    def __init__(self, results: list[Any] | None = None, execute_status: str = "OK") -> None:
        self.results = list(results or [])
        self.execute_status = execute_status
        self.calls: list[tuple[str, str, Any]] = []
        self.transactions = 0

    @asynccontextmanager
    async def acquire(self):
        yield _Conn(self)


class TestGatewayDB:
    """Test schema bootstrap."""

    async def test_creates_tables(self):
        pool = _Pool()
        await GatewayDB(pool=pool).ensure_schema()
        statements = " ".join(query for _, query, _ in pool.calls)
        for table in ("credit_ledger", "meter_events", "sig_penalties", "rate_overrides"):
            assert f"gateway.{table}" in statements


class TestPgCreditLedger:
    """Test ledger statements."""

    async def test_balance(self):
        pool = _Pool(results=[1_500_000_000])
        assert await PgCreditLedger(pool=pool).balance("t1") == Credit.from_dollars("1.5")

    async def test_debit_inserts_negative_entry_in_transaction(self):
        pool = _Pool(results=[-30_000_000])
        balance = await PgCreditLedger(pool=pool).debit(
            "t1", Credit.from_cents(3), reason="gateway:sms-outbound", reference_id="sms:1"
        )

        assert balance == Credit.from_cents(-3)
        assert pool.transactions == 1
        kind, query, args = pool.calls[0]
        assert kind == "execute"
        assert "ON CONFLICT (reference_id) DO NOTHING" in query
        assert args[1:] == ("t1", -30_000_000, "gateway:sms-outbound", "sms:1")

    async def test_has_reference_id(self):
        ledger = PgCreditLedger(pool=_Pool(results=[{"?column?": 1}, None]))
        assert await ledger.has_reference_id("call:CA1")
        assert not await ledger.has_reference_id("call:CA2")


class TestPgMeterEventStore:
    """Test batched event inserts."""

    async def test_insert_many(self):
        pool = _Pool()
        event = MeterEvent(
            tenant="t1",
            capability="tts",
            provider="elevenlabs",
            cost=Credit.from_cents(1),
            charge=Credit.from_cents(2),
            timestamp=123,
            reference_id="r1",
            metadata={"characters": 10},
        )
        await PgMeterEventStore(pool=pool).insert_many([event])

        kind, query, rows = pool.calls[0]
        assert kind == "executemany"
        assert "ON CONFLICT (event_id) DO NOTHING" in query
        [row] = rows
        assert row[0] == uuid.UUID(event.id)
        assert row[4:8] == (10_000_000, 20_000_000, 123, "r1")
        assert json.loads(row[8]) == {"characters": 10}

    async def test_empty_batch_is_a_no_op(self):
        pool = _Pool()
        await PgMeterEventStore(pool=pool).insert_many([])
        assert pool.calls == []

    async def test_spend_since(self):
        wall = FakeWallClock()
        pool = _Pool(results=[5_000_000_000])
        total = await PgSpendAggregator(pool=pool).spend_since("t1", wall.now)
        assert total == Credit.from_dollars(5)
        assert pool.calls[0][2] == ("t1", int(wall.now.timestamp() * 1000))


class TestPgSigPenaltyStore:
    """Test the locked read-modify-write."""

    async def test_record_failure_on_existing_row(self):
        wall = FakeWallClock()
        existing = {
            "ip": "1.2.3.4",
            "source": "twilio",
            "failures": 2,
            "blocked_until": None,
            "updated_at": wall.now - timedelta(seconds=30),
        }
        pool = _Pool(results=[existing])
        store = PgSigPenaltyStore(pool=pool, policy=PenaltyPolicy(threshold=3, lockout_seconds=60))

        updated = await store.record_failure("1.2.3.4", "twilio", wall.now)

        assert updated.failures == 3
        assert updated.blocked_until == wall.now + timedelta(seconds=60)
        assert "FOR UPDATE" in pool.calls[0][1]
        assert pool.calls[1][2][2:4] == (3, updated.blocked_until)
        assert pool.transactions == 1

    async def test_get_missing(self):
        assert await PgSigPenaltyStore(pool=_Pool(results=[None])).get("1.2.3.4", "twilio") is None

    async def test_purge_parses_command_tag(self):
        wall = FakeWallClock()
        pool = _Pool(execute_status="DELETE 4")
        assert await PgSigPenaltyStore(pool=pool).purge_stale(wall.now) == 4


class TestPgRateOverrideRepository:
    """Test override statements."""

    def _row(self, wall, **overrides):
        row = {
            "override_id": uuid.UUID(int=1),
            "adapter_id": "replicate",
            "discount_percent": Decimal("15.00"),
            "starts_at": wall.now,
            "ends_at": None,
            "status": "active",
            "name": "",
            "notes": None,
        }
        row.update(overrides)
        return row

    async def test_find_active(self):
        wall = FakeWallClock()
        pool = _Pool(results=[self._row(wall)])
        found = await PgRateOverrideRepository(pool=pool).find_active_for_adapter("replicate", wall.now)
        assert found.id == str(uuid.UUID(int=1))
        assert found.discount_percent == Decimal("15.00")
        assert found.is_active(wall.now)

    async def test_update_builds_numbered_assignments(self):
        wall = FakeWallClock()
        pool = _Pool(results=[self._row(wall, status="cancelled")])
        updated = await PgRateOverrideRepository(pool=pool).update(str(uuid.UUID(int=1)), status="cancelled")

        assert updated.status == "cancelled"
        _, query, args = pool.calls[0]
        assert "status=$2" in query
        assert args == (uuid.UUID(int=1), "cancelled")

    async def test_update_rejects_unknown_columns(self):
        with pytest.raises(ValueError):
            await PgRateOverrideRepository(pool=_Pool()).update(str(uuid.UUID(int=1)), tenant_id="x")
