"""
Append-only usage metering.

A ``MeterEvent`` is written once per successfully billed operation and never
mutated afterwards. ``MeterEmitter`` buffers events, writes each one to a
JSON-lines write-ahead log before acknowledging it, and flushes batches to a
``MeterEventStore``. Batches that still fail after ``max_retries`` attempts
are appended to a dead-letter file for manual replay. Once started, the emitter
also flushes on a fixed interval so a quiet tenant's events do not sit in the
buffer indefinitely.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Protocol

import aiofiles
from blake3 import blake3

from .credit import Credit
from .logging import StructuredLogger, get_logger


def now_ms() -> int:
    return int(time.time() * 1000)


def meter_event_id(reference_id: str | None = None) -> str:
    """Deterministic id for referenced events so replays collapse onto one row."""
    if not reference_id:
        return str(uuid.uuid4())
    digest = blake3(reference_id.encode("utf-8")).hexdigest()
    return str(uuid.UUID(hex=digest[:32]))


@dataclass(frozen=True)
class MeterEvent:
    tenant: str
    capability: str
    provider: str
    cost: Credit
    charge: Credit
    timestamp: int = field(default_factory=now_ms)
    id: str = ""
    reference_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            object.__setattr__(self, "id", meter_event_id(self.reference_id))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant": self.tenant,
            "capability": self.capability,
            "provider": self.provider,
            "cost": self.cost.raw,
            "charge": self.charge.raw,
            "timestamp": self.timestamp,
            "reference_id": self.reference_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MeterEvent:
        return cls(
            id=str(data["id"]),
            tenant=str(data["tenant"]),
            capability=str(data["capability"]),
            provider=str(data["provider"]),
            cost=Credit(int(data["cost"])),
            charge=Credit(int(data["charge"])),
            timestamp=int(data["timestamp"]),
            reference_id=data.get("reference_id"),
            metadata=data.get("metadata") or {},
        )


class MeterSink(Protocol):
    async def emit(self, event: MeterEvent) -> None: ...


class MeterEventStore(Protocol):
    async def insert_many(self, events: list[MeterEvent]) -> None: ...


# =============================================================================
# In-memory implementations
# =============================================================================


class InMemoryMeterEventStore:
    """Event store that also answers spend aggregation queries."""

    def __init__(self) -> None:
        self.events: list[MeterEvent] = []
        self._ids: set[str] = set()

    async def insert_many(self, events: list[MeterEvent]) -> None:
        for event in events:
            if event.id in self._ids:
                continue
            self._ids.add(event.id)
            self.events.append(event)

    async def spend_since(self, tenant_id: str, since: datetime) -> Credit:
        cutoff = int(since.timestamp() * 1000)
        total = Credit.zero()
        for event in self.events:
            if event.tenant == tenant_id and event.timestamp >= cutoff:
                total = total + event.charge
        return total


class InMemoryMeterSink(InMemoryMeterEventStore):
    """Unbuffered sink: every emitted event is stored immediately."""

    async def emit(self, event: MeterEvent) -> None:
        await self.insert_many([event])


# =============================================================================
# Buffered Emitter
# =============================================================================


class MeterEmitter:
    """
    Buffered, WAL-backed meter sink.

    Example:
        ```python
        emitter = MeterEmitter(store, wal_path="/var/lib/gateway/meter.wal")
        await emitter.replay_wal()
        await emitter.start()
        await emitter.emit(event)
        await emitter.close()
        ```
    """

    def __init__(
        self,
        store: MeterEventStore,
        *,
        batch_size: int = 100,
        wal_path: str | None = None,
        dlq_path: str | None = None,
        max_retries: int = 3,
        flush_interval: float | None = 1.0,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._store = store
        self._batch_size = max(1, int(batch_size))
        self._wal_path = wal_path
        self._dlq_path = dlq_path
        self._max_retries = max(1, int(max_retries))
        self._flush_interval = flush_interval
        self._logger = logger or get_logger("provider_gateway.metering")
        self._buffer: list[MeterEvent] = []
        self._inflight: list[MeterEvent] = []
        self._flush_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self.dead_letters: list[MeterEvent] = []

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def emit(self, event: MeterEvent) -> None:
        async with self._lock:
            await self._append_lines(self._wal_path, [{"op": "emit", "event": event.to_dict()}])
            self._buffer.append(event)
            self._logger.log_meter_event(event)
            if len(self._buffer) >= self._batch_size:
                await self._flush_locked()

    async def flush(self) -> int:
        async with self._lock:
            return await self._flush_locked()

    async def start(self) -> None:
        """Start the periodic flush task."""
        if self._flush_task is not None or not self._flush_interval:
            return
        self._flush_task = asyncio.get_running_loop().create_task(self._flush_loop())

    async def close(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None
        await self.flush()

    def buffered_spend(self, tenant_id: str, since: datetime) -> Credit:
        """
        Sum the charges of events the store does not hold yet.

        Counts the buffer, a batch whose insert is in progress and batches
        moved to the dead-letter queue, so spend readers never miss a charge.
        """
        cutoff = int(since.timestamp() * 1000)
        total = Credit.zero()
        for event in (*self.dead_letters, *self._inflight, *self._buffer):
            if event.tenant == tenant_id and event.timestamp >= cutoff:
                total = total + event.charge
        return total

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            try:
                await self.flush()
            except Exception as exc:
                self._logger.log_error(exc, "Periodic meter flush failed", events=self.pending)

    async def replay_wal(self) -> int:
        """Re-buffer events the WAL holds but never saw committed, then flush them."""
        if not self._wal_path or not os.path.exists(self._wal_path):
            return 0
        async with self._lock:
            pending: dict[str, MeterEvent] = {}
            async with aiofiles.open(self._wal_path, "r", encoding="utf-8") as f:
                async for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError:
                        # torn final write
                        continue
                    if record.get("op") == "emit":
                        event = MeterEvent.from_dict(record["event"])
                        pending[event.id] = event
                    elif record.get("op") == "commit":
                        for event_id in record.get("ids", []):
                            pending.pop(event_id, None)

            known = {event.id for event in self._buffer}
            replayed = [event for event in pending.values() if event.id not in known]
            self._buffer.extend(replayed)
            if replayed:
                self._logger.info("Replaying meter WAL", events=len(replayed))
            await self._flush_locked()
            if not self._buffer:
                # everything is committed; start a fresh log
                async with aiofiles.open(self._wal_path, "w", encoding="utf-8") as f:
                    await f.write("")
            return len(replayed)

    async def _flush_locked(self) -> int:
        if not self._buffer:
            return 0
        batch, self._buffer = self._buffer, []
        self._inflight = batch
        try:
            return await self._commit(batch)
        finally:
            self._inflight = []

    async def _commit(self, batch: list[MeterEvent]) -> int:
        last_error: Exception | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                await self._store.insert_many(batch)
            except Exception as exc:
                last_error = exc
                self._logger.warning(
                    "Meter flush failed",
                    attempt=attempt,
                    max_retries=self._max_retries,
                    events=len(batch),
                    error=str(exc),
                )
                continue
            await self._append_lines(self._wal_path, [{"op": "commit", "ids": [event.id for event in batch]}])
            return len(batch)

        self._logger.error(
            "Meter batch moved to dead-letter queue",
            events=len(batch),
            error=str(last_error),
        )
        self.dead_letters.extend(batch)
        await self._append_lines(self._dlq_path, [event.to_dict() for event in batch])
        # the DLQ now owns these events
        await self._append_lines(self._wal_path, [{"op": "commit", "ids": [event.id for event in batch]}])
        return 0

    async def _append_lines(self, path: str | None, records: Iterable[dict[str, Any]]) -> None:
        if not path:
            return
        payload = "".join(json.dumps(record, separators=(",", ":")) + "\n" for record in records)
        async with aiofiles.open(path, "a", encoding="utf-8") as f:
            await f.write(payload)


__all__ = [
    "MeterEvent",
    "MeterSink",
    "MeterEventStore",
    "InMemoryMeterEventStore",
    "InMemoryMeterSink",
    "MeterEmitter",
    "meter_event_id",
    "now_ms",
]
