"""Per-tenant request rate limiting by capability group."""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from .adapters.base import Capability
from .errors import CircuitBreakerTrippedError, ErrorContext, RateLimitExceededError
from .logging import StructuredLogger, get_logger

DEFAULT_GROUP_LIMITS: dict[str, int] = {
    "llm": 60,
    "imageGen": 10,
    "audioSpeech": 30,
    "telephony": 100,
}

CAPABILITY_GROUPS: dict[Capability, str] = {
    Capability.CHAT_COMPLETIONS: "llm",
    Capability.TEXT_COMPLETIONS: "llm",
    Capability.EMBEDDINGS: "llm",
    Capability.IMAGE_GENERATION: "imageGen",
    Capability.VIDEO_GENERATION: "imageGen",
    Capability.TRANSCRIPTION: "audioSpeech",
    Capability.TTS: "audioSpeech",
    Capability.PHONE_OUTBOUND: "telephony",
    Capability.PHONE_INBOUND: "telephony",
    Capability.SMS_OUTBOUND: "telephony",
    Capability.MMS_OUTBOUND: "telephony",
    Capability.PHONE_NUMBER_PROVISION: "telephony",
}

MAX_TRACKED_CIRCUITS = 5000


class TokenBucket:
    """Token bucket refilled continuously at ``per_minute / 60`` tokens a second."""

    def __init__(self, per_minute: int, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.capacity = float(max(0, int(per_minute)))
        self.rate = self.capacity / 60.0
        self.tokens = self.capacity
        self._clock = clock
        self.last_update = clock()
        self._lock = asyncio.Lock()

    async def consume(self, tokens: float = 1.0) -> bool:
        async with self._lock:
            now = self._clock()
            elapsed = now - self.last_update
            self.last_update = now
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)

            if self.tokens >= tokens:
                self.tokens -= tokens
                return True
            return False

    @property
    def retry_after(self) -> float:
        """Seconds until one token is available."""
        if self.tokens >= 1:
            return 0
        if self.rate <= 0:
            return 60.0
        return (1 - self.tokens) / self.rate


class CapabilityRateLimiter:
    def __init__(
        self,
        limits: Mapping[str, int] | None = None,
        *,
        groups: Mapping[Capability, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._limits = dict(DEFAULT_GROUP_LIMITS if limits is None else limits)
        self._groups = dict(CAPABILITY_GROUPS if groups is None else groups)
        self._clock = clock
        self._logger = logger or get_logger("provider_gateway.rate_limit")
        self._buckets: dict[tuple[str, str], TokenBucket] = {}

    def group_for(self, capability: Capability) -> str | None:
        return self._groups.get(capability)

    def _bucket(self, tenant_id: str, group: str) -> TokenBucket:
        key = (tenant_id, group)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(self._limits[group], clock=self._clock)
            self._buckets[key] = bucket
        return bucket

    async def check(self, tenant_id: str, capability: Capability) -> None:
        group = self.group_for(capability)
        if group is None or group not in self._limits:
            return
        bucket = self._bucket(tenant_id, group)
        if await bucket.consume():
            return
        retry_after = max(1, math.ceil(bucket.retry_after))
        self._logger.warning(
            "Rate limit exceeded",
            tenant_id=tenant_id,
            capability=capability.value,
            group=group,
            retry_after=retry_after,
        )
        raise RateLimitExceededError(
            f"Rate limit exceeded for {group}: {self._limits[group]} requests per minute",
            retry_after=retry_after,
            context=ErrorContext(tenant_id=tenant_id, capability=capability.value),
        )

    def reset(self, tenant_id: str | None = None) -> None:
        if tenant_id is None:
            self._buckets.clear()
            return
        for key in [key for key in self._buckets if key[0] == tenant_id]:
            del self._buckets[key]


# =============================================================================
# Circuit Breaker
# =============================================================================


@dataclass
class _Circuit:
    count: int
    window_start: float
    tripped_at: float | None = None


class CircuitBreaker:
    """
    Pause a single tenant instance that floods the gateway.

    More than ``max_requests`` requests inside ``window_seconds`` trips the
    circuit; every request is then refused for ``pause_seconds``, after which
    a fresh window starts. Circuits are keyed by instance id, falling back to
    the tenant id, and live in process memory.
    """

    def __init__(
        self,
        *,
        max_requests: int = 100,
        window_seconds: float = 10.0,
        pause_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        on_trip: Callable[[str, str, int], None] | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.max_requests = int(max_requests)
        self.window_seconds = float(window_seconds)
        self.pause_seconds = float(pause_seconds)
        self._clock = clock
        self._on_trip = on_trip
        self._logger = logger or get_logger("provider_gateway.rate_limit")
        self._circuits: dict[str, _Circuit] = {}

    def check(self, tenant_id: str, instance_id: str | None = None) -> None:
        key = instance_id or tenant_id
        now = self._clock()
        circuit = self._circuits.get(key)
        if circuit is None:
            if len(self._circuits) >= MAX_TRACKED_CIRCUITS:
                self._prune(now)
            circuit = self._circuits[key] = _Circuit(count=0, window_start=now)

        if circuit.tripped_at is not None:
            if now - circuit.tripped_at < self.pause_seconds:
                self._reject(tenant_id, key, circuit.tripped_at + self.pause_seconds - now)
            circuit.count, circuit.window_start, circuit.tripped_at = 0, now, None

        if now - circuit.window_start >= self.window_seconds:
            circuit.count, circuit.window_start = 0, now
        circuit.count += 1
        if circuit.count <= self.max_requests:
            return

        circuit.tripped_at = now
        self._logger.warning(
            "Circuit breaker tripped",
            tenant_id=tenant_id,
            instance_id=key,
            requests=circuit.count,
            pause_seconds=self.pause_seconds,
        )
        if self._on_trip is not None:
            self._on_trip(tenant_id, key, circuit.count)
        self._reject(tenant_id, key, self.pause_seconds)

    def remaining_pause(self, key: str) -> float:
        circuit = self._circuits.get(key)
        if circuit is None or circuit.tripped_at is None:
            return 0.0
        return max(0.0, circuit.tripped_at + self.pause_seconds - self._clock())

    def _prune(self, now: float) -> None:
        for key, circuit in list(self._circuits.items()):
            if circuit.tripped_at is not None:
                expired = now - circuit.tripped_at >= self.pause_seconds
            else:
                expired = now - circuit.window_start >= self.window_seconds
            if expired:
                del self._circuits[key]

    def _reject(self, tenant_id: str, key: str, remaining: float) -> None:
        minutes = math.ceil(self.pause_seconds / 60)
        raise CircuitBreakerTrippedError(
            f"Circuit breaker triggered: too many requests from this instance. "
            f"Requests are paused for {minutes} minutes to prevent unexpected charges.",
            retry_after=max(1, math.ceil(remaining)),
            context=ErrorContext(tenant_id=tenant_id, extra={"instance_id": key}),
        )


__all__ = [
    "TokenBucket",
    "CapabilityRateLimiter",
    "CircuitBreaker",
    "DEFAULT_GROUP_LIMITS",
    "CAPABILITY_GROUPS",
]
