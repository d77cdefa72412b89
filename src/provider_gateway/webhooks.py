"""
Signature verification and brute-force penalties for provider callbacks.

Twilio signs each callback with HMAC-SHA1 over the full callback URL followed
by every POST parameter as ``key + value``, keys sorted, base64-encoded and
sent in ``X-Twilio-Signature``.

Every ``(source ip, source)`` pair that fails verification accrues a penalty
row. Once ``threshold`` failures pile up inside the decay window the pair is
locked out: further requests are rejected before any signature is computed,
even ones that would verify, until the lockout elapses.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol
from urllib.parse import urlsplit

from .errors import ErrorContext, InvalidSignatureError, SignatureLockoutError
from .logging import StructuredLogger, get_logger

SIGNATURE_HEADER = "X-Twilio-Signature"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Signature
# =============================================================================


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(auth_token: str, signature: str, url: str, params: Mapping[str, str]) -> bool:
    expected = compute_twilio_signature(auth_token, url, params)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def canonical_callback_url(webhook_base_url: str, request_path: str, query: str = "") -> str:
    """
    Rebuild the public URL the provider signed.

    ``webhook_base_url`` is the externally configured base (for example
    ``https://api.example.com/v1``). Its path prefix is stripped from the
    request path so it is not doubled.
    """
    base = webhook_base_url.rstrip("/")
    base_path = urlsplit(base).path.rstrip("/")
    relative = request_path
    if base_path and request_path.startswith(base_path):
        relative = request_path[len(base_path):]
    url = base + relative
    if query:
        url = f"{url}?{query}"
    return url


def client_ip(headers: Mapping[str, str], fallback: str | None = None) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return fallback or "unknown"


# =============================================================================
# Penalty Store
# =============================================================================


@dataclass(frozen=True)
class PenaltyPolicy:
    threshold: int = 5
    lockout_seconds: int = 900
    decay_seconds: int = 3600


@dataclass(frozen=True)
class SigPenalty:
    ip: str
    source: str
    failures: int
    blocked_until: datetime | None
    updated_at: datetime

    def is_blocked(self, now: datetime) -> bool:
        return self.blocked_until is not None and now < self.blocked_until


def next_penalty(current: SigPenalty | None, *, ip: str, source: str, now: datetime, policy: PenaltyPolicy) -> SigPenalty:
    """Apply one more failure to ``current`` under ``policy``."""
    failures = 0
    if current is not None:
        lockout_elapsed = current.blocked_until is not None and now >= current.blocked_until
        decayed = now - current.updated_at >= timedelta(seconds=policy.decay_seconds)
        if not (lockout_elapsed or decayed):
            failures = current.failures
    failures += 1
    blocked_until = None
    if failures >= policy.threshold:
        blocked_until = now + timedelta(seconds=policy.lockout_seconds)
    return SigPenalty(ip=ip, source=source, failures=failures, blocked_until=blocked_until, updated_at=now)


class SigPenaltyStore(Protocol):
    async def get(self, ip: str, source: str) -> SigPenalty | None: ...

    async def record_failure(self, ip: str, source: str, now: datetime) -> SigPenalty: ...

    async def purge_stale(self, before: datetime) -> int: ...


class InMemorySigPenaltyStore:
    def __init__(self, policy: PenaltyPolicy | None = None) -> None:
        self._policy = policy or PenaltyPolicy()
        self._rows: dict[tuple[str, str], SigPenalty] = {}
        self._lock = asyncio.Lock()

    async def get(self, ip: str, source: str) -> SigPenalty | None:
        return self._rows.get((ip, source))

    async def record_failure(self, ip: str, source: str, now: datetime) -> SigPenalty:
        async with self._lock:
            updated = next_penalty(self._rows.get((ip, source)), ip=ip, source=source, now=now, policy=self._policy)
            self._rows[(ip, source)] = updated
            return updated

    async def purge_stale(self, before: datetime) -> int:
        async with self._lock:
            stale = [
                key
                for key, row in self._rows.items()
                if row.updated_at < before and not row.is_blocked(before)
            ]
            for key in stale:
                del self._rows[key]
            return len(stale)


# =============================================================================
# Verifier
# =============================================================================


class WebhookVerifier:
    """Lockout check, then signature check, recording failures as they happen."""

    def __init__(
        self,
        *,
        auth_token: str,
        webhook_base_url: str,
        penalties: SigPenaltyStore,
        now: Callable[[], datetime] = utcnow,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._auth_token = auth_token
        self._webhook_base_url = webhook_base_url
        self._penalties = penalties
        self._now = now
        self._logger = logger or get_logger("provider_gateway.webhooks")

    async def verify(
        self,
        *,
        ip: str,
        source: str,
        path: str,
        query: str,
        signature: str | None,
        params: Mapping[str, str],
    ) -> None:
        now = self._now()
        penalty = await self._penalties.get(ip, source)
        if penalty is not None and penalty.is_blocked(now):
            retry_after = max(1, int((penalty.blocked_until - now).total_seconds() + 0.999))
            self._logger.warning("Webhook source locked out", ip=ip, source=source, retry_after=retry_after)
            raise SignatureLockoutError(
                "Too many failed webhook signature attempts",
                retry_after=retry_after,
                context=ErrorContext(provider=source),
            )

        url = canonical_callback_url(self._webhook_base_url, path, query)
        if signature and verify_twilio_signature(self._auth_token, signature, url, params):
            return

        updated = await self._penalties.record_failure(ip, source, now)
        self._logger.error(
            "Webhook signature verification failed",
            ip=ip,
            source=source,
            url=url,
            consecutive_failures=updated.failures,
            blocked=updated.blocked_until is not None,
        )
        reason = "Missing X-Twilio-Signature header" if not signature else "Invalid webhook signature"
        raise InvalidSignatureError(reason, context=ErrorContext(provider=source))


__all__ = [
    "SIGNATURE_HEADER",
    "compute_twilio_signature",
    "verify_twilio_signature",
    "canonical_callback_url",
    "client_ip",
    "PenaltyPolicy",
    "SigPenalty",
    "next_penalty",
    "SigPenaltyStore",
    "InMemorySigPenaltyStore",
    "WebhookVerifier",
]
