"""
Tests for callback signature verification and the lockout ladder.
"""

from datetime import timedelta

import pytest

from provider_gateway.errors import InvalidSignatureError, SignatureLockoutError
from provider_gateway.webhooks import (
    InMemorySigPenaltyStore,
    PenaltyPolicy,
    WebhookVerifier,
    canonical_callback_url,
    client_ip,
    compute_twilio_signature,
    next_penalty,
    verify_twilio_signature,
)

from tests.fakes import FakeWallClock

TOKEN = "twilio-token"
BASE = "https://gw.example.com/v1"
PATH = "/v1/phone/outbound/status/tenant-1"
URL = "https://gw.example.com/v1/phone/outbound/status/tenant-1"
PARAMS = {"CallSid": "CA123", "CallStatus": "completed", "CallDuration": "125"}


class TestSignature:
    """Test HMAC-SHA1 signing over URL and sorted params."""

    def test_signature_is_base64_sha1(self):
        signature = compute_twilio_signature(TOKEN, URL, PARAMS)
        assert len(signature) == 28
        assert signature.endswith("=")

    def test_verify_accepts_valid(self):
        signature = compute_twilio_signature(TOKEN, URL, PARAMS)
        assert verify_twilio_signature(TOKEN, signature, URL, PARAMS)

    def test_single_character_mutation_rejected(self):
        signature = compute_twilio_signature(TOKEN, URL, PARAMS)
        mutated = ("A" if signature[0] != "A" else "B") + signature[1:]
        assert not verify_twilio_signature(TOKEN, mutated, URL, PARAMS)

    def test_param_change_rejected(self):
        signature = compute_twilio_signature(TOKEN, URL, PARAMS)
        assert not verify_twilio_signature(TOKEN, signature, URL, {**PARAMS, "CallDuration": "5"})

    def test_param_order_does_not_matter(self):
        reordered = dict(reversed(list(PARAMS.items())))
        assert compute_twilio_signature(TOKEN, URL, PARAMS) == compute_twilio_signature(TOKEN, URL, reordered)


class TestCanonicalUrl:
    """Test reconstruction of the signed URL."""

    def test_base_path_is_not_doubled(self):
        assert canonical_callback_url(BASE, PATH) == URL

    def test_query_is_appended(self):
        assert canonical_callback_url(BASE, PATH, "a=1") == URL + "?a=1"

    def test_base_without_path(self):
        assert canonical_callback_url("https://gw.example.com/", "/v1/x") == "https://gw.example.com/v1/x"


class TestClientIp:
    """Test source address extraction."""

    def test_first_forwarded_hop(self):
        assert client_ip({"x-forwarded-for": "203.0.113.5, 10.0.0.1"}) == "203.0.113.5"

    def test_real_ip_fallback(self):
        assert client_ip({"x-real-ip": " 198.51.100.7 "}) == "198.51.100.7"

    def test_peer_fallback(self):
        assert client_ip({}, "127.0.0.1") == "127.0.0.1"
        assert client_ip({}) == "unknown"


class TestNextPenalty:
    """Test the failure counter ladder."""

    policy = PenaltyPolicy(threshold=3, lockout_seconds=60, decay_seconds=600)

    def test_blocks_at_threshold(self):
        wall = FakeWallClock()
        row = None
        for _ in range(3):
            row = next_penalty(row, ip="1.2.3.4", source="twilio", now=wall.now, policy=self.policy)
        assert row.failures == 3
        assert row.blocked_until == wall.now + timedelta(seconds=60)
        assert row.is_blocked(wall.now)

    def test_decay_resets_count(self):
        wall = FakeWallClock()
        row = next_penalty(None, ip="1.2.3.4", source="twilio", now=wall.now, policy=self.policy)
        row = next_penalty(row, ip="1.2.3.4", source="twilio", now=wall.now, policy=self.policy)
        wall.advance(600)
        row = next_penalty(row, ip="1.2.3.4", source="twilio", now=wall.now, policy=self.policy)
        assert row.failures == 1

    def test_elapsed_lockout_resets_count(self):
        wall = FakeWallClock()
        row = None
        for _ in range(3):
            row = next_penalty(row, ip="1.2.3.4", source="twilio", now=wall.now, policy=self.policy)
        wall.advance(61)
        assert not row.is_blocked(wall.now)
        row = next_penalty(row, ip="1.2.3.4", source="twilio", now=wall.now, policy=self.policy)
        assert row.failures == 1
        assert row.blocked_until is None


class TestInMemorySigPenaltyStore:
    """Test penalty persistence and cleanup."""

    async def test_purge_keeps_active_lockouts(self):
        wall = FakeWallClock()
        store = InMemorySigPenaltyStore(PenaltyPolicy(threshold=1, lockout_seconds=3600))
        await store.record_failure("1.1.1.1", "twilio", wall.now)

        later = wall.now + timedelta(seconds=10)
        assert await store.purge_stale(later) == 0

        much_later = wall.now + timedelta(hours=2)
        assert await store.purge_stale(much_later) == 1
        assert await store.get("1.1.1.1", "twilio") is None


class TestWebhookVerifier:
    """Test lockout-first verification."""

    @pytest.fixture
    def wall(self):
        return FakeWallClock()

    @pytest.fixture
    def store(self):
        return InMemorySigPenaltyStore(PenaltyPolicy(threshold=5, lockout_seconds=900, decay_seconds=3600))

    @pytest.fixture
    def verifier(self, store, wall):
        return WebhookVerifier(auth_token=TOKEN, webhook_base_url=BASE, penalties=store, now=wall)

    async def _verify(self, verifier, signature, ip="203.0.113.5"):
        await verifier.verify(ip=ip, source="twilio", path=PATH, query="", signature=signature, params=PARAMS)

    async def test_valid_signature_passes(self, verifier, store):
        await self._verify(verifier, compute_twilio_signature(TOKEN, URL, PARAMS))
        assert await store.get("203.0.113.5", "twilio") is None

    async def test_missing_signature_records_failure(self, verifier, store):
        with pytest.raises(InvalidSignatureError) as exc_info:
            await self._verify(verifier, None)
        assert exc_info.value.message == "Missing X-Twilio-Signature header"
        assert exc_info.value.http_status == 401
        assert (await store.get("203.0.113.5", "twilio")).failures == 1

    async def test_lockout_blocks_even_valid_signature(self, verifier, wall):
        for _ in range(5):
            with pytest.raises(InvalidSignatureError):
                await self._verify(verifier, "bogus")

        valid = compute_twilio_signature(TOKEN, URL, PARAMS)
        with pytest.raises(SignatureLockoutError) as exc_info:
            await self._verify(verifier, valid)
        assert exc_info.value.retry_after == 900
        assert exc_info.value.http_status == 429

        wall.advance(600)
        with pytest.raises(SignatureLockoutError) as exc_info:
            await self._verify(verifier, valid)
        assert exc_info.value.retry_after == 300

        wall.advance(300)
        await self._verify(verifier, valid)

    async def test_lockout_is_per_ip(self, verifier):
        for _ in range(5):
            with pytest.raises(InvalidSignatureError):
                await self._verify(verifier, "bogus")
        await self._verify(verifier, compute_twilio_signature(TOKEN, URL, PARAMS), ip="198.51.100.1")

    async def test_success_does_not_clear_failures(self, verifier, store):
        with pytest.raises(InvalidSignatureError):
            await self._verify(verifier, "bogus")
        await self._verify(verifier, compute_twilio_signature(TOKEN, URL, PARAMS))
        assert (await store.get("203.0.113.5", "twilio")).failures == 1
