"""
Route tests for streamed completions relayed as server-sent events.
"""

import httpx
import pytest

from provider_gateway.adapters import OpenRouterAdapter
from provider_gateway.credit import Credit
from provider_gateway.margin import MarginConfig

from tests.fakes import RecordingTransport, json_response

SSE_BODY = (
    b'data: {"id":"gen-1","choices":[{"delta":{"content":"hel"}}]}\n\n'
    b'data: {"id":"gen-1","choices":[{"delta":{"content":"lo"}}]}\n\n'
    b"data: [DONE]\n\n"
)
CHAT = {"model": "openai/gpt-4o", "messages": [{"role": "user", "content": "hi"}]}


def _openrouter_handler(request: httpx.Request) -> httpx.Response:
    if b'"stream":true' in request.content.replace(b" ", b""):
        return httpx.Response(
            200,
            content=SSE_BODY,
            headers={"content-type": "text/event-stream", "x-openrouter-cost": "0.01"},
        )
    return json_response(200, {"id": "gen-2", "choices": []}, {"x-openrouter-cost": "0.01"})


@pytest.fixture
def openrouter_upstream() -> RecordingTransport:
    return RecordingTransport(_openrouter_handler)


@pytest.fixture
def chat_adapter(openrouter_upstream) -> OpenRouterAdapter:
    return OpenRouterAdapter(
        api_key="sk-or-test",
        client=openrouter_upstream.client(),
        margin_config=MarginConfig(),
        base_url="https://openrouter.test/api",
    )


class TestStreamedCompletions:
    """Test SSE passthrough and post-stream billing."""

    async def test_chat_stream_is_relayed_and_billed_once(self, client, auth_headers, meter, ledger):
        response = await client.post("/v1/chat/completions", json={**CHAT, "stream": True}, headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.content == SSE_BODY
        [event] = meter.events
        assert event.provider == "openrouter"
        assert event.cost == Credit.from_dollars("0.01")
        assert event.charge == Credit.from_dollars("0.013")
        assert await ledger.balance("tenant-1") == Credit.from_dollars(10) - event.charge

    async def test_text_completion_stream(self, client, auth_headers, meter, openrouter_upstream):
        response = await client.post(
            "/v1/completions",
            json={"model": "openai/gpt-4o", "prompt": "hi", "stream": True},
            headers=auth_headers,
        )
        assert response.content == SSE_BODY
        assert openrouter_upstream.requests[0].url.path == "/api/v1/completions"
        assert len(meter.events) == 1

    async def test_without_stream_flag_returns_json(self, client, auth_headers, meter):
        response = await client.post("/v1/chat/completions", json=CHAT, headers=auth_headers)
        assert response.json()["id"] == "gen-2"
        assert len(meter.events) == 1

    async def test_rejected_stream_is_a_json_error(self, client, auth_headers, ledger, meter, openrouter_upstream):
        await ledger.debit("tenant-1", Credit.from_dollars(10), reason="drain")
        response = await client.post("/v1/chat/completions", json={**CHAT, "stream": True}, headers=auth_headers)

        assert response.status_code == 402
        assert response.json()["error"]["code"] == "insufficient_credits"
        assert openrouter_upstream.requests == []
        assert meter.events == []
