"""
OpenRouter adapter: chat/text completions and embeddings.

Inline-cost billing. OpenRouter reports what it charged in the
``x-openrouter-cost`` response header; when the header is missing the cost is
estimated from the ``usage`` block of the response. Streamed completions are
relayed byte for byte; their usage is read from the event stream as it passes.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterator
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from ..credit import Credit
from ..errors import UpstreamError
from ..margin import MarginConfig, with_margin_config
from .base import AdapterResult, Capability, read_json, send, send_stream

DEFAULT_BASE_URL = "https://openrouter.ai/api"
COST_HEADER = "x-openrouter-cost"

# Fallback per-token rates when the cost header is absent
INPUT_TOKEN_COST = Decimal("0.000001")
OUTPUT_TOKEN_COST = Decimal("0.000002")
EMBEDDINGS_FALLBACK_COST = Decimal("0.0001")


def estimate_token_cost(body: Any) -> Credit:
    usage = body.get("usage") if isinstance(body, dict) else None
    if not isinstance(usage, dict):
        return Credit.zero()
    prompt_tokens = int(usage.get("prompt_tokens") or 0)
    completion_tokens = int(usage.get("completion_tokens") or 0)
    return Credit.from_dollars(prompt_tokens * INPUT_TOKEN_COST + completion_tokens * OUTPUT_TOKEN_COST)


def cost_from_header(response: httpx.Response) -> Credit | None:
    raw = response.headers.get(COST_HEADER)
    if raw is None or not raw.strip():
        return None
    try:
        value = Decimal(raw.strip())
    except InvalidOperation:
        return None
    if not value.is_finite() or value < 0:
        return None
    return Credit.from_dollars(value)


class OpenRouterStream:
    """
    Server-sent events relayed from an OpenRouter streamed completion.

    The cost header wins when present. Otherwise the last ``usage`` object
    seen in a ``data:`` event prices the call.
    """

    def __init__(
        self,
        response: httpx.Response,
        *,
        provider: str,
        model: str,
        margin_config: MarginConfig,
    ) -> None:
        self._response = response
        self._provider = provider
        self._model = model
        self._margin_config = margin_config
        self._header_cost = cost_from_header(response)
        self._usage_cost: Credit | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                self._scan(self._decoder.decode(chunk))
                yield chunk
        except httpx.HTTPError as exc:
            raise UpstreamError(f"{self._provider} stream interrupted: {exc}", provider=self._provider, cause=exc) from exc
        self._scan(self._decoder.decode(b"", final=True) + "\n")

    def result(self) -> AdapterResult[None]:
        cost = self._header_cost
        if cost is None:
            cost = self._usage_cost or Credit.zero()
        charge = with_margin_config(cost, self._margin_config, self._provider, self._model)
        return AdapterResult(result=None, cost=cost, charge=charge)

    async def aclose(self) -> None:
        await self._response.aclose()

    def _scan(self, text: str) -> None:
        *lines, self._partial = (self._partial + text).split("\n")
        for line in lines:
            line = line.strip()
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if not data or data == "[DONE]":
                continue
            try:
                event = json.loads(data)
            except ValueError:
                # relayed untouched; only usage matters here
                continue
            if not isinstance(event, dict):
                continue
            if isinstance(event.get("usage"), dict):
                self._usage_cost = estimate_token_cost(event)
            if not self._model and event.get("model"):
                self._model = str(event["model"])


class OpenRouterAdapter:
    name = "openrouter"
    capabilities = frozenset({Capability.CHAT_COMPLETIONS, Capability.TEXT_COMPLETIONS, Capability.EMBEDDINGS})

    def __init__(
        self,
        *,
        api_key: str,
        client: httpx.AsyncClient,
        margin_config: MarginConfig,
        base_url: str = DEFAULT_BASE_URL,
    ) -> None:
        self._api_key = api_key
        self._client = client
        self._margin_config = margin_config
        self._base_url = base_url.rstrip("/")

    async def chat_completions(self, payload: dict[str, Any]) -> AdapterResult[dict[str, Any]]:
        return await self._forward("/v1/chat/completions", payload, fallback=estimate_token_cost)

    async def text_completions(self, payload: dict[str, Any]) -> AdapterResult[dict[str, Any]]:
        return await self._forward("/v1/completions", payload, fallback=estimate_token_cost)

    async def stream_chat_completions(self, payload: dict[str, Any]) -> OpenRouterStream:
        return await self._open_stream("/v1/chat/completions", payload)

    async def stream_text_completions(self, payload: dict[str, Any]) -> OpenRouterStream:
        return await self._open_stream("/v1/completions", payload)

    async def embeddings(self, payload: dict[str, Any]) -> AdapterResult[dict[str, Any]]:
        return await self._forward(
            "/v1/embeddings",
            payload,
            fallback=lambda _body: Credit.from_dollars(EMBEDDINGS_FALLBACK_COST),
        )

    async def _forward(self, path: str, payload: dict[str, Any], *, fallback) -> AdapterResult[dict[str, Any]]:
        response = await send(
            self._client,
            self.name,
            "POST",
            f"{self._base_url}{path}",
            json=payload,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        body = read_json(response, self.name)
        cost = cost_from_header(response)
        if cost is None:
            cost = fallback(body)
        model = str(payload.get("model") or (body.get("model") if isinstance(body, dict) else "") or "")
        charge = with_margin_config(cost, self._margin_config, self.name, model)
        return AdapterResult(result=body, cost=cost, charge=charge)

    async def _open_stream(self, path: str, payload: dict[str, Any]) -> OpenRouterStream:
        response = await send_stream(
            self._client,
            self.name,
            "POST",
            f"{self._base_url}{path}",
            json=payload,
            headers={"Authorization": f"Bearer {self._api_key}", "Accept": "text/event-stream"},
        )
        return OpenRouterStream(
            response,
            provider=self.name,
            model=str(payload.get("model") or ""),
            margin_config=self._margin_config,
        )
