"""OpenAI-compatible text endpoints, forwarded as-is.

Chat and text completions with ``"stream": true`` are relayed as server-sent
events.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Query
from fastapi.responses import StreamingResponse

from provider_gateway.adapters import Capability

from ..deps import GatewayDep, TenantDep

router = APIRouter()

STREAMABLE = frozenset({Capability.CHAT_COMPLETIONS, Capability.TEXT_COMPLETIONS})
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _forward(
    gateway: GatewayDep,
    tenant: TenantDep,
    capability: Capability,
    payload: dict[str, Any],
    provider: str | None,
) -> dict[str, Any] | StreamingResponse:
    if capability in STREAMABLE and payload.get("stream") is True:
        chunks = await gateway.execute_stream(tenant, capability, payload, provider=provider)
        return StreamingResponse(chunks, media_type="text/event-stream", headers=SSE_HEADERS)
    result = await gateway.execute(tenant, capability, payload, provider=provider)
    return result.result


@router.post("/chat/completions", response_model=None)
async def chat_completions(
    gateway: GatewayDep,
    tenant: TenantDep,
    payload: dict[str, Any] = Body(...),
    provider: str | None = Query(default=None),
) -> dict[str, Any] | StreamingResponse:
    return await _forward(gateway, tenant, Capability.CHAT_COMPLETIONS, payload, provider)


@router.post("/completions", response_model=None)
async def completions(
    gateway: GatewayDep,
    tenant: TenantDep,
    payload: dict[str, Any] = Body(...),
    provider: str | None = Query(default=None),
) -> dict[str, Any] | StreamingResponse:
    return await _forward(gateway, tenant, Capability.TEXT_COMPLETIONS, payload, provider)


@router.post("/embeddings")
async def embeddings(
    gateway: GatewayDep,
    tenant: TenantDep,
    payload: dict[str, Any] = Body(...),
    provider: str | None = Query(default=None),
) -> dict[str, Any]:
    return await _forward(gateway, tenant, Capability.EMBEDDINGS, payload, provider)
