"""Health check endpoints."""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from ..deps import ServicesDep

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    adapters: list[str]
    webhooks: bool


@router.get("/healthz", response_model=HealthResponse)
async def healthz(services: ServicesDep) -> HealthResponse:
    adapters = [adapter.name for adapter in services.gateway.registry.adapters]
    return HealthResponse(
        status="ok" if adapters else "degraded",
        adapters=adapters,
        webhooks=services.verifier is not None,
    )
