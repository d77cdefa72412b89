"""Image and video generation endpoints."""

from __future__ import annotations

import time

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from provider_gateway.adapters import Capability
from provider_gateway.adapters.types import ImageRequest, MediaOutput, VideoRequest
from provider_gateway.errors import ValidationError

from ..deps import GatewayDep, TenantDep

router = APIRouter()


class ImageBody(BaseModel):
    prompt: str = Field(..., min_length=1)
    n: int = Field(default=1, ge=1, le=4)
    size: str = "1024x1024"
    negative_prompt: str | None = None


class VideoBody(BaseModel):
    prompt: str = Field(..., min_length=1)
    duration: int = Field(default=4, ge=1, le=30)


class MediaItem(BaseModel):
    url: str


class MediaResponse(BaseModel):
    created: int
    data: list[MediaItem]


def parse_size(size: str) -> tuple[int, int]:
    try:
        width, height = (int(part) for part in size.lower().split("x", 1))
    except ValueError as exc:
        raise ValidationError(f"Invalid size {size!r}; expected WIDTHxHEIGHT") from exc
    if width <= 0 or height <= 0:
        raise ValidationError(f"Invalid size {size!r}; expected WIDTHxHEIGHT")
    return width, height


def _media_response(output: MediaOutput) -> MediaResponse:
    return MediaResponse(created=int(time.time()), data=[MediaItem(url=url) for url in output.urls])


@router.post("/images/generations", response_model=MediaResponse)
async def image_generations(
    body: ImageBody,
    gateway: GatewayDep,
    tenant: TenantDep,
    provider: str | None = Query(default=None),
) -> MediaResponse:
    width, height = parse_size(body.size)
    payload = ImageRequest(
        prompt=body.prompt,
        width=width,
        height=height,
        count=body.n,
        negative_prompt=body.negative_prompt,
    )
    result = await gateway.execute(tenant, Capability.IMAGE_GENERATION, payload, provider=provider)
    return _media_response(result.result)


@router.post("/video/generations", response_model=MediaResponse)
async def video_generations(
    body: VideoBody,
    gateway: GatewayDep,
    tenant: TenantDep,
    provider: str | None = Query(default=None),
) -> MediaResponse:
    payload = VideoRequest(prompt=body.prompt, duration=body.duration)
    result = await gateway.execute(tenant, Capability.VIDEO_GENERATION, payload, provider=provider)
    return _media_response(result.result)
