"""Speech-to-text and text-to-speech endpoints."""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Query, Request, Response
from pydantic import BaseModel, Field, model_validator

from provider_gateway.adapters import Capability
from provider_gateway.adapters.types import SpeechRequest, TranscriptionRequest
from provider_gateway.errors import MissingFieldError, ValidationError

from ..deps import GatewayDep, TenantDep

router = APIRouter()


class TranscriptionResponse(BaseModel):
    text: str
    language: str | None = None
    duration: float = 0.0


class SpeechBody(BaseModel):
    input: str | None = None
    text: str | None = None
    voice: str | None = None
    model: str | None = None
    response_format: str = Field(default="mp3")

    @model_validator(mode="after")
    def _require_text(self) -> SpeechBody:
        if not (self.input or self.text):
            raise ValueError("input is required")
        return self

    @property
    def content(self) -> str:
        return self.input or self.text or ""


async def _transcription_request(
    request: Request,
    model: str | None,
    language: str | None,
) -> TranscriptionRequest:
    body = await request.body()
    content_type = request.headers.get("content-type", "application/octet-stream")
    if "application/json" in content_type:
        try:
            data: Any = json.loads(body or b"{}")
        except json.JSONDecodeError as exc:
            raise ValidationError("Malformed JSON body") from exc
        if not isinstance(data, dict) or not data.get("audio_url"):
            raise MissingFieldError("audio_url is required")
        return TranscriptionRequest(
            audio_url=str(data["audio_url"]),
            model=model or data.get("model"),
            language=language or data.get("language"),
        )
    if not body:
        raise MissingFieldError("audio body or audio_url is required")
    return TranscriptionRequest(audio=body, content_type=content_type, model=model, language=language)


@router.post("/audio/transcriptions", response_model=TranscriptionResponse)
async def transcriptions(
    request: Request,
    gateway: GatewayDep,
    tenant: TenantDep,
    model: str | None = Query(default=None),
    language: str | None = Query(default=None),
    provider: str | None = Query(default=None),
) -> TranscriptionResponse:
    payload = await _transcription_request(request, model, language)
    result = await gateway.execute(tenant, Capability.TRANSCRIPTION, payload, provider=provider)
    output = result.result
    return TranscriptionResponse(
        text=output.text,
        language=output.detected_language,
        duration=output.duration_seconds,
    )


@router.post("/audio/speech")
async def speech(
    body: SpeechBody,
    gateway: GatewayDep,
    tenant: TenantDep,
    provider: str | None = Query(default=None),
) -> Response:
    payload = SpeechRequest(
        text=body.content,
        voice=body.voice,
        model=body.model,
        response_format=body.response_format,
    )
    result = await gateway.execute(tenant, Capability.TTS, payload, provider=provider)
    return Response(content=result.result.audio, media_type=result.result.content_type)
