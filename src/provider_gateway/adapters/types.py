"""Typed inputs and outputs for the non-JSON-passthrough capabilities."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class TranscriptionRequest:
    audio: bytes | None = None
    audio_url: str | None = None
    content_type: str = "application/octet-stream"
    model: str | None = None
    language: str | None = None


@dataclass(frozen=True)
class TranscriptionOutput:
    text: str
    detected_language: str | None
    duration_seconds: float
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SpeechRequest:
    text: str
    voice: str | None = None
    model: str | None = None
    response_format: str = "mp3"


@dataclass(frozen=True)
class SpeechOutput:
    audio: bytes
    content_type: str
    characters: int


@dataclass(frozen=True)
class ImageRequest:
    prompt: str
    width: int = 1024
    height: int = 1024
    count: int = 1
    negative_prompt: str | None = None


@dataclass(frozen=True)
class VideoRequest:
    prompt: str
    duration: int = 4


@dataclass(frozen=True)
class MediaOutput:
    urls: list[str]
    model: str
    prediction_id: str | None = None


@dataclass(frozen=True)
class CallRequest:
    tenant_id: str
    to: str
    from_: str
    twiml_url: str | None = None


@dataclass(frozen=True)
class CallOutput:
    call_sid: str
    status: str


@dataclass(frozen=True)
class MessageRequest:
    to: str
    from_: str
    body: str
    media_urls: tuple[str, ...] = ()
    tenant_id: str | None = None

    @property
    def is_mms(self) -> bool:
        return len(self.media_urls) > 0


@dataclass(frozen=True)
class MessageOutput:
    sid: str | None
    status: str
    capability: str


@dataclass(frozen=True)
class NumberRequest:
    tenant_id: str
    area_code: str | None = None
    country: str = "US"
    voice: bool = True
    mms: bool = True


@dataclass(frozen=True)
class PhoneNumber:
    id: str
    phone_number: str
    friendly_name: str
    capabilities: dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class CallUsage:
    minutes: int
    duration_seconds: int | None = None
