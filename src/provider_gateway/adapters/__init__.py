"""
Upstream provider adapters and the capability registry.

The registry resolves a capability (optionally pinned to a provider) to the
first adapter that declares it, then hands back the bound method named in
``CAPABILITY_METHODS``, or in ``STREAM_METHODS`` for a streamed request.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from ..errors import ServiceUnavailableError
from .base import (
    CAPABILITY_METHODS,
    STREAM_METHODS,
    AdapterResult,
    Capability,
    parse_retry_after,
    raise_for_upstream,
    send,
)
from .deepgram import DeepgramAdapter
from .elevenlabs import ElevenLabsAdapter
from .openrouter import OpenRouterAdapter
from .replicate import ReplicateAdapter
from .twilio import TwilioAdapter

_SERVICE_LABELS: dict[Capability, str] = {
    Capability.CHAT_COMPLETIONS: "LLM",
    Capability.TEXT_COMPLETIONS: "LLM",
    Capability.EMBEDDINGS: "Embeddings",
    Capability.TRANSCRIPTION: "STT",
    Capability.TTS: "TTS",
    Capability.IMAGE_GENERATION: "Image",
    Capability.VIDEO_GENERATION: "Video",
    Capability.SMS_OUTBOUND: "SMS",
    Capability.MMS_OUTBOUND: "SMS",
    Capability.SMS_INBOUND: "SMS",
    Capability.MMS_INBOUND: "SMS",
}


class AdapterRegistry:
    def __init__(self, adapters: Iterable[Any] = ()) -> None:
        self._adapters: list[Any] = list(adapters)

    def register(self, adapter: Any) -> None:
        self._adapters.append(adapter)

    @property
    def adapters(self) -> tuple[Any, ...]:
        return tuple(self._adapters)

    def resolve(self, capability: Capability, provider: str | None = None) -> Any:
        for adapter in self._adapters:
            if capability not in adapter.capabilities:
                continue
            if provider is not None and adapter.name != provider:
                continue
            return adapter
        label = _SERVICE_LABELS.get(capability, "Phone")
        raise ServiceUnavailableError(f"{label} service not configured")

    def method_for(self, adapter: Any, capability: Capability, *, stream: bool = False):
        name = (STREAM_METHODS if stream else CAPABILITY_METHODS).get(capability)
        method = getattr(adapter, name, None) if name else None
        if method is None:
            mode = "streaming " if stream else ""
            raise ServiceUnavailableError(f"{adapter.name} does not support {mode}{capability.value}")
        return method


__all__ = [
    "AdapterRegistry",
    "AdapterResult",
    "Capability",
    "CAPABILITY_METHODS",
    "STREAM_METHODS",
    "DeepgramAdapter",
    "ElevenLabsAdapter",
    "OpenRouterAdapter",
    "ReplicateAdapter",
    "TwilioAdapter",
    "parse_retry_after",
    "raise_for_upstream",
    "send",
]
