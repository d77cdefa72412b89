"""
Adapter contract shared by every upstream provider.

Adapters are plain classes that implement only the capability methods their
upstream supports. The gateway dispatches by capability name through
``CAPABILITY_METHODS``; it never inspects adapter types. Each capability
method returns an ``AdapterResult`` or raises ``UpstreamError``. Streaming
variants, named in ``STREAM_METHODS``, return a ``CompletionStream`` instead.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

import httpx

from ..credit import Credit
from ..errors import UpstreamError
from ..logging import truncate_for_log

T = TypeVar("T")


@dataclass(frozen=True)
class AdapterResult(Generic[T]):
    """
    Provider output plus its billing triple.

    Attributes:
        result: Capability-specific payload returned to the caller
        cost: Wholesale amount owed to the upstream provider
        charge: Amount billed to the tenant (cost inflated by margin)
    """

    result: T
    cost: Credit
    charge: Credit


class Capability(str, Enum):
    CHAT_COMPLETIONS = "chat-completions"
    TEXT_COMPLETIONS = "text-completions"
    EMBEDDINGS = "embeddings"
    TRANSCRIPTION = "transcription"
    TTS = "tts"
    IMAGE_GENERATION = "image-generation"
    VIDEO_GENERATION = "video-generation"
    PHONE_OUTBOUND = "phone-outbound"
    PHONE_INBOUND = "phone-inbound"
    SMS_OUTBOUND = "sms-outbound"
    MMS_OUTBOUND = "mms-outbound"
    SMS_INBOUND = "sms-inbound"
    MMS_INBOUND = "mms-inbound"
    PHONE_NUMBER_PROVISION = "phone-number-provision"
    PHONE_NUMBER_MONTHLY = "phone-number-monthly"


# Capability -> adapter method name. Capabilities billed from callbacks or
# known usage (inbound call/SMS, monthly numbers) have no request-time method.
CAPABILITY_METHODS: dict[Capability, str] = {
    Capability.CHAT_COMPLETIONS: "chat_completions",
    Capability.TEXT_COMPLETIONS: "text_completions",
    Capability.EMBEDDINGS: "embeddings",
    Capability.TRANSCRIPTION: "transcribe",
    Capability.TTS: "synthesize_speech",
    Capability.IMAGE_GENERATION: "generate_image",
    Capability.VIDEO_GENERATION: "generate_video",
    Capability.PHONE_OUTBOUND: "initiate_call",
    Capability.SMS_OUTBOUND: "send_message",
    Capability.MMS_OUTBOUND: "send_message",
    Capability.PHONE_NUMBER_PROVISION: "provision_number",
}

# Capability -> adapter method that opens a streamed response
STREAM_METHODS: dict[Capability, str] = {
    Capability.CHAT_COMPLETIONS: "stream_chat_completions",
    Capability.TEXT_COMPLETIONS: "stream_text_completions",
}


# =============================================================================
# Capability Protocols
# =============================================================================


@runtime_checkable
class ChatCompleter(Protocol):
    async def chat_completions(self, payload: dict[str, Any]) -> AdapterResult[dict[str, Any]]: ...


class CompletionStream(Protocol):
    """An open upstream stream that is priced once it has been read to the end."""

    def iter_bytes(self) -> AsyncIterator[bytes]: ...

    def result(self) -> AdapterResult[None]: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class ChatStreamer(Protocol):
    async def stream_chat_completions(self, payload: dict[str, Any]) -> CompletionStream: ...


@runtime_checkable
class TextCompleter(Protocol):
    async def text_completions(self, payload: dict[str, Any]) -> AdapterResult[dict[str, Any]]: ...


@runtime_checkable
class Embedder(Protocol):
    async def embeddings(self, payload: dict[str, Any]) -> AdapterResult[dict[str, Any]]: ...


@runtime_checkable
class Transcriber(Protocol):
    async def transcribe(self, payload: Any) -> AdapterResult[Any]: ...


@runtime_checkable
class SpeechSynthesizer(Protocol):
    async def synthesize_speech(self, payload: Any) -> AdapterResult[Any]: ...


@runtime_checkable
class ImageGenerator(Protocol):
    async def generate_image(self, payload: Any) -> AdapterResult[Any]: ...


@runtime_checkable
class VideoGenerator(Protocol):
    async def generate_video(self, payload: Any) -> AdapterResult[Any]: ...


@runtime_checkable
class CallPlacer(Protocol):
    async def initiate_call(self, payload: Any) -> AdapterResult[Any]: ...

    def bill_call(self, duration_seconds: int) -> AdapterResult[Any]: ...


@runtime_checkable
class MessageSender(Protocol):
    async def send_message(self, payload: Any) -> AdapterResult[Any]: ...


@runtime_checkable
class NumberProvisioner(Protocol):
    async def provision_number(self, payload: Any) -> AdapterResult[Any]: ...


# =============================================================================
# Transport Helpers
# =============================================================================


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> int | None:
    """Parse a Retry-After header given as delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - (now or datetime.now(timezone.utc))).total_seconds()
    return max(0, int(delta + 0.999))


def raise_for_upstream(response: httpx.Response, provider: str) -> None:
    """Raise ``UpstreamError`` for any non-2xx provider response."""
    if response.is_success:
        return
    message = f"{provider} API error ({response.status_code})"
    if response.content:
        message = f"{message}: {truncate_for_log(response.text.strip())}"
    raise UpstreamError(
        message,
        upstream_status=response.status_code,
        retry_after=parse_retry_after(response.headers.get("retry-after")),
        provider=provider,
    )


async def send(client: httpx.AsyncClient, provider: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
    """Single forwarding attempt; transport failures become ``UpstreamError``."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise UpstreamError(f"{provider} request timed out", provider=provider, cause=exc) from exc
    except httpx.HTTPError as exc:
        raise UpstreamError(f"{provider} request failed: {exc}", provider=provider, cause=exc) from exc
    raise_for_upstream(response, provider)
    return response


async def send_stream(
    client: httpx.AsyncClient,
    provider: str,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """
    Open a streamed response. The caller must close it.

    Error responses are read in full and closed before ``UpstreamError`` is
    raised, so only a successful response is ever handed back open.
    """
    request = client.build_request(method, url, **kwargs)
    try:
        response = await client.send(request, stream=True)
    except httpx.TimeoutException as exc:
        raise UpstreamError(f"{provider} request timed out", provider=provider, cause=exc) from exc
    except httpx.HTTPError as exc:
        raise UpstreamError(f"{provider} request failed: {exc}", provider=provider, cause=exc) from exc
    if response.is_success:
        return response
    try:
        await response.aread()
    except httpx.HTTPError as exc:
        raise UpstreamError(
            f"{provider} API error ({response.status_code})",
            upstream_status=response.status_code,
            provider=provider,
            cause=exc,
        ) from exc
    finally:
        await response.aclose()
    raise_for_upstream(response, provider)
    return response


def read_json(response: httpx.Response, provider: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamError(
            f"{provider} returned a non-JSON body",
            upstream_status=response.status_code,
            provider=provider,
            http_status=502,
            cause=exc,
        ) from exc


__all__ = [
    "AdapterResult",
    "Capability",
    "CAPABILITY_METHODS",
    "STREAM_METHODS",
    "CompletionStream",
    "ChatStreamer",
    "ChatCompleter",
    "TextCompleter",
    "Embedder",
    "Transcriber",
    "SpeechSynthesizer",
    "ImageGenerator",
    "VideoGenerator",
    "CallPlacer",
    "MessageSender",
    "NumberProvisioner",
    "parse_retry_after",
    "raise_for_upstream",
    "send",
    "send_stream",
    "read_json",
]
