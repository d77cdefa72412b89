"""
Deepgram adapter: speech-to-text.

Duration-counted billing: cost is reported audio minutes times the per-minute
rate. Duration comes from ``metadata.duration`` when Deepgram reports it,
otherwise from the end time of the last utterance or word.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import httpx

from ..credit import Credit
from ..errors import MissingFieldError
from ..margin import MarginConfig, with_margin_config
from .base import AdapterResult, Capability, read_json, send
from .types import TranscriptionOutput, TranscriptionRequest

DEFAULT_BASE_URL = "https://api.deepgram.com"
DEFAULT_MODEL = "nova-2"
COST_PER_MINUTE = Decimal("0.0043")


def _last_end(items: Any) -> float | None:
    if isinstance(items, list) and items:
        last = items[-1]
        if isinstance(last, dict) and isinstance(last.get("end"), (int, float)):
            return float(last["end"])
    return None


def audio_duration(body: dict[str, Any]) -> float:
    metadata = body.get("metadata") or {}
    duration = metadata.get("duration") if isinstance(metadata, dict) else None
    if isinstance(duration, (int, float)) and duration > 0:
        return float(duration)

    results = body.get("results") or {}
    end = _last_end(results.get("utterances"))
    if end is not None:
        return end
    for channel in reversed(results.get("channels") or []):
        for alternative in channel.get("alternatives") or []:
            end = _last_end(alternative.get("words"))
            if end is not None:
                return end
    return 0.0


def _first_alternative(body: dict[str, Any]) -> tuple[str, str | None]:
    channels = (body.get("results") or {}).get("channels") or []
    if not channels:
        return "", None
    channel = channels[0]
    alternatives = channel.get("alternatives") or []
    transcript = str(alternatives[0].get("transcript") or "") if alternatives else ""
    return transcript, channel.get("detected_language")


class DeepgramAdapter:
    name = "deepgram"
    capabilities = frozenset({Capability.TRANSCRIPTION})

    def __init__(
        self,
        *,
        api_key: str,
        client: httpx.AsyncClient,
        margin_config: MarginConfig,
        base_url: str = DEFAULT_BASE_URL,
        cost_per_minute: Decimal = COST_PER_MINUTE,
    ) -> None:
        self._api_key = api_key
        self._client = client
        self._margin_config = margin_config
        self._base_url = base_url.rstrip("/")
        self._cost_per_minute = cost_per_minute

    async def transcribe(self, payload: TranscriptionRequest) -> AdapterResult[TranscriptionOutput]:
        model = payload.model or DEFAULT_MODEL
        params: dict[str, str] = {"model": model}
        if payload.language:
            params["language"] = payload.language
        else:
            params["detect_language"] = "true"

        headers = {"Authorization": f"Token {self._api_key}"}
        if payload.audio is not None:
            request_kwargs: dict[str, Any] = {
                "content": payload.audio,
                "headers": {**headers, "Content-Type": payload.content_type},
            }
        elif payload.audio_url:
            request_kwargs = {"json": {"url": payload.audio_url}, "headers": headers}
        else:
            raise MissingFieldError("audio body or audio_url is required")

        response = await send(
            self._client,
            self.name,
            "POST",
            f"{self._base_url}/v1/listen",
            params=params,
            **request_kwargs,
        )
        body = read_json(response, self.name)

        duration = audio_duration(body)
        cost = Credit.from_dollars(Decimal(str(duration)) / 60 * self._cost_per_minute)
        transcript, detected = _first_alternative(body)
        result = TranscriptionOutput(
            text=transcript,
            detected_language=detected or payload.language,
            duration_seconds=duration,
            raw=body,
        )
        return AdapterResult(
            result=result,
            cost=cost,
            charge=with_margin_config(cost, self._margin_config, self.name, model),
        )
