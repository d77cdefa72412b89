"""
Replicate adapter: Whisper transcription, image and video generation.

Poll-to-completion billing. A prediction is submitted, then polled until it
reaches a terminal status or the attempt budget runs out. Cost is the
reported GPU ``predict_time`` multiplied by a per-second rate.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any
from urllib.parse import quote

import httpx

from ..credit import Credit
from ..errors import MissingFieldError, UpstreamError, UpstreamTimeoutError
from ..logging import get_logger
from ..margin import MarginConfig, with_margin_config
from .base import AdapterResult, Capability, read_json, send
from .types import ImageRequest, MediaOutput, TranscriptionOutput, TranscriptionRequest, VideoRequest

logger = get_logger("provider_gateway.adapters.replicate")

DEFAULT_BASE_URL = "https://api.replicate.com"
WHISPER_VERSION = "cdd97b257f93cb89dede1c7b1be00e6ed895be431c2e8a9877826e5d7999875b"
SDXL_VERSION = "7762fd07cf82c948538e41f63f77d685e02b063e37e496e96eefd46c929f9bdc"
VIDEO_VERSION = "video-generation-model"

WHISPER_COST_PER_SECOND = Decimal("0.000225")
IMAGE_COST_PER_SECOND = Decimal("0.0023")
VIDEO_COST_PER_SECOND = Decimal("0.005")

# predict_time assumed when the provider omits metrics
IMAGE_DEFAULT_PREDICT_TIME = Decimal("5")
VIDEO_DEFAULT_PREDICT_TIME = Decimal("30")


def transcription_duration(output: dict[str, Any]) -> float:
    """Audio duration: explicit ``duration`` field, else the last segment's end."""
    explicit = output.get("duration")
    if isinstance(explicit, (int, float)) and explicit > 0:
        return float(explicit)
    segments = output.get("segments")
    if isinstance(segments, list) and segments:
        last = segments[-1]
        if isinstance(last, dict) and isinstance(last.get("end"), (int, float)):
            return float(last["end"])
    return 0.0


class ReplicateAdapter:
    name = "replicate"
    capabilities = frozenset({Capability.TRANSCRIPTION, Capability.IMAGE_GENERATION, Capability.VIDEO_GENERATION})

    def __init__(
        self,
        *,
        api_token: str,
        client: httpx.AsyncClient,
        margin_config: MarginConfig,
        base_url: str = DEFAULT_BASE_URL,
        max_poll_attempts: int = 60,
        poll_interval: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        whisper_version: str = WHISPER_VERSION,
        image_version: str = SDXL_VERSION,
        video_version: str = VIDEO_VERSION,
    ) -> None:
        self._api_token = api_token
        self._client = client
        self._margin_config = margin_config
        self._base_url = base_url.rstrip("/")
        self._max_poll_attempts = max(1, int(max_poll_attempts))
        self._poll_interval = float(poll_interval)
        self._sleep = sleep
        self._whisper_version = whisper_version
        self._image_version = image_version
        self._video_version = video_version

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_token}"}

    # =========================================================================
    # Capabilities
    # =========================================================================

    async def transcribe(self, payload: TranscriptionRequest) -> AdapterResult[TranscriptionOutput]:
        if not payload.audio_url:
            raise MissingFieldError("audio_url is required for Replicate transcription")
        model_input: dict[str, Any] = {"audio": payload.audio_url}
        if payload.language:
            model_input["language"] = payload.language
        prediction = await self._run(self._whisper_version, model_input)

        output = prediction.get("output")
        if isinstance(output, str):
            result = TranscriptionOutput(text=output, detected_language=payload.language, duration_seconds=0.0)
        elif isinstance(output, dict):
            result = TranscriptionOutput(
                text=str(output.get("transcription") or output.get("text") or ""),
                detected_language=output.get("detected_language") or payload.language,
                duration_seconds=transcription_duration(output),
                raw=output,
            )
        else:
            raise UpstreamError("Unexpected Replicate output format", provider=self.name)

        cost = self._compute_cost(prediction, WHISPER_COST_PER_SECOND, Decimal(0))
        return self._result(result, cost, "openai/whisper")

    async def generate_image(self, payload: ImageRequest) -> AdapterResult[MediaOutput]:
        model_input: dict[str, Any] = {
            "prompt": payload.prompt,
            "width": payload.width,
            "height": payload.height,
            "num_outputs": payload.count,
        }
        if payload.negative_prompt:
            model_input["negative_prompt"] = payload.negative_prompt
        prediction = await self._run(self._image_version, model_input)
        cost = self._compute_cost(prediction, IMAGE_COST_PER_SECOND, IMAGE_DEFAULT_PREDICT_TIME)
        result = MediaOutput(urls=_output_urls(prediction), model="stability-ai/sdxl", prediction_id=prediction.get("id"))
        return self._result(result, cost, "stability-ai/sdxl")

    async def generate_video(self, payload: VideoRequest) -> AdapterResult[MediaOutput]:
        prediction = await self._run(self._video_version, {"prompt": payload.prompt, "duration": payload.duration})
        cost = self._compute_cost(prediction, VIDEO_COST_PER_SECOND, VIDEO_DEFAULT_PREDICT_TIME)
        result = MediaOutput(urls=_output_urls(prediction), model=self._video_version, prediction_id=prediction.get("id"))
        return self._result(result, cost, self._video_version)

    # =========================================================================
    # Prediction lifecycle
    # =========================================================================

    async def _run(self, version: str, model_input: dict[str, Any]) -> dict[str, Any]:
        response = await send(
            self._client,
            self.name,
            "POST",
            f"{self._base_url}/v1/predictions",
            json={"version": version, "input": model_input},
            headers=self._headers,
        )
        prediction = read_json(response, self.name)
        if prediction.get("status") != "succeeded":
            prediction = await self._wait(prediction)
        return prediction

    async def _wait(self, prediction: dict[str, Any]) -> dict[str, Any]:
        prediction_id = prediction.get("id")
        if not prediction_id:
            raise UpstreamError("Replicate prediction has no id", provider=self.name)

        for attempt in range(self._max_poll_attempts):
            if attempt:
                await self._sleep(self._poll_interval)
            response = await send(
                self._client,
                self.name,
                "GET",
                f"{self._base_url}/v1/predictions/{quote(str(prediction_id), safe='')}",
                headers=self._headers,
            )
            prediction = read_json(response, self.name)
            status = prediction.get("status")
            if status == "succeeded":
                return prediction
            if status == "failed":
                raise UpstreamError(
                    f"Replicate prediction failed: {prediction.get('error') or 'unknown error'}",
                    provider=self.name,
                )
            if status == "canceled":
                raise UpstreamError("Replicate prediction was canceled", provider=self.name)

        logger.warning("Replicate prediction timed out", prediction_id=prediction_id, attempts=self._max_poll_attempts)
        raise UpstreamTimeoutError(
            f"Replicate prediction timed out after {self._max_poll_attempts} poll attempts",
            provider=self.name,
        )

    def _compute_cost(self, prediction: dict[str, Any], rate: Decimal, default_seconds: Decimal) -> Credit:
        metrics = prediction.get("metrics") or {}
        predict_time = metrics.get("predict_time") if isinstance(metrics, dict) else None
        seconds = Decimal(str(predict_time)) if isinstance(predict_time, (int, float)) else default_seconds
        return Credit.from_dollars(max(seconds, Decimal(0)) * rate)

    def _result(self, result: Any, cost: Credit, model: str) -> AdapterResult[Any]:
        return AdapterResult(
            result=result,
            cost=cost,
            charge=with_margin_config(cost, self._margin_config, self.name, model),
        )


def _output_urls(prediction: dict[str, Any]) -> list[str]:
    output = prediction.get("output")
    if isinstance(output, str):
        return [output]
    if isinstance(output, list):
        return [str(item) for item in output if item]
    return []
