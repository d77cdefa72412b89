"""
ElevenLabs adapter: text-to-speech.

Unit-counted billing: cost is the request text's character count times a
per-character rate, so it is known before the upstream call returns.
"""

from __future__ import annotations

from decimal import Decimal
from urllib.parse import quote

import httpx

from ..credit import Credit
from ..margin import MarginConfig, with_margin_config
from .base import AdapterResult, Capability, send
from .types import SpeechOutput, SpeechRequest

DEFAULT_BASE_URL = "https://api.elevenlabs.io"
DEFAULT_VOICE = "21m00Tcm4TlvDq8ikWAM"
DEFAULT_MODEL = "eleven_multilingual_v2"
COST_PER_CHAR = Decimal("0.000015")

VOICE_SETTINGS = {"stability": 0.5, "similarity_boost": 0.75}


def output_format_for(response_format: str) -> str:
    # mp3 needs an explicit sample rate and bitrate
    return "mp3_44100_128" if response_format == "mp3" else response_format


def character_cost(text: str, cost_per_char: Decimal = COST_PER_CHAR) -> Credit:
    return Credit.from_dollars(len(text) * cost_per_char)


class ElevenLabsAdapter:
    name = "elevenlabs"
    capabilities = frozenset({Capability.TTS})

    def __init__(
        self,
        *,
        api_key: str,
        client: httpx.AsyncClient,
        margin_config: MarginConfig,
        base_url: str = DEFAULT_BASE_URL,
        cost_per_char: Decimal = COST_PER_CHAR,
    ) -> None:
        self._api_key = api_key
        self._client = client
        self._margin_config = margin_config
        self._base_url = base_url.rstrip("/")
        self._cost_per_char = cost_per_char

    async def synthesize_speech(self, payload: SpeechRequest) -> AdapterResult[SpeechOutput]:
        voice = payload.voice or DEFAULT_VOICE
        model = payload.model or DEFAULT_MODEL
        cost = character_cost(payload.text, self._cost_per_char)

        response = await send(
            self._client,
            self.name,
            "POST",
            f"{self._base_url}/v1/text-to-speech/{quote(voice, safe='')}",
            params={"output_format": output_format_for(payload.response_format)},
            json={"text": payload.text, "model_id": model, "voice_settings": VOICE_SETTINGS},
            headers={"xi-api-key": self._api_key},
        )

        result = SpeechOutput(
            audio=response.content,
            content_type=response.headers.get("content-type", "audio/mpeg"),
            characters=len(payload.text),
        )
        return AdapterResult(
            result=result,
            cost=cost,
            charge=with_margin_config(cost, self._margin_config, self.name, model),
        )
