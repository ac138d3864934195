from __future__ import annotations

from typing import Any, Optional

import structlog
from openai import AsyncOpenAI

from src.voice.audio import resample_pcm16
from src.voice.providers.base import SynthesisError, Synthesizer

logger = structlog.get_logger(__name__)

OPENAI_PCM_SAMPLE_RATE = 24000

OPENAI_VOICES = ("alloy", "ash", "coral", "echo", "fable", "nova", "onyx", "sage", "shimmer")

# Client-facing voice names mapped onto OpenAI voices.
VOICE_ALIASES = {
    "rachel": "nova",
    "bella": "shimmer",
    "emma": "coral",
    "adam": "onyx",
    "michael": "echo",
    "george": "fable",
    "sky": "alloy",
}


def resolve_voice(voice: Optional[str], default: str = "nova") -> str:
    name = (voice or "").strip().lower()
    if name in OPENAI_VOICES:
        return name
    return VOICE_ALIASES.get(name, default)


class OpenAISynthesizer(Synthesizer):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    Requests raw 24kHz PCM and resamples it to the connection output rate.
    """

    def __init__(self, config: Any, client: Optional[AsyncOpenAI] = None):
        self.config = config
        self.output_sample_rate = config.output_sample_rate
        self._client = client or AsyncOpenAI(
            api_key=config.openai_api_key,
            base_url=config.openai_base_url or None,
        )

    async def synthesize(self, text: str, voice: str) -> bytes:
        if not text or not text.strip():
            return b""

        try:
            resp = await self._client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=resolve_voice(voice),
                input=text,
                response_format="pcm",
            )
            pcm = resp.content
        except Exception as e:
            logger.warning("OpenAI TTS failed", error=str(e))
            raise SynthesisError(str(e)) from e

        return resample_pcm16(pcm, OPENAI_PCM_SAMPLE_RATE, self.output_sample_rate)

    async def close(self) -> None:
        await self._client.close()
