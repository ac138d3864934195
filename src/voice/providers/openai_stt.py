from __future__ import annotations

from typing import Any, Optional

import numpy as np
import structlog
from openai import AsyncOpenAI

from src.voice.audio import float32_to_pcm, write_wav_mono_pcm16
from src.voice.providers.base import TranscriptionError, Transcriber

logger = structlog.get_logger(__name__)


class OpenAITranscriber(Transcriber):
    """
    Whisper transcription through the OpenAI audio API.

    Any OpenAI-compatible endpoint works via OPENAI_BASE_URL.
    """

    def __init__(self, config: Any, client: Optional[AsyncOpenAI] = None):
        self.config = config
        self.model = config.openai_stt_model
        self._client = client or AsyncOpenAI(
            api_key=config.openai_api_key,
            base_url=config.openai_base_url or None,
        )

    async def transcribe(self, samples: np.ndarray, sample_rate: int) -> str:
        if samples is None or len(samples) == 0:
            return ""

        wav_bytes = write_wav_mono_pcm16(float32_to_pcm(samples), sample_rate)
        try:
            result = await self._client.audio.transcriptions.create(
                model=self.model,
                file=("utterance.wav", wav_bytes, "audio/wav"),
                response_format="text",
            )
        except Exception as e:
            logger.warning("OpenAI transcription failed", error=str(e))
            raise TranscriptionError(str(e)) from e

        # response_format="text" returns a str; older SDKs return an object.
        text = result if isinstance(result, str) else getattr(result, "text", "")
        return (text or "").strip()

    async def close(self) -> None:
        await self._client.close()
