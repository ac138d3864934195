"""
Collaborator wiring.

Backends are probed once at startup and bundled into `DuplexDeps`, which is
shared (read-only) by every connection. Tests build `DuplexDeps` directly
with fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import numpy as np
import structlog

from src.voice.providers.base import (
    AgentRunner,
    SynthesisError,
    Synthesizer,
    TranscriptionError,
    Transcriber,
)
from src.voice.vad import RMSVAD, VADFactory, create_vad_factory

logger = structlog.get_logger(__name__)

FrameSink = Callable[[Dict[str, Any]], Any]


class UnavailableTranscriber(Transcriber):
    """Stand-in when no speech recognition backend is configured."""

    async def transcribe(self, samples: np.ndarray, sample_rate: int) -> str:
        if samples is None or len(samples) == 0:
            return ""
        raise TranscriptionError("speech recognition is not configured")


class UnavailableSynthesizer(Synthesizer):
    """Stand-in when no speech synthesis backend is configured."""

    async def synthesize(self, text: str, voice: str) -> bytes:
        raise SynthesisError("speech synthesis is not configured")


@dataclass
class DuplexDeps:
    """Everything a connection needs from the outside world."""
    transcriber: Transcriber
    synthesizer: Synthesizer
    runner: Optional[AgentRunner] = None
    vad_factory: VADFactory = RMSVAD
    send_frame: Optional[FrameSink] = None

    async def close(self) -> None:
        for resource in (self.transcriber, self.synthesizer, self.runner):
            if resource is None:
                continue
            try:
                await resource.close()
            except Exception as e:
                logger.warning("Failed to close collaborator", resource=type(resource).__name__, error=str(e))


def _build_transcriber(config: Any) -> Transcriber:
    provider = config.stt_provider
    if provider == "none":
        return UnavailableTranscriber()
    if provider == "openai" or (provider == "auto" and config.openai_api_key):
        from src.voice.providers.openai_stt import OpenAITranscriber

        return OpenAITranscriber(config)
    logger.warning("No speech recognition backend available")
    return UnavailableTranscriber()


def _build_synthesizer(config: Any) -> Synthesizer:
    from src.voice.providers.say_tts import SaySynthesizer, say_available

    provider = config.tts_provider
    if provider == "none":
        return UnavailableSynthesizer()
    if provider == "openai" or (provider == "auto" and config.openai_api_key):
        from src.voice.providers.openai_tts import OpenAISynthesizer

        return OpenAISynthesizer(config)
    if provider == "say" or (provider == "auto" and say_available()):
        return SaySynthesizer()
    logger.warning("No speech synthesis backend available")
    return UnavailableSynthesizer()


def _build_runner(config: Any) -> Optional[AgentRunner]:
    key = config.openai_api_key if config.llm_provider == "openai" else config.groq_api_key
    if not key:
        logger.warning("No agent runner configured", llm_provider=config.llm_provider)
        return None
    from src.voice.providers.llm import ChatAgentRunner

    return ChatAgentRunner(config)


def build_deps(config: Optional[Any] = None, send_frame: Optional[FrameSink] = None) -> DuplexDeps:
    """Probe available backends once and wire them together."""
    if config is None:
        from src.voice.config import get_config

        config = get_config()

    deps = DuplexDeps(
        transcriber=_build_transcriber(config),
        synthesizer=_build_synthesizer(config),
        runner=_build_runner(config),
        vad_factory=create_vad_factory(config),
        send_frame=send_frame,
    )
    logger.info(
        "Voice collaborators ready",
        transcriber=type(deps.transcriber).__name__,
        synthesizer=type(deps.synthesizer).__name__,
        runner=type(deps.runner).__name__ if deps.runner else None,
        vad=getattr(deps.vad_factory, "__name__", type(deps.vad_factory).__name__),
    )
    return deps
