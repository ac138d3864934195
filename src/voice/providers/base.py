from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator

import numpy as np


class TranscriptionError(Exception):
    pass


class SynthesisError(Exception):
    pass


class AgentRunnerError(Exception):
    pass


class Transcriber(ABC):
    @abstractmethod
    async def transcribe(self, samples: np.ndarray, sample_rate: int) -> str:
        """
        Transcribe mono float32 samples in [-1, 1].

        Empty input returns "". Raises TranscriptionError on failure.
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class Synthesizer(ABC):
    @abstractmethod
    async def synthesize(self, text: str, voice: str) -> bytes:
        """
        Return raw PCM16 mono at the configured output rate, or a
        self-describing encoded container (WAV/AIFF/MP3).

        Raises SynthesisError on failure.
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class AgentRunner(ABC):
    @abstractmethod
    async def run(self, session_key: str, prompt: str, channel: str) -> AsyncIterator[str]:
        """
        Start a response for `prompt` and return its live text stream.

        Call-time failures raise AgentRunnerError; failures mid-stream just
        end the stream.
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None
