"""
Wake-word listener.

Listens for a short phrase ("hey nebo") before a duplex connection is opened.
Uses its own noise gate and VAD, a short-utterance segmenter and the shared
transcriber; a fuzzy match fires the detection callback.
"""

from __future__ import annotations

import inspect
import re
from typing import Any, Callable, Iterable, Optional

import numpy as np
import structlog

from src.voice.audio import pcm_to_float32
from src.voice.gate import NoiseGate
from src.voice.providers.base import Transcriber
from src.voice.segmentation import SegmenterSettings, UtteranceSegmenter
from src.voice.vad import RMSVAD, VAD

logger = structlog.get_logger(__name__)

DEFAULT_WAKE_PHRASE = "hey nebo"
MAX_EDIT_DISTANCE = 3

# Common mis-transcriptions of the default phrase.
DEFAULT_VARIANTS = (
    "hey nebo",
    "hey nemo",
    "hey neighbor",
    "a nebo",
    "hey nebbo",
    "hey nebow",
    "he nebo",
)

_NON_LETTERS = re.compile(r"[^\w\s]|[\d_]")


def normalize_phrase(text: str) -> str:
    """Lowercase, keep letters and spaces only, collapse whitespace."""
    cleaned = _NON_LETTERS.sub("", (text or "").lower())
    return " ".join(cleaned.split())


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if not a:
        return len(b)
    if not b:
        return len(a)

    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        curr = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            curr[j] = min(prev[j] + 1, curr[j - 1] + 1, prev[j - 1] + cost)
        prev = curr
    return prev[-1]


def is_wake_phrase(
    text: str,
    phrase: str = DEFAULT_WAKE_PHRASE,
    variants: Optional[Iterable[str]] = None,
) -> bool:
    """
    True if `text` is the wake phrase, a known variant, starts with one,
    or is within a small edit distance of the canonical phrase.
    """
    normalized = normalize_phrase(text)
    if not normalized:
        return False

    canonical = normalize_phrase(phrase)
    if variants is None:
        variants = DEFAULT_VARIANTS if canonical == DEFAULT_WAKE_PHRASE else (canonical,)

    for trigger in variants:
        if normalized == trigger or normalized.startswith(trigger + " "):
            return True

    return levenshtein(normalized, canonical) <= MAX_EDIT_DISTANCE


class WakeWordDetector:
    """
    Feed 20ms PCM16 frames; `on_detect` fires when the wake phrase is heard.

    `on_detect` may be a plain function or a coroutine function.
    """

    def __init__(
        self,
        transcriber: Transcriber,
        on_detect: Optional[Callable[[], Any]] = None,
        *,
        vad: Optional[VAD] = None,
        gate: Optional[NoiseGate] = None,
        sample_rate: int = 16000,
        phrase: str = DEFAULT_WAKE_PHRASE,
    ):
        self._transcriber = transcriber
        self._on_detect = on_detect
        self._vad = vad or RMSVAD()
        self._gate = gate or NoiseGate()
        self.sample_rate = sample_rate
        self.phrase = phrase
        self._segmenter = UtteranceSegmenter(sample_rate, SegmenterSettings.wake_word())
        self.detections = 0

    async def feed(self, frame: np.ndarray) -> bool:
        """Process one frame. Returns True if the wake phrase was detected."""
        passed = self._gate.filter(frame)
        if passed is None:
            utterance = self._segmenter.push(frame, speech=False, gated=True)
        else:
            speech = self._vad.is_speech(passed)
            utterance = self._segmenter.push(passed, speech=speech)

        if utterance is None:
            return False

        self._vad.reset()
        if not utterance.accepted:
            logger.debug(
                "Wake candidate rejected",
                reason=utterance.reason,
                duration_s=round(utterance.duration_s, 2),
            )
            return False

        try:
            text = await self._transcriber.transcribe(pcm_to_float32(utterance.samples), self.sample_rate)
        except Exception as e:
            logger.warning("Wake word transcription failed", error=str(e))
            return False

        if not is_wake_phrase(text, self.phrase):
            logger.debug("Not a wake phrase", text=text[:40])
            return False

        self.detections += 1
        logger.info("Wake word detected", text=text)
        if self._on_detect is not None:
            result = self._on_detect()
            if inspect.isawaitable(result):
                await result
        return True
