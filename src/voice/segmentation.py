"""
Utterance segmentation.

Turns a stream of classified frames into complete utterances. Shared by the
duplex ASR loop and the wake-word listener, which only differ in timing.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

import numpy as np

from src.voice.audio import FRAME_DURATION_MS


@dataclass(frozen=True)
class SegmenterSettings:
    """Timing for one segmentation mode. Durations are in milliseconds."""
    end_silence_ms: int
    trailing_ms: int
    pre_roll_ms: int
    min_duration_s: float
    max_duration_s: Optional[float] = None

    @classmethod
    def duplex(cls) -> "SegmenterSettings":
        return cls(end_silence_ms=500, trailing_ms=300, pre_roll_ms=200, min_duration_s=0.5)

    @classmethod
    def wake_word(cls) -> "SegmenterSettings":
        return cls(
            end_silence_ms=300,
            trailing_ms=100,
            pre_roll_ms=100,
            min_duration_s=0.3,
            max_duration_s=2.0,
        )


@dataclass
class Utterance:
    """A completed speech segment."""
    samples: np.ndarray
    sample_rate: int
    accepted: bool
    reason: str = ""

    @property
    def duration_s(self) -> float:
        return len(self.samples) / self.sample_rate


class UtteranceSegmenter:
    """
    Accumulates speech frames into utterances.

    Frames suppressed by the noise gate are pushed with `gated=True`; they
    count as silence but are never classified.
    """

    def __init__(self, sample_rate: int = 16000, settings: Optional[SegmenterSettings] = None):
        self.sample_rate = sample_rate
        self.settings = settings or SegmenterSettings.duplex()

        s = self.settings
        self._end_silence_frames = max(1, s.end_silence_ms // FRAME_DURATION_MS)
        self._trailing_frames = s.trailing_ms // FRAME_DURATION_MS
        self._pre_roll: Deque[np.ndarray] = deque(maxlen=max(1, s.pre_roll_ms // FRAME_DURATION_MS))

        self._frames: List[np.ndarray] = []
        self._samples = 0
        self._silence_run = 0
        self._active = False

    @property
    def active(self) -> bool:
        """True while an utterance is being accumulated."""
        return self._active

    def push(self, frame: np.ndarray, *, speech: bool, gated: bool = False) -> Optional[Utterance]:
        """
        Feed one frame. Returns an Utterance when one ends, else None.
        """
        if not self._active:
            if gated:
                self._pre_roll.clear()
                return None
            if not speech:
                self._pre_roll.append(frame)
                return None
            self._start(frame)
            return self._check_length()

        if speech and not gated:
            self._silence_run = 0
            self._append(frame)
            return self._check_length()

        self._silence_run += 1
        if self._silence_run <= self._trailing_frames:
            self._append(frame)
        if self._silence_run >= self._end_silence_frames:
            return self._finish()
        return self._check_length()

    def reset(self) -> None:
        """Drop any partial utterance and pre-roll."""
        self._frames = []
        self._samples = 0
        self._silence_run = 0
        self._active = False
        self._pre_roll.clear()

    def _start(self, frame: np.ndarray) -> None:
        self._active = True
        self._frames = list(self._pre_roll)
        self._samples = sum(len(f) for f in self._frames)
        self._pre_roll.clear()
        self._silence_run = 0
        self._append(frame)

    def _append(self, frame: np.ndarray) -> None:
        self._frames.append(frame)
        self._samples += len(frame)

    def _check_length(self) -> Optional[Utterance]:
        max_s = self.settings.max_duration_s
        if max_s is not None and self._samples > max_s * self.sample_rate:
            samples = self._collect()
            return Utterance(samples, self.sample_rate, accepted=False, reason="too_long")
        return None

    def _finish(self) -> Utterance:
        samples = self._collect()
        duration = len(samples) / self.sample_rate
        if duration >= self.settings.min_duration_s:
            return Utterance(samples, self.sample_rate, accepted=True)
        return Utterance(samples, self.sample_rate, accepted=False, reason="too_short")

    def _collect(self) -> np.ndarray:
        if self._frames:
            samples = np.concatenate(self._frames).astype(np.int16)
        else:
            samples = np.zeros(0, dtype=np.int16)
        self.reset()
        return samples
