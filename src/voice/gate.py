"""
Noise gate with one-time ambient calibration.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import structlog

from src.voice.audio import rms

logger = structlog.get_logger(__name__)

CALIBRATION_FRAMES = 20
THRESHOLD_MULTIPLIER = 2.5
THRESHOLD_FLOOR = 0.005


class NoiseGate:
    """
    Suppresses frames below a calibrated ambient noise floor.

    The first `CALIBRATION_FRAMES` frames are assumed to be room tone: they are
    always suppressed and their average RMS sets the threshold. The threshold
    is then fixed for the lifetime of the gate.
    """

    def __init__(
        self,
        calibration_frames: int = CALIBRATION_FRAMES,
        multiplier: float = THRESHOLD_MULTIPLIER,
        floor: float = THRESHOLD_FLOOR,
    ):
        self._calibration_frames = calibration_frames
        self._multiplier = multiplier
        self._floor = floor
        self._frames_seen = 0
        self._energy_sum = 0.0
        self._threshold: Optional[float] = None

    @property
    def calibrated(self) -> bool:
        return self._threshold is not None

    @property
    def threshold(self) -> Optional[float]:
        return self._threshold

    def filter(self, frame: np.ndarray) -> Optional[np.ndarray]:
        """Return `frame` if it is above the noise floor, else None."""
        level = rms(frame)

        if self._threshold is None:
            self._frames_seen += 1
            self._energy_sum += level
            if self._frames_seen >= self._calibration_frames:
                average = self._energy_sum / self._frames_seen
                self._threshold = max(average * self._multiplier, self._floor)
                logger.debug(
                    "Noise gate calibrated",
                    ambient_rms=round(average, 5),
                    threshold=round(self._threshold, 5),
                )
            return None

        if level < self._threshold:
            return None
        return frame
