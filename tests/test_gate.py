"""
Tests for the noise gate.
"""

import numpy as np

from src.voice.gate import NoiseGate, THRESHOLD_FLOOR
from conftest import silence_frame, tone_frame


def _noise(level: float) -> np.ndarray:
    return np.full(320, int(level * 32768), dtype=np.int16)


def test_calibration_frames_are_suppressed():
    gate = NoiseGate(calibration_frames=5)
    for _ in range(5):
        assert gate.filter(tone_frame()) is None
    assert gate.calibrated


def test_threshold_is_multiple_of_ambient():
    gate = NoiseGate(calibration_frames=4, multiplier=2.5)
    for _ in range(4):
        gate.filter(_noise(0.01))
    assert abs(gate.threshold - 0.025) < 1e-3


def test_threshold_floor_for_silent_room():
    gate = NoiseGate(calibration_frames=3)
    for _ in range(3):
        gate.filter(silence_frame())
    assert gate.threshold == THRESHOLD_FLOOR


def test_frames_below_threshold_are_gated():
    gate = NoiseGate(calibration_frames=2)
    gate.filter(_noise(0.01))
    gate.filter(_noise(0.01))

    assert gate.filter(_noise(0.01)) is None
    loud = tone_frame(0.5)
    assert gate.filter(loud) is loud


def test_threshold_is_fixed_after_calibration():
    gate = NoiseGate(calibration_frames=2)
    gate.filter(silence_frame())
    gate.filter(silence_frame())
    threshold = gate.threshold

    for _ in range(50):
        gate.filter(tone_frame(0.8))
    assert gate.threshold == threshold
