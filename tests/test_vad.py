"""
Tests for voice activity detection.
"""

import numpy as np
import pytest

from src.voice.config import get_config
from src.voice.vad import RMSVAD, SILERO_WINDOW_SAMPLES, SileroVAD, create_vad_factory
from conftest import silence_frame, tone_frame


class FakeSileroModel:
    """Returns scripted probabilities; an Exception entry raises."""

    def __init__(self, results):
        self.results = list(results)
        self.calls = 0
        self.states = []

    def run(self, window, state):
        self.calls += 1
        self.states.append(state)
        result = self.results.pop(0) if self.results else 0.0
        if isinstance(result, Exception):
            raise result
        return result, state + 1


def _window(value: int = 0) -> np.ndarray:
    return np.full(SILERO_WINDOW_SAMPLES, value, dtype=np.int16)


class TestRMSVAD:
    """Tests for the energy fallback."""

    def test_needs_consecutive_speech_frames(self):
        vad = RMSVAD()
        assert vad.is_speech(tone_frame()) is False
        assert vad.is_speech(tone_frame()) is False
        assert vad.is_speech(tone_frame()) is True

    def test_interrupted_onset_restarts_count(self):
        vad = RMSVAD()
        vad.is_speech(tone_frame())
        vad.is_speech(tone_frame())
        vad.is_speech(silence_frame())
        assert vad.is_speech(tone_frame()) is False

    def test_hangover_keeps_speech(self):
        vad = RMSVAD(silence_frames=30)
        for _ in range(3):
            vad.is_speech(tone_frame())

        for _ in range(29):
            assert vad.is_speech(silence_frame()) is True
        assert vad.is_speech(silence_frame()) is False

    def test_levels_between_thresholds_hold_decision(self):
        vad = RMSVAD(speech_threshold=0.015, silence_threshold=0.008)
        middle = np.full(320, int(0.01 * 32768), dtype=np.int16)

        for _ in range(10):
            assert vad.is_speech(middle) is False

        for _ in range(3):
            vad.is_speech(tone_frame())
        for _ in range(40):
            assert vad.is_speech(middle) is True

    def test_reset(self):
        vad = RMSVAD()
        for _ in range(3):
            vad.is_speech(tone_frame())
        vad.reset()
        assert vad.is_speech(silence_frame()) is False


class TestSileroVAD:
    """Tests for the model-backed detector."""

    def test_threshold(self):
        vad = SileroVAD(FakeSileroModel([0.9, 0.2]), threshold=0.5)
        assert vad.is_speech(_window()) is True
        assert vad.is_speech(_window()) is False

    def test_partial_window_keeps_previous_decision(self):
        model = FakeSileroModel([0.9])
        vad = SileroVAD(model)

        assert vad.is_speech(silence_frame(320)) is False
        assert model.calls == 0
        assert vad.is_speech(silence_frame(320)) is True
        assert model.calls == 1

    def test_state_is_carried_between_windows(self):
        model = FakeSileroModel([0.1, 0.1])
        vad = SileroVAD(model)
        vad.is_speech(_window())
        vad.is_speech(_window())
        assert float(model.states[1].max()) == 1.0

    def test_inference_failure_keeps_decision(self):
        vad = SileroVAD(FakeSileroModel([0.9, RuntimeError("boom")]), max_failures=5)
        assert vad.is_speech(_window()) is True
        assert vad.is_speech(_window()) is True

    def test_resets_after_repeated_failures(self):
        failures = [RuntimeError("boom")] * 3
        vad = SileroVAD(FakeSileroModel([0.9] + failures), max_failures=3)

        assert vad.is_speech(_window()) is True
        assert vad.is_speech(_window()) is True
        assert vad.is_speech(_window()) is True
        assert vad.is_speech(_window()) is False

    def test_success_clears_failure_count(self):
        results = [0.9, RuntimeError("a"), RuntimeError("b"), 0.9, RuntimeError("c"), RuntimeError("d")]
        vad = SileroVAD(FakeSileroModel(results), max_failures=3)
        for _ in range(len(results)):
            assert vad.is_speech(_window()) is True


class TestFactory:
    """Tests for backend selection."""

    def test_missing_model_falls_back_to_rms(self):
        factory = create_vad_factory(get_config())
        assert factory is RMSVAD
        assert isinstance(factory(), RMSVAD)

    def test_unloadable_model_falls_back_to_rms(self, tmp_path, monkeypatch):
        model_path = tmp_path / "broken.onnx"
        model_path.write_bytes(b"not a model")
        monkeypatch.setenv("SILERO_VAD_MODEL", str(model_path))
        get_config.cache_clear()

        factory = create_vad_factory(get_config())
        assert factory is RMSVAD

    def test_each_call_builds_a_fresh_detector(self):
        factory = create_vad_factory(get_config())
        assert factory() is not factory()


@pytest.mark.parametrize("frames", [1, 5])
def test_rms_vad_silence_never_speech(frames):
    vad = RMSVAD()
    for _ in range(frames):
        assert vad.is_speech(silence_frame()) is False
