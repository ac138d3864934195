"""
Tests for utterance segmentation.
"""

import numpy as np

from src.voice.segmentation import SegmenterSettings, UtteranceSegmenter
from conftest import FRAME_SAMPLES, silence_frame, tone_frame


def _feed(segmenter, frames):
    """Push (frame, speech, gated) tuples; return every utterance produced."""
    out = []
    for frame, speech, gated in frames:
        utterance = segmenter.push(frame, speech=speech, gated=gated)
        if utterance is not None:
            out.append(utterance)
    return out


def speech(n):
    return [(tone_frame(), True, False)] * n


def quiet(n):
    return [(silence_frame(), False, False)] * n


def gated(n):
    return [(silence_frame(), False, True)] * n


class TestDuplexSegmentation:
    """Duplex timing: 500ms end silence, 300ms trailing, 0.5s minimum."""

    def test_utterance_ends_after_end_silence(self):
        seg = UtteranceSegmenter(16000)
        out = _feed(seg, speech(30) + quiet(24))
        assert out == []
        assert seg.active

        out = _feed(seg, quiet(1))
        assert len(out) == 1
        assert out[0].accepted
        assert not seg.active

    def test_trailing_silence_is_capped(self):
        seg = UtteranceSegmenter(16000)
        out = _feed(seg, speech(30) + quiet(25))
        # 30 speech frames + 15 trailing frames
        assert len(out[0].samples) == 45 * FRAME_SAMPLES

    def test_short_utterance_rejected(self):
        seg = UtteranceSegmenter(16000)
        out = _feed(seg, speech(5) + quiet(25))
        # 5 speech + 15 trailing = 0.4s
        assert len(out) == 1
        assert not out[0].accepted
        assert out[0].reason == "too_short"

    def test_pre_roll_is_prepended(self):
        seg = UtteranceSegmenter(16000)
        out = _feed(seg, quiet(20) + speech(20) + quiet(25))
        # 10 pre-roll frames (200ms) + 20 speech + 15 trailing
        assert len(out[0].samples) == 45 * FRAME_SAMPLES

    def test_gated_frames_clear_pre_roll(self):
        seg = UtteranceSegmenter(16000)
        out = _feed(seg, quiet(5) + gated(1) + speech(30) + quiet(25))
        assert len(out[0].samples) == 45 * FRAME_SAMPLES

    def test_gated_frames_count_as_silence(self):
        seg = UtteranceSegmenter(16000)
        out = _feed(seg, speech(30) + gated(25))
        assert len(out) == 1
        assert out[0].accepted

    def test_speech_resets_silence_run(self):
        seg = UtteranceSegmenter(16000)
        out = _feed(seg, speech(20) + quiet(20) + speech(5) + quiet(20))
        assert out == []
        assert seg.active

    def test_no_maximum_in_duplex_mode(self):
        seg = UtteranceSegmenter(16000)
        assert _feed(seg, speech(1000)) == []

    def test_reset_drops_partial(self):
        seg = UtteranceSegmenter(16000)
        _feed(seg, speech(10))
        seg.reset()
        assert not seg.active
        assert _feed(seg, quiet(30)) == []

    def test_samples_are_int16(self):
        seg = UtteranceSegmenter(16000)
        out = _feed(seg, speech(30) + quiet(25))
        assert out[0].samples.dtype == np.int16
        assert abs(out[0].duration_s - 0.9) < 1e-9


class TestWakeWordSegmentation:
    """Wake timing: 300ms end silence, 0.3s..2.0s."""

    def test_short_phrase_accepted(self):
        seg = UtteranceSegmenter(16000, SegmenterSettings.wake_word())
        out = _feed(seg, speech(20) + quiet(15))
        assert len(out) == 1
        assert out[0].accepted
        # 20 speech + 5 trailing
        assert len(out[0].samples) == 25 * FRAME_SAMPLES

    def test_long_speech_discarded(self):
        seg = UtteranceSegmenter(16000, SegmenterSettings.wake_word())
        # 2.0s is 100 frames; the 101st exceeds the cap
        out = _feed(seg, speech(101))
        assert len(out) == 1
        assert not out[0].accepted
        assert out[0].reason == "too_long"
        assert not seg.active

    def test_too_short(self):
        seg = UtteranceSegmenter(16000, SegmenterSettings.wake_word())
        out = _feed(seg, speech(5) + quiet(15))
        assert out[0].reason == "too_short"
