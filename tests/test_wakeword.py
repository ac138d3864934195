"""
Tests for the wake-word listener.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from src.voice.providers.base import TranscriptionError
from src.voice.wakeword import WakeWordDetector, is_wake_phrase, levenshtein, normalize_phrase
from conftest import FakeTranscriber, silence_frame, tone_frame


class TestPhraseMatching:
    """Tests for fuzzy wake phrase matching."""

    def test_normalize(self):
        assert normalize_phrase("  Hey, NEBO!! 2 ") == "hey nebo"

    def test_levenshtein(self):
        assert levenshtein("", "abc") == 3
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("same", "same") == 0

    @pytest.mark.parametrize("text", [
        "Hey Nebo",
        "hey nebo.",
        "Hey Nemo!",
        "hey neighbor",
        "hey nebo what time is it",
        "hay nebo",
    ])
    def test_matches(self, text):
        assert is_wake_phrase(text)

    @pytest.mark.parametrize("text", ["", "hello there", "what's the weather", "nebo"])
    def test_rejects(self, text):
        assert not is_wake_phrase(text)

    def test_custom_phrase(self):
        assert is_wake_phrase("OK Computer", phrase="ok computer")
        assert not is_wake_phrase("hey nemo", phrase="ok computer")


def _phrase_frames():
    """Calibration, 400ms of speech, then silence."""
    return [silence_frame()] * 20 + [tone_frame()] * 20 + [silence_frame()] * 20


@pytest.mark.asyncio
async def test_detects_wake_phrase():
    on_detect = MagicMock()
    detector = WakeWordDetector(FakeTranscriber("Hey Nebo!"), on_detect)

    results = [await detector.feed(frame) for frame in _phrase_frames()]

    assert results.count(True) == 1
    on_detect.assert_called_once()
    assert detector.detections == 1


@pytest.mark.asyncio
async def test_async_callback_is_awaited():
    on_detect = AsyncMock()
    detector = WakeWordDetector(FakeTranscriber("hey nebo"), on_detect)

    for frame in _phrase_frames():
        await detector.feed(frame)

    on_detect.assert_awaited_once()


@pytest.mark.asyncio
async def test_other_speech_is_ignored():
    on_detect = MagicMock()
    transcriber = FakeTranscriber("turn on the lights")
    detector = WakeWordDetector(transcriber, on_detect)

    for frame in _phrase_frames():
        await detector.feed(frame)

    assert transcriber.calls == 1
    on_detect.assert_not_called()


@pytest.mark.asyncio
async def test_transcription_error_is_not_fatal():
    on_detect = MagicMock()
    detector = WakeWordDetector(FakeTranscriber(error=TranscriptionError("offline")), on_detect)

    results = [await detector.feed(frame) for frame in _phrase_frames()]

    assert not any(results)
    on_detect.assert_not_called()


@pytest.mark.asyncio
async def test_long_speech_is_not_transcribed():
    transcriber = FakeTranscriber("hey nebo")
    detector = WakeWordDetector(transcriber)

    frames = [silence_frame()] * 20 + [tone_frame()] * 150 + [silence_frame()] * 20
    for frame in frames:
        await detector.feed(frame)

    # The first 2s are discarded as too long; the last ~1s is a fresh candidate.
    assert transcriber.calls == 1
    assert detector.detections == 1
