"""
Pytest configuration and fixtures.
"""

import asyncio
import os
from typing import List, Optional
from unittest.mock import patch

import numpy as np
import pytest

from src.voice.protocol import ControlMessage, ControlType
from src.voice.providers.base import AgentRunner, Synthesizer, Transcriber
from src.voice.queues import QueueClosed
from src.voice.transports.base import TransportClosed, VoiceTransport

FRAME_SAMPLES = 320  # 20ms at 16kHz


@pytest.fixture(autouse=True)
def mock_env_vars(tmp_path):
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "GROQ_API_KEY": "",
        "OPENAI_API_KEY": "",
        "LLM_PROVIDER": "groq",
        "STT_PROVIDER": "none",
        "TTS_PROVIDER": "none",
        "VOICE_MODELS_DIR": str(tmp_path / "models"),
        "SILERO_VAD_MODEL": "",
        "PACING_INTERVAL_MS": "0",
        "SHUTDOWN_GRACE_SECONDS": "0.5",
        "DEFAULT_VOICE": "rachel",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.voice.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


def silence_frame(samples: int = FRAME_SAMPLES) -> np.ndarray:
    return np.zeros(samples, dtype=np.int16)


def tone_frame(amplitude: float = 0.3, samples: int = FRAME_SAMPLES, freq: float = 440.0) -> np.ndarray:
    t = np.arange(samples) / 16000.0
    return (np.sin(2 * np.pi * freq * t) * amplitude * 32767).astype(np.int16)


def frame_bytes_of(frame: np.ndarray) -> bytes:
    return frame.astype("<i2").tobytes()


@pytest.fixture
def silence():
    return silence_frame()


@pytest.fixture
def tone():
    return tone_frame()


class FakeTransport(VoiceTransport):
    """
    In-memory transport.

    Tests push bytes (audio) or str (control JSON) into `incoming`; a None
    item ends the read pump like a client disconnect.
    """

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.controls: List[ControlMessage] = []
        self.frames: List[bytes] = []
        self.closed = False
        self.fail_sends = False

    async def read_pump(self, inbound, on_control, cancel):
        try:
            while True:
                item = await self.incoming.get()
                if item is None:
                    return
                if isinstance(item, bytes):
                    inbound.put_nowait(item)
                else:
                    await on_control(item)
        finally:
            cancel()

    async def write_pump(self, outbound, cancel):
        try:
            while True:
                self.frames.append(await outbound.get())
        except QueueClosed:
            return
        finally:
            cancel()

    async def send_control(self, message: ControlMessage) -> None:
        if self.closed or self.fail_sends:
            raise TransportClosed("fake transport closed")
        self.controls.append(message)

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(None)

    def states(self) -> List[str]:
        return [m.state for m in self.controls if m.type == ControlType.STATE.value]

    def of_type(self, control_type: ControlType) -> List[ControlMessage]:
        return [m for m in self.controls if m.type == control_type.value]


class FakeTranscriber(Transcriber):
    def __init__(self, text: str = "hello there", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls = 0

    async def transcribe(self, samples, sample_rate):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.text


class FakeSynthesizer(Synthesizer):
    def __init__(self, audio: bytes = b"\x00\x00" * 960, error: Optional[Exception] = None):
        self.audio = audio
        self.error = error
        self.texts: List[str] = []

    async def synthesize(self, text, voice):
        self.texts.append(text)
        if self.error is not None:
            raise self.error
        return self.audio


class FakeRunner(AgentRunner):
    def __init__(self, fragments=None, error: Optional[Exception] = None, delay: float = 0.0):
        self.fragments = list(fragments or [])
        self.error = error
        self.delay = delay
        self.prompts: List[str] = []

    async def run(self, session_key, prompt, channel):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self._stream()

    async def _stream(self):
        for fragment in self.fragments:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield fragment


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll `predicate` until it is true or `timeout` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def fake_transport():
    return FakeTransport()
