"""
Voice activity detection.

Two implementations share the `VAD` interface:
- `SileroVAD`: Silero ONNX model via onnxruntime (accurate, needs the model file)
- `RMSVAD`: energy threshold with hysteresis (always available)

The backend is chosen once at startup by `create_vad_factory()`; each
connection then gets its own detector from the factory.
"""

from __future__ import annotations

import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import numpy as np
import structlog

from src.voice.audio import pcm_to_float32, rms

logger = structlog.get_logger(__name__)

SILERO_WINDOW_SAMPLES = 512  # 32ms at 16kHz
SILERO_STATE_SHAPE = (2, 1, 128)


class VAD(ABC):
    """Classifies PCM16 frames as speech or non-speech."""

    @abstractmethod
    def is_speech(self, frame: np.ndarray) -> bool:
        raise NotImplementedError

    @abstractmethod
    def reset(self) -> None:
        raise NotImplementedError


class RMSVAD(VAD):
    """
    Energy-threshold detector with hysteresis.

    Speech is asserted after `speech_frames` consecutive frames at or above
    `speech_threshold`, and cleared after `silence_frames` consecutive frames
    below `silence_threshold`. Levels between the two thresholds hold the
    current decision.
    """

    def __init__(
        self,
        speech_threshold: float = 0.015,
        silence_threshold: float = 0.008,
        speech_frames: int = 3,
        silence_frames: int = 30,
    ):
        self.speech_threshold = speech_threshold
        self.silence_threshold = silence_threshold
        self.speech_frames = speech_frames
        self.silence_frames = silence_frames
        self._in_speech = False
        self._speech_count = 0
        self._silence_count = 0

    def is_speech(self, frame: np.ndarray) -> bool:
        level = rms(frame)

        if self._in_speech:
            if level < self.silence_threshold:
                self._silence_count += 1
                if self._silence_count >= self.silence_frames:
                    self._in_speech = False
                    self._silence_count = 0
            else:
                self._silence_count = 0
        else:
            if level >= self.speech_threshold:
                self._speech_count += 1
                if self._speech_count >= self.speech_frames:
                    self._in_speech = True
                    self._speech_count = 0
            else:
                self._speech_count = 0

        return self._in_speech

    def reset(self) -> None:
        self._in_speech = False
        self._speech_count = 0
        self._silence_count = 0


class SileroModel:
    """
    Lazily-loaded, shared Silero VAD inference session.

    The session holds no per-stream state, so one instance can serve every
    connection; the recurrent state lives in each `SileroVAD`.
    """

    def __init__(self, model_path: str, sample_rate: int = 16000):
        self.model_path = model_path
        self.sample_rate = sample_rate
        self._session: Any = None
        self._lock = threading.Lock()

    def load(self) -> None:
        """Create the inference session (idempotent)."""
        with self._lock:
            if self._session is not None:
                return
            import onnxruntime

            options = onnxruntime.SessionOptions()
            options.inter_op_num_threads = 1
            options.intra_op_num_threads = 1
            self._session = onnxruntime.InferenceSession(
                self.model_path,
                sess_options=options,
                providers=["CPUExecutionProvider"],
            )
            logger.info("Silero VAD model loaded", model_path=self.model_path)

    def run(self, window: np.ndarray, state: np.ndarray) -> tuple[float, np.ndarray]:
        """Classify one window; returns (speech probability, next state)."""
        if self._session is None:
            self.load()
        outputs = self._session.run(
            None,
            {
                "input": window.reshape(1, -1).astype(np.float32),
                "state": state,
                "sr": np.array(self.sample_rate, dtype=np.int64),
            },
        )
        probability = float(np.asarray(outputs[0]).reshape(-1)[0])
        return probability, np.asarray(outputs[1], dtype=np.float32)


class SileroVAD(VAD):
    """
    Model-backed detector.

    Incoming frames are buffered until a full model window is available; a
    frame that does not complete a window returns the previous decision.
    Inference errors also return the previous decision. After
    `max_failures` consecutive errors the detector resets itself so a broken
    session cannot pin it in the speech state.
    """

    def __init__(self, model: SileroModel, threshold: float = 0.5, max_failures: int = 50):
        self._model = model
        self.threshold = threshold
        self.max_failures = max_failures
        self._state = np.zeros(SILERO_STATE_SHAPE, dtype=np.float32)
        self._pending = np.zeros(0, dtype=np.float32)
        self._in_speech = False
        self._failures = 0

    def is_speech(self, frame: np.ndarray) -> bool:
        self._pending = np.concatenate([self._pending, pcm_to_float32(frame)])

        while len(self._pending) >= SILERO_WINDOW_SAMPLES:
            window = self._pending[:SILERO_WINDOW_SAMPLES]
            self._pending = self._pending[SILERO_WINDOW_SAMPLES:]
            try:
                probability, self._state = self._model.run(window, self._state)
            except Exception as e:
                self._failures += 1
                if self._failures >= self.max_failures:
                    logger.warning(
                        "Silero VAD failing repeatedly, resetting",
                        failures=self._failures,
                        error=str(e),
                    )
                    self.reset()
                    return self._in_speech
                logger.debug("Silero VAD inference failed", error=str(e))
                continue
            self._failures = 0
            self._in_speech = probability >= self.threshold

        return self._in_speech

    def reset(self) -> None:
        self._state = np.zeros(SILERO_STATE_SHAPE, dtype=np.float32)
        self._pending = np.zeros(0, dtype=np.float32)
        self._in_speech = False
        self._failures = 0


VADFactory = Callable[[], VAD]


def create_vad_factory(config: Optional[Any] = None) -> VADFactory:
    """
    Pick the VAD backend once, at startup.

    Uses Silero when the model file exists and its session loads; otherwise
    falls back to `RMSVAD`.
    """
    if config is None:
        from src.voice.config import get_config

        config = get_config()

    model_path = config.vad_model_path
    if not os.path.exists(model_path):
        logger.info("Silero VAD model not found, using RMS VAD", model_path=model_path)
        return RMSVAD

    model = SileroModel(model_path, sample_rate=config.sample_rate)
    try:
        model.load()
    except Exception as e:
        logger.warning("Failed to load Silero VAD, using RMS VAD", model_path=model_path, error=str(e))
        return RMSVAD

    threshold = config.vad_threshold
    max_failures = config.vad_max_failures

    def silero_factory() -> VAD:
        return SileroVAD(model, threshold=threshold, max_failures=max_failures)

    return silero_factory
