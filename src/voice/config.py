"""
Configuration management for the duplex voice server.

Loads environment variables and provides a strongly-typed configuration object.
Validates values at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

STT_PROVIDERS = ("auto", "openai", "none")
TTS_PROVIDERS = ("auto", "openai", "say", "none")
LLM_PROVIDERS = ("groq", "openai")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    host: str = "0.0.0.0"
    port: int = 7860
    log_level: str = "INFO"

    # Audio
    sample_rate: int = 16000
    output_sample_rate: int = 16000
    frame_duration_ms: int = 20
    pacing_interval_ms: int = 18
    default_voice: str = "rachel"

    # Queue capacities
    inbound_queue_size: int = 100
    outbound_queue_size: int = 200
    transcript_queue_size: int = 10
    speech_queue_size: int = 20

    # Liveness
    ping_period_seconds: float = 54.0
    pong_wait_seconds: float = 60.0
    write_wait_seconds: float = 10.0
    shutdown_grace_seconds: float = 2.0

    # Voice activity detection
    models_dir: str = ""
    silero_vad_model: str = ""
    vad_threshold: float = 0.5
    vad_max_failures: int = 50

    # Agent runner
    session_key: str = "companion-default"
    voice_channel: str = "voice"
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_model: str = "gpt-4o-mini"
    agent_name: str = "Nebo"
    max_history_turns: int = 10

    # Speech collaborators
    stt_provider: str = "auto"
    tts_provider: str = "auto"
    openai_stt_model: str = "whisper-1"
    openai_tts_model: str = "tts-1"

    # Wake word
    wake_phrase: str = "hey nebo"

    @property
    def frame_bytes(self) -> int:
        """Size in bytes of one outbound PCM frame."""
        return self.output_sample_rate * 2 * self.frame_duration_ms // 1000

    @property
    def vad_model_path(self) -> str:
        """Resolved location of the Silero VAD model."""
        if self.silero_vad_model:
            return os.path.expanduser(self.silero_vad_model)
        return os.path.join(os.path.expanduser(self.models_dir), "silero_vad.onnx")

    def validate(self) -> None:
        """Validate that configuration values are usable."""
        problems = []

        for name in (
            "port",
            "sample_rate",
            "output_sample_rate",
            "frame_duration_ms",
            "inbound_queue_size",
            "outbound_queue_size",
            "transcript_queue_size",
            "speech_queue_size",
        ):
            if getattr(self, name) <= 0:
                problems.append(f"{name.upper()} must be positive")

        if self.pacing_interval_ms < 0:
            problems.append("PACING_INTERVAL_MS must not be negative")
        if self.pong_wait_seconds <= self.ping_period_seconds:
            problems.append("PONG_WAIT_SECONDS must be longer than PING_PERIOD_SECONDS")
        if not 0.0 < self.vad_threshold < 1.0:
            problems.append("VAD_THRESHOLD must be between 0 and 1")

        if self.stt_provider not in STT_PROVIDERS:
            problems.append(
                f"Invalid STT_PROVIDER '{self.stt_provider}'. Expected one of {', '.join(STT_PROVIDERS)}."
            )
        if self.tts_provider not in TTS_PROVIDERS:
            problems.append(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected one of {', '.join(TTS_PROVIDERS)}."
            )
        if self.llm_provider not in LLM_PROVIDERS:
            problems.append(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )

        if problems:
            raise ConfigError(
                "Invalid configuration:\n- " + "\n- ".join(problems) + "\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            host=self.host,
            port=self.port,
            log_level=self.log_level,
            sample_rate=self.sample_rate,
            output_sample_rate=self.output_sample_rate,
            default_voice=self.default_voice,
            pacing_interval_ms=self.pacing_interval_ms,
            queues=(
                self.inbound_queue_size,
                self.outbound_queue_size,
                self.transcript_queue_size,
                self.speech_queue_size,
            ),
            vad_model_path=self.vad_model_path,
            stt_provider=self.stt_provider,
            tts_provider=self.tts_provider,
            llm_provider=self.llm_provider,
            llm_model=self.openai_model if self.llm_provider == "openai" else self.groq_model,
            session_key=self.session_key,
            wake_phrase=self.wake_phrase,
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        host=os.getenv("HOST", "0.0.0.0"),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Audio
        sample_rate=_get_int("SAMPLE_RATE", 16000),
        output_sample_rate=_get_int("OUTPUT_SAMPLE_RATE", 16000),
        frame_duration_ms=_get_int("FRAME_DURATION_MS", 20),
        pacing_interval_ms=_get_int("PACING_INTERVAL_MS", 18),
        default_voice=os.getenv("DEFAULT_VOICE", "rachel").strip().lower(),

        # Queues
        inbound_queue_size=_get_int("INBOUND_QUEUE_SIZE", 100),
        outbound_queue_size=_get_int("OUTBOUND_QUEUE_SIZE", 200),
        transcript_queue_size=_get_int("TRANSCRIPT_QUEUE_SIZE", 10),
        speech_queue_size=_get_int("SPEECH_QUEUE_SIZE", 20),

        # Liveness
        ping_period_seconds=_get_float("PING_PERIOD_SECONDS", 54.0),
        pong_wait_seconds=_get_float("PONG_WAIT_SECONDS", 60.0),
        write_wait_seconds=_get_float("WRITE_WAIT_SECONDS", 10.0),
        shutdown_grace_seconds=_get_float("SHUTDOWN_GRACE_SECONDS", 2.0),

        # VAD
        models_dir=os.getenv("VOICE_MODELS_DIR", "~/.config/nebo/voice"),
        silero_vad_model=os.getenv("SILERO_VAD_MODEL", ""),
        vad_threshold=_get_float("VAD_THRESHOLD", 0.5),
        vad_max_failures=_get_int("VAD_MAX_FAILURES", 50),

        # Agent runner
        session_key=os.getenv("SESSION_KEY", "companion-default"),
        voice_channel=os.getenv("VOICE_CHANNEL", "voice"),
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_base_url=os.getenv("OPENAI_BASE_URL", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        agent_name=os.getenv("AGENT_NAME", "Nebo"),
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 10),

        # Speech collaborators
        stt_provider=os.getenv("STT_PROVIDER", "auto").strip().lower(),
        tts_provider=os.getenv("TTS_PROVIDER", "auto").strip().lower(),
        openai_stt_model=os.getenv("OPENAI_STT_MODEL", "whisper-1"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "tts-1"),

        # Wake word
        wake_phrase=os.getenv("WAKE_PHRASE", "hey nebo").strip().lower(),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
