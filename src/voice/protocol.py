"""
Wire protocol for the duplex voice connection.

Direct socket:
- Binary frames: raw PCM16 mono audio, both directions
- Text frames: JSON control messages

    {"type": "state|transcript|config|vad_state|error|wake|interrupt",
     "state": "...", "text": "...", "is_speech": true,
     "sample_rate": 16000, "voice": "..."}

Only the fields relevant to `type` are present.

Relay (gateway) channel: every message is a JSON envelope; audio travels
base64-encoded in `data` with `type: "audio"`.
"""

from __future__ import annotations

import base64
from enum import Enum
from typing import Optional, Union

import msgspec
import structlog

from src.voice.audio import is_encoded_audio

logger = structlog.get_logger(__name__)

PCM_ENCODING = "pcm_s16le"


class VoiceState(str, Enum):
    """Conversation state of one connection."""
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    INTERRUPTING = "interrupting"


class ControlType(str, Enum):
    """Control message discriminator."""
    STATE = "state"
    TRANSCRIPT = "transcript"
    CONFIG = "config"
    VAD_STATE = "vad_state"
    ERROR = "error"
    WAKE = "wake"
    INTERRUPT = "interrupt"


class RelayType(str, Enum):
    """Relay envelope types that carry client input."""
    AUDIO = "audio"
    VOICE_START = "voice_start"
    VOICE_END = "voice_end"
    INTERRUPT = "interrupt"
    CONFIG = "config"


class ControlMessage(msgspec.Struct, omit_defaults=True):
    """Side-channel control record."""
    type: str
    state: Optional[str] = None
    text: Optional[str] = None
    is_speech: Optional[bool] = None
    sample_rate: Optional[int] = None
    voice: Optional[str] = None

    @classmethod
    def state_change(cls, state: VoiceState) -> "ControlMessage":
        return cls(type=ControlType.STATE.value, state=state.value)

    @classmethod
    def transcript(cls, text: str) -> "ControlMessage":
        return cls(type=ControlType.TRANSCRIPT.value, text=text)

    @classmethod
    def vad_state(cls, is_speech: bool) -> "ControlMessage":
        return cls(type=ControlType.VAD_STATE.value, is_speech=is_speech)

    @classmethod
    def error(cls, text: str) -> "ControlMessage":
        return cls(type=ControlType.ERROR.value, text=text)

    @classmethod
    def wake(cls, text: Optional[str] = None) -> "ControlMessage":
        return cls(type=ControlType.WAKE.value, text=text)


class RelayEnvelope(msgspec.Struct, omit_defaults=True):
    """Gateway envelope for the relay transport."""
    type: str
    data: Optional[str] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    encoding: Optional[str] = None
    text: Optional[str] = None
    final: Optional[bool] = None
    speaking: Optional[bool] = None
    state: Optional[str] = None
    voice: Optional[str] = None
    error: Optional[str] = None


# Create global msgspec encoder/decoders
encoder = msgspec.json.Encoder()
control_decoder = msgspec.json.Decoder(ControlMessage)
envelope_decoder = msgspec.json.Decoder(RelayEnvelope)


def encode_control(message: ControlMessage) -> str:
    """Encode a control message as a JSON string."""
    return encoder.encode(message).decode("utf-8")


def decode_control(raw: Union[str, bytes]) -> Optional[ControlMessage]:
    """
    Parse a control message.

    Returns None for malformed input; callers ignore those.
    """
    try:
        return control_decoder.decode(raw)
    except msgspec.DecodeError as e:
        logger.debug("Ignoring malformed control message", error=str(e))
        return None


def encode_envelope(envelope: RelayEnvelope) -> str:
    return encoder.encode(envelope).decode("utf-8")


def decode_envelope(raw: Union[str, bytes]) -> Optional[RelayEnvelope]:
    """Parse a relay envelope; None if malformed."""
    try:
        return envelope_decoder.decode(raw)
    except msgspec.DecodeError as e:
        logger.debug("Ignoring malformed relay envelope", error=str(e))
        return None


def audio_envelope(audio: bytes, sample_rate: int) -> RelayEnvelope:
    """
    Wrap outbound audio for the relay channel.

    Encoded containers are sent without PCM format fields.
    """
    if is_encoded_audio(audio):
        return RelayEnvelope(type=RelayType.AUDIO.value, data=base64.b64encode(audio).decode("ascii"))
    return RelayEnvelope(
        type=RelayType.AUDIO.value,
        data=base64.b64encode(audio).decode("ascii"),
        sample_rate=sample_rate,
        channels=1,
        encoding=PCM_ENCODING,
    )


def control_to_envelope(message: ControlMessage) -> RelayEnvelope:
    """Map an outbound control message onto the relay envelope."""
    is_error = message.type == ControlType.ERROR.value
    return RelayEnvelope(
        type=message.type,
        state=message.state,
        text=message.text,
        final=True if message.type == ControlType.TRANSCRIPT.value else None,
        speaking=message.is_speech,
        voice=message.voice,
        sample_rate=message.sample_rate,
        error=message.text if is_error else None,
    )


def envelope_to_control(envelope: RelayEnvelope) -> ControlMessage:
    """Map an inbound non-audio relay envelope onto a control message."""
    return ControlMessage(
        type=envelope.type,
        state=envelope.state,
        text=envelope.text,
        is_speech=envelope.speaking,
        sample_rate=envelope.sample_rate,
        voice=envelope.voice,
    )
