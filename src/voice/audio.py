"""
PCM audio utilities for the duplex voice pipeline.

All audio on the wire is 16-bit signed little-endian mono PCM. Inference
collaborators (VAD, transcription) work on float32 samples in [-1, 1].
"""

import io
import wave
from typing import Generator, List

import numpy as np

FRAME_DURATION_MS = 20
PCM_SCALE = 32768.0

# Leading bytes of self-describing containers the client decodes itself.
_CONTAINER_MAGIC = (
    b"RIFF",  # WAV
    b"FORM",  # AIFF (macOS `say`)
    b"ID3",   # MP3 with ID3 tag
    b"OggS",  # Ogg/Opus
    b"fLaC",  # FLAC
)

# MPEG audio bitrates in kbps, indexed by layer bits then bitrate index.
_MPEG1_BITRATES = {
    0x03: (0, 32, 64, 96, 128, 160, 192, 224, 256, 288, 320, 352, 384, 416, 448),
    0x02: (0, 32, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320, 384),
    0x01: (0, 32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320),
}
_MPEG2_LOWER = (0, 8, 16, 24, 32, 40, 48, 56, 64, 80, 96, 112, 128, 144, 160)
_MPEG2_BITRATES = {
    0x03: (0, 32, 48, 56, 64, 80, 96, 112, 128, 144, 160, 176, 192, 224, 256),
    0x02: _MPEG2_LOWER,
    0x01: _MPEG2_LOWER,
}
# Indexed by version bits (0: MPEG-2.5, 2: MPEG-2, 3: MPEG-1).
_MPEG_SAMPLE_RATES = {
    0x00: (11025, 12000, 8000),
    0x02: (22050, 24000, 16000),
    0x03: (44100, 48000, 32000),
}


def frame_bytes(sample_rate: int, duration_ms: int = FRAME_DURATION_MS) -> int:
    """Size in bytes of a 16-bit mono frame of `duration_ms` at `sample_rate`."""
    return int(sample_rate) * 2 * int(duration_ms) // 1000


def decode_pcm16(pcm_bytes: bytes) -> np.ndarray:
    """
    Decode little-endian PCM16 bytes to an int16 array.

    A trailing odd byte (half a sample) is ignored.
    """
    if not pcm_bytes:
        return np.zeros(0, dtype=np.int16)
    usable = len(pcm_bytes) - (len(pcm_bytes) % 2)
    return np.frombuffer(pcm_bytes[:usable], dtype="<i2").astype(np.int16)


def encode_pcm16(samples: np.ndarray) -> bytes:
    """Encode int16 samples as little-endian PCM16 bytes."""
    return np.asarray(samples, dtype="<i2").tobytes()


def pcm_to_float32(samples: np.ndarray) -> np.ndarray:
    """Convert int16 samples to float32 in [-1, 1)."""
    return np.asarray(samples, dtype=np.float32) / PCM_SCALE


def float32_to_pcm(samples: np.ndarray) -> bytes:
    """
    Convert float32 samples to PCM16 bytes.

    Samples outside [-1, 1] are clipped.
    """
    audio = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return encode_pcm16((audio * 32767.0).astype(np.int16))


def rms(samples: np.ndarray) -> float:
    """
    Root-mean-square energy of int16 samples, normalized to [0, 1].

    Empty input has zero energy.
    """
    if samples is None or len(samples) == 0:
        return 0.0
    normalized = np.asarray(samples, dtype=np.float64) / PCM_SCALE
    return float(np.sqrt(np.mean(normalized * normalized)))


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """
    Resample float32 samples with linear interpolation.

    Adequate for speech at the rates used here (16k/24k/48k); not a
    band-limited resampler.
    """
    samples = np.asarray(samples, dtype=np.float32)
    if source_rate == target_rate or len(samples) == 0:
        return samples

    out_len = int(len(samples) * target_rate / source_rate)
    if out_len <= 0:
        return np.zeros(0, dtype=np.float32)

    positions = np.arange(out_len, dtype=np.float64) * (source_rate / target_rate)
    return np.interp(positions, np.arange(len(samples)), samples).astype(np.float32)


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """Resample mono PCM16 bytes from `source_rate` to `target_rate`."""
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes
    floats = pcm_to_float32(decode_pcm16(pcm_bytes))
    return float32_to_pcm(resample(floats, source_rate, target_rate))


def chunk_audio(audio_bytes: bytes, chunk_size: int) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    The last chunk is yielded short rather than padded; the client plays
    whatever it receives.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    for i in range(0, len(audio_bytes), chunk_size):
        yield audio_bytes[i:i + chunk_size]


def chunk_audio_list(audio_bytes: bytes, chunk_size: int) -> List[bytes]:
    """Chunk audio into fixed-size frames and return as a list."""
    return list(chunk_audio(audio_bytes, chunk_size))


def get_audio_duration_ms(pcm_bytes: bytes, sample_rate: int) -> float:
    """Duration of PCM16 mono audio in milliseconds."""
    if not pcm_bytes:
        return 0.0
    return (len(pcm_bytes) // 2) / sample_rate * 1000


def _mpeg_frame_length(header: bytes) -> int:
    """
    Length in bytes of the MPEG audio frame starting with `header`.

    Returns 0 for anything that is not a valid fixed-bitrate frame header.
    """
    if header[0] != 0xFF or (header[1] & 0xE0) != 0xE0:
        return 0
    version = (header[1] >> 3) & 0x03
    layer = (header[1] >> 1) & 0x03
    bitrate_index = header[2] >> 4
    rate_index = (header[2] >> 2) & 0x03
    padding = (header[2] >> 1) & 0x01
    if version == 0x01 or layer == 0x00 or bitrate_index in (0x00, 0x0F) or rate_index == 0x03:
        return 0

    mpeg1 = version == 0x03
    if mpeg1:
        bitrate = _MPEG1_BITRATES[layer][bitrate_index]
    else:
        bitrate = _MPEG2_BITRATES[layer][bitrate_index]
    sample_rate = _MPEG_SAMPLE_RATES[version][rate_index]

    if layer == 0x03:  # Layer I
        return (12 * bitrate * 1000 // sample_rate + padding) * 4
    if layer == 0x01 and not mpeg1:  # Layer III, MPEG-2/2.5
        return 72 * bitrate * 1000 // sample_rate + padding
    return 144 * bitrate * 1000 // sample_rate + padding


def is_encoded_audio(data: bytes) -> bool:
    """
    Detect a self-describing encoded container by its header bytes.

    Raw PCM has no header, so anything not recognized here is treated as PCM.
    A bare MPEG sync word is only trusted when a second frame header follows
    at the offset the first one implies.
    """
    if len(data) < 4:
        return False
    if data.startswith(_CONTAINER_MAGIC):
        return True
    length = _mpeg_frame_length(data[:4])
    if length == 0 or len(data) < length + 4:
        return False
    return _mpeg_frame_length(data[length:length + 4]) != 0


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def read_wav_mono_pcm16(wav_bytes: bytes) -> tuple[int, bytes]:
    """
    Read a WAV byte string and return (sample_rate, mono PCM16 bytes).

    - If input is stereo, it is downmixed to mono.
    - If sample width is not 16-bit, raises ValueError.
    """
    if not wav_bytes:
        raise ValueError("Empty WAV")

    with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
        channels = wf.getnchannels()
        sample_width = wf.getsampwidth()
        sample_rate = wf.getframerate()
        frames = wf.readframes(wf.getnframes())

    if sample_width != 2:
        raise ValueError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    if channels == 1:
        return int(sample_rate), frames

    if channels == 2:
        stereo = decode_pcm16(frames).reshape(-1, 2).astype(np.int32)
        mono = (stereo.sum(axis=1) // 2).astype(np.int16)
        return int(sample_rate), encode_pcm16(mono)

    raise ValueError(f"Unsupported WAV channel count: {channels}")
