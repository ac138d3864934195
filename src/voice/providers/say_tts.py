from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from typing import Optional

import structlog

from src.voice.providers.base import SynthesisError, Synthesizer

logger = structlog.get_logger(__name__)

DEFAULT_SAY_VOICE = "Samantha"

SAY_VOICES = {
    "rachel": "Samantha",
    "bella": "Victoria",
    "emma": "Karen",
    "adam": "Alex",
    "michael": "Daniel",
    "george": "Daniel",
}


def say_available() -> bool:
    return shutil.which("say") is not None


class SaySynthesizer(Synthesizer):
    """
    macOS `say` fallback.

    Produces an AIFF container, which the speech loop passes through for the
    client to decode.
    """

    def __init__(self, binary: Optional[str] = None, timeout: float = 30.0):
        self.binary = binary or shutil.which("say") or "say"
        self.timeout = timeout

    async def synthesize(self, text: str, voice: str) -> bytes:
        if not text or not text.strip():
            return b""

        say_voice = SAY_VOICES.get((voice or "").strip().lower(), DEFAULT_SAY_VOICE)
        fd, path = tempfile.mkstemp(suffix=".aiff", prefix="voice-")
        os.close(fd)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, "-v", say_voice, "-o", path, text,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                proc.kill()
                await proc.wait()
                raise SynthesisError("say timed out") from e

            if proc.returncode != 0:
                raise SynthesisError(
                    f"say exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}"
                )

            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            logger.warning("say synthesis failed", error=str(e))
            raise SynthesisError(str(e)) from e
        finally:
            try:
                os.unlink(path)
            except OSError:
                pass
