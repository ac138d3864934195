"""
Relay transport.

Used when the client's audio reaches us through a gateway rather than a
direct socket. The gateway pushes envelopes with `feed()`; everything we send
back is wrapped into the same envelope format and handed to `send`.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from typing import Awaitable, Callable, Optional

import structlog

from src.voice.protocol import (
    ControlMessage,
    RelayEnvelope,
    RelayType,
    audio_envelope,
    control_to_envelope,
    encode_control,
    envelope_to_control,
)
from src.voice.queues import QueueClosed, StageQueue
from src.voice.transports.base import ControlHandler, TransportClosed, VoiceTransport

logger = structlog.get_logger(__name__)

RelaySend = Callable[[RelayEnvelope], Awaitable[None]]


class RelayTransport(VoiceTransport):
    """VoiceTransport over a gateway-delivered envelope stream."""

    def __init__(self, send: RelaySend, *, sample_rate: int = 16000, queue_size: int = 100):
        self._send = send
        self.sample_rate = sample_rate
        self._inbound: StageQueue[RelayEnvelope] = StageQueue(
            "relay_inbound", queue_size, drop_when_full=True
        )
        self._send_lock = asyncio.Lock()
        self._closed = False

    def feed(self, envelope: RelayEnvelope) -> None:
        """
        Accept one envelope from the gateway without blocking.

        Dropped if the transport is closed or backed up.
        """
        if self._closed:
            return
        self._inbound.put_nowait(envelope)

    async def read_pump(
        self,
        inbound: StageQueue[bytes],
        on_control: ControlHandler,
        cancel: Callable[[], None],
    ) -> None:
        try:
            while True:
                envelope = await self._inbound.get()

                if envelope.type == RelayType.AUDIO.value:
                    pcm = self._decode_audio(envelope)
                    if pcm:
                        inbound.put_nowait(pcm)
                    continue

                await on_control(encode_control(envelope_to_control(envelope)))
        except QueueClosed:
            return
        finally:
            cancel()

    def _decode_audio(self, envelope: RelayEnvelope) -> Optional[bytes]:
        try:
            return base64.b64decode(envelope.data or "", validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning("Relay audio base64 decode error", error=str(e))
            return None

    async def write_pump(self, outbound: StageQueue[bytes], cancel: Callable[[], None]) -> None:
        try:
            while True:
                frame = await outbound.get()
                await self._deliver(audio_envelope(frame, self.sample_rate))
        except QueueClosed:
            return
        except TransportClosed as e:
            logger.info("Relay write failed", error=str(e))
        finally:
            cancel()

    async def send_control(self, message: ControlMessage) -> None:
        await self._deliver(control_to_envelope(message))

    async def _deliver(self, envelope: RelayEnvelope) -> None:
        if self._closed:
            raise TransportClosed("relay closed")
        async with self._send_lock:
            try:
                await self._send(envelope)
            except Exception as e:
                raise TransportClosed(str(e)) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbound.close()
