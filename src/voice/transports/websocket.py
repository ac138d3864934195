"""
Direct WebSocket transport.

Binary frames carry PCM16 audio in both directions; text frames carry JSON
control messages. Keep-alive pings and the pong deadline are handled by
uvicorn (`ws_ping_interval` / `ws_ping_timeout`): a peer that stops
answering pings is disconnected by the server, which ends the read pump.
A quiet peer that still answers pings stays connected.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from src.voice.protocol import ControlMessage, encode_control
from src.voice.queues import QueueClosed, StageQueue
from src.voice.transports.base import ControlHandler, TransportClosed, VoiceTransport

logger = structlog.get_logger(__name__)


class WebSocketTransport(VoiceTransport):
    """VoiceTransport over an accepted FastAPI/Starlette WebSocket."""

    def __init__(
        self,
        websocket: WebSocket,
        *,
        write_wait: float = 10.0,
        connection_id: str = "",
    ):
        self._ws = websocket
        self.write_wait = write_wait
        self.connection_id = connection_id
        self._send_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    def from_config(cls, websocket: WebSocket, config: Any, connection_id: str = "") -> "WebSocketTransport":
        return cls(websocket, write_wait=config.write_wait_seconds, connection_id=connection_id)

    async def read_pump(
        self,
        inbound: StageQueue[bytes],
        on_control: ControlHandler,
        cancel: Callable[[], None],
    ) -> None:
        try:
            while not self._closed:
                message = await self._ws.receive()

                if message.get("type") == "websocket.disconnect":
                    logger.info(
                        "WebSocket disconnected",
                        connection_id=self.connection_id,
                        code=message.get("code"),
                    )
                    return

                data: Optional[bytes] = message.get("bytes")
                if data is not None:
                    inbound.put_nowait(data)
                    continue

                text: Optional[str] = message.get("text")
                if text is not None:
                    await on_control(text)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info("WebSocket read ended", connection_id=self.connection_id, error=str(e))
        finally:
            cancel()

    async def write_pump(self, outbound: StageQueue[bytes], cancel: Callable[[], None]) -> None:
        try:
            while True:
                frame = await outbound.get()
                await self._send(self._ws.send_bytes, frame)
        except QueueClosed:
            return
        except TransportClosed as e:
            logger.info("WebSocket write failed", connection_id=self.connection_id, error=str(e))
        finally:
            cancel()

    async def send_control(self, message: ControlMessage) -> None:
        await self._send(self._ws.send_text, encode_control(message))

    async def _send(self, send: Callable[[Any], Any], payload: Any) -> None:
        if self._closed:
            raise TransportClosed("transport closed")
        async with self._send_lock:
            try:
                await asyncio.wait_for(send(payload), timeout=self.write_wait)
            except asyncio.TimeoutError as e:
                raise TransportClosed("write deadline exceeded") from e
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                raise TransportClosed(str(e)) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._ws.client_state == WebSocketState.CONNECTED:
            try:
                await self._ws.close()
            except (RuntimeError, OSError) as e:
                logger.debug("WebSocket close failed", connection_id=self.connection_id, error=str(e))
