from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from src.voice.protocol import ControlMessage
from src.voice.queues import StageQueue

ControlHandler = Callable[[str], Awaitable[None]]


class TransportClosed(Exception):
    """Raised when sending on a transport whose peer has gone away."""
    pass


class VoiceTransport(ABC):
    """
    Moves audio and control messages between a peer and the pipeline.

    The pipeline only talks to this interface, so the same connection logic
    runs over a direct socket or a relayed gateway channel.
    """

    @abstractmethod
    async def read_pump(
        self,
        inbound: StageQueue[bytes],
        on_control: ControlHandler,
        cancel: Callable[[], None],
    ) -> None:
        """
        Read until the peer closes or the task is cancelled.

        Audio goes to `inbound` (drop policy), control JSON to `on_control`.
        Calls `cancel()` on exit.
        """
        raise NotImplementedError

    @abstractmethod
    async def write_pump(self, outbound: StageQueue[bytes], cancel: Callable[[], None]) -> None:
        """Send outbound audio until the queue closes or the task is cancelled."""
        raise NotImplementedError

    @abstractmethod
    async def send_control(self, message: ControlMessage) -> None:
        """Send one control message now. Raises TransportClosed on failure."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

