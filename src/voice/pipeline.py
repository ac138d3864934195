"""
Full-duplex voice connection.

One `VoiceConnection` per client. Five tasks run for its lifetime:

    transport read  -> inbound queue -> utterance loop (gate, VAD, ASR)
                                          -> transcript queue
                                       response loop (agent stream, splitter)
                                          -> speech queue
                                       speech loop (TTS, pacing)
                                          -> outbound queue -> transport write

State machine:

    idle -> listening -> processing -> speaking -> listening
                                       speaking -> interrupting -> listening

Interruption (barge-in) is triggered by speech while speaking, or by an
`interrupt` control message. It drains the speech and outbound queues,
resets the VAD and bumps `generation`; any in-flight work tagged with an
older generation is discarded.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import AsyncIterator, List, Optional, Set

import structlog

from src.voice.audio import chunk_audio, decode_pcm16, is_encoded_audio, pcm_to_float32
from src.voice.config import Config, get_config
from src.voice.deps import DuplexDeps
from src.voice.gate import NoiseGate
from src.voice.protocol import ControlMessage, ControlType, RelayType, VoiceState, decode_control
from src.voice.queues import QueueClosed, StageQueue
from src.voice.segmentation import Utterance, UtteranceSegmenter
from src.voice.text import SpeakableBuffer
from src.voice.transports.base import TransportClosed, VoiceTransport

logger = structlog.get_logger(__name__)

FIRST_UNIT_FLUSH_SECONDS = 0.4
NEXT_UNIT_FLUSH_SECONDS = 0.8

# Transcriber outputs that mean "nothing was said".
PLACEHOLDER_TRANSCRIPTS = frozenset({
    "[blank_audio]",
    "(silence)",
    "[silence]",
    "(blank audio)",
    "[no speech]",
    "[music]",
})

UI_SOURCE = "voice_duplex"

_STREAM_END = object()


def is_placeholder_transcript(text: str) -> bool:
    return text.strip().lower() in PLACEHOLDER_TRANSCRIPTS


@dataclass
class SpeakableUnit:
    """Text queued for synthesis, tagged with the generation that produced it."""
    text: str
    generation: int
    end_of_response: bool = False


@dataclass
class ConnectionMetrics:
    """Per-connection counters, logged when the connection stops."""
    connection_id: str
    started_at: float = field(default_factory=time.time)
    utterances: int = 0
    discarded_utterances: int = 0
    transcripts: int = 0
    responses: int = 0
    units_spoken: int = 0
    frames_sent: int = 0
    frames_dropped: int = 0
    interruptions: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["duration_seconds"] = round(time.time() - self.started_at, 2)
        return data


class VoiceConnection:
    """
    Orchestrates one duplex conversation over a `VoiceTransport`.

    Owns the state machine, the noise gate, the VAD and all stage queues.
    """

    def __init__(
        self,
        transport: VoiceTransport,
        deps: DuplexDeps,
        config: Optional[Config] = None,
        connection_id: Optional[str] = None,
    ):
        self.config = config or get_config()
        self.connection_id = connection_id or f"voice_{uuid.uuid4().hex[:12]}"
        self._transport = transport
        self._deps = deps

        self._state = VoiceState.IDLE
        self._state_lock = asyncio.Lock()
        self.generation = 0
        self.voice = self.config.default_voice

        self._gate = NoiseGate()
        self._vad = deps.vad_factory()
        self._segmenter = UtteranceSegmenter(sample_rate=self.config.sample_rate)

        self.inbound: StageQueue[bytes] = StageQueue(
            "inbound", self.config.inbound_queue_size, drop_when_full=True
        )
        self.outbound: StageQueue[bytes] = StageQueue(
            "outbound", self.config.outbound_queue_size, drop_when_full=True
        )
        self.transcripts: StageQueue[str] = StageQueue("transcripts", self.config.transcript_queue_size)
        self.speech: StageQueue[SpeakableUnit] = StageQueue("speech", self.config.speech_queue_size)

        self._cancelled = asyncio.Event()
        self._stopped = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._broadcasts: Set[asyncio.Future] = set()
        self.metrics = ConnectionMetrics(connection_id=self.connection_id)
        self._log = logger.bind(connection_id=self.connection_id)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> VoiceState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def set_state(self, state: VoiceState) -> None:
        """Transition and notify the client. Every call emits a state message."""
        async with self._state_lock:
            await self._apply_state(state)

    async def _apply_state(self, state: VoiceState) -> None:
        # Caller holds _state_lock.
        if state != self._state:
            self._log.debug("State transition", from_state=self._state.value, to_state=state.value)
        self._state = state
        await self._send_control(ControlMessage.state_change(state))

    async def _return_to_listening(self) -> None:
        """Go back to listening unless a reply is still being spoken."""
        async with self._state_lock:
            if self._state != VoiceState.SPEAKING:
                await self._apply_state(VoiceState.LISTENING)

    async def interrupt(self) -> bool:
        """
        Stop speaking and start listening.

        No-op unless the connection is speaking. Returns True if an
        interruption was performed; the state is `listening` on return.
        """
        async with self._state_lock:
            if self._state != VoiceState.SPEAKING:
                return False

            await self._apply_state(VoiceState.INTERRUPTING)

            dropped_units = self.speech.drain()
            dropped_frames = self.outbound.drain()
            self._vad.reset()
            self.generation += 1

            await self._apply_state(VoiceState.LISTENING)

        self.metrics.interruptions += 1
        self._log.info(
            "Interrupted",
            dropped_units=len(dropped_units),
            dropped_frames=len(dropped_frames),
            generation=self.generation,
        )
        return True

    # ------------------------------------------------------------------
    # Control channel
    # ------------------------------------------------------------------

    async def _send_control(self, message: ControlMessage) -> None:
        if self.cancelled:
            return
        try:
            await self._transport.send_control(message)
        except TransportClosed as e:
            self._log.info("Control send failed, closing connection", error=str(e))
            self.cancel()

    async def handle_control(self, raw: str) -> None:
        """Handle one inbound control message. Malformed input is ignored."""
        message = decode_control(raw)
        if message is None:
            return

        if message.type == ControlType.CONFIG.value:
            if message.voice:
                self.voice = message.voice
            self._log.info("Client config", voice=self.voice, client_sample_rate=message.sample_rate)
        elif message.type == ControlType.INTERRUPT.value:
            await self.interrupt()
        elif message.type in (RelayType.VOICE_START.value, RelayType.VOICE_END.value):
            self._log.debug("Client voice marker", marker=message.type)
        else:
            self._log.debug("Ignoring control message", type=message.type)

    def _broadcast(self, method: str, content: str) -> None:
        """Mirror conversation text to the UI sink, if any. Never raises."""
        sink = self._deps.send_frame
        if sink is None:
            return
        frame = {
            "type": "event",
            "method": method,
            "payload": {"content": content, "source": UI_SOURCE},
        }
        try:
            result = sink(frame)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._broadcasts.add(task)
                task.add_done_callback(self._broadcast_done)
        except Exception as e:
            self._log.debug("UI broadcast failed", error=str(e))

    def _broadcast_done(self, task: asyncio.Future) -> None:
        self._broadcasts.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._log.debug("UI broadcast failed", error=str(task.exception()))

    # ------------------------------------------------------------------
    # Utterance loop (ASR stage)
    # ------------------------------------------------------------------

    async def _utterance_loop(self) -> None:
        try:
            while True:
                raw = await self.inbound.get()
                try:
                    await self._process_frame(raw)
                except QueueClosed:
                    raise
                except Exception as e:
                    self.metrics.errors += 1
                    self._log.error("Utterance loop error", error=str(e), exc_info=True)
                    await self._send_control(ControlMessage.error("Audio processing failed"))
                    await self._return_to_listening()
        except QueueClosed:
            return

    async def _process_frame(self, raw: bytes) -> None:
        samples = decode_pcm16(raw)
        if len(samples) == 0:
            return

        passed = self._gate.filter(samples)
        if passed is None:
            utterance = self._segmenter.push(samples, speech=False, gated=True)
        else:
            speech = self._vad.is_speech(passed)
            await self._send_control(ControlMessage.vad_state(speech))
            if speech and self._state == VoiceState.SPEAKING:
                await self.interrupt()
            utterance = self._segmenter.push(passed, speech=speech)

        if utterance is not None:
            self._vad.reset()
            await self._handle_utterance(utterance)

    async def _handle_utterance(self, utterance: Utterance) -> None:
        if not utterance.accepted:
            self.metrics.discarded_utterances += 1
            self._log.debug(
                "Discarded utterance",
                reason=utterance.reason,
                duration_s=round(utterance.duration_s, 2),
            )
            return

        self.metrics.utterances += 1
        await self.set_state(VoiceState.PROCESSING)

        started = time.perf_counter()
        try:
            text = await self._deps.transcriber.transcribe(
                pcm_to_float32(utterance.samples), utterance.sample_rate
            )
        except Exception as e:
            self.metrics.errors += 1
            self._log.warning("Transcription failed", error=str(e))
            await self._send_control(ControlMessage.error(f"Transcription failed: {e}"))
            await self._return_to_listening()
            return

        text = (text or "").strip()
        self._log.info(
            "Transcribed utterance",
            duration_s=round(utterance.duration_s, 2),
            asr_ms=round((time.perf_counter() - started) * 1000, 1),
            text=text[:80],
        )

        if not text or is_placeholder_transcript(text):
            await self._return_to_listening()
            return

        self.metrics.transcripts += 1
        await self._send_control(ControlMessage.transcript(text))
        await self.transcripts.put(text)

    # ------------------------------------------------------------------
    # Response loop (agent stage)
    # ------------------------------------------------------------------

    async def _response_loop(self) -> None:
        try:
            while True:
                text = await self.transcripts.get()
                try:
                    await self._respond(text)
                except QueueClosed:
                    raise
                except Exception as e:
                    self.metrics.errors += 1
                    self._log.error("Response loop error", error=str(e), exc_info=True)
                    await self._send_control(ControlMessage.error("Processing failed"))
                    await self._return_to_listening()
        except QueueClosed:
            return

    async def _respond(self, text: str) -> None:
        generation = self.generation
        if self._state != VoiceState.SPEAKING:
            await self.set_state(VoiceState.PROCESSING)

        self._broadcast("dm_user_message", text)

        runner = self._deps.runner
        if runner is None:
            await self._send_control(ControlMessage.error("Runner not configured"))
            await self._return_to_listening()
            return

        try:
            stream = await runner.run(self.config.session_key, text, self.config.voice_channel)
        except Exception as e:
            self.metrics.errors += 1
            self._log.warning("Agent runner failed", error=str(e))
            await self._send_control(ControlMessage.error("Processing failed"))
            await self._return_to_listening()
            return

        self.metrics.responses += 1
        flushed = await self._stream_to_units(stream, generation)
        if flushed is None:
            self._log.info("Response abandoned after interruption")
            return

        if flushed == 0:
            await self._return_to_listening()
        else:
            await self.speech.put(SpeakableUnit("", generation, end_of_response=True))

    async def _stream_to_units(self, stream: AsyncIterator[str], generation: int) -> Optional[int]:
        """
        Split the agent stream into speakable units.

        Returns the number of units flushed, or None if an interruption
        made this response stale.
        """
        splitter = SpeakableBuffer()
        fragments: asyncio.Queue = asyncio.Queue()
        pump = asyncio.create_task(self._pump_stream(stream, fragments))
        timeout: Optional[float] = None

        try:
            while True:
                try:
                    item = await asyncio.wait_for(fragments.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    # Flush timer fired.
                    timeout = None
                    await self._enqueue_units(splitter.flush(), generation)
                else:
                    if item is _STREAM_END:
                        break
                    if not item:
                        continue
                    self._broadcast("chat_stream", item)
                    units = splitter.feed(item)
                    if units:
                        timeout = None
                        await self._enqueue_units(units, generation)
                    elif splitter.pending.strip():
                        timeout = (
                            NEXT_UNIT_FLUSH_SECONDS if splitter.units_flushed
                            else FIRST_UNIT_FLUSH_SECONDS
                        )

                if generation != self.generation:
                    return None
        finally:
            if not pump.done():
                pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

        await self._enqueue_units(splitter.flush(), generation)
        if generation != self.generation:
            return None
        return splitter.units_flushed

    async def _pump_stream(self, stream: AsyncIterator[str], out: asyncio.Queue) -> None:
        try:
            async for fragment in stream:
                out.put_nowait(fragment)
        except Exception as e:
            self._log.warning("Agent stream failed", error=str(e))
        finally:
            out.put_nowait(_STREAM_END)
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    self._log.debug("Agent stream close failed", error=str(e))

    async def _enqueue_units(self, units: List[str], generation: int) -> None:
        for text in units:
            if generation != self.generation:
                return
            await self.speech.put(SpeakableUnit(text, generation))

    # ------------------------------------------------------------------
    # Speech loop (TTS stage)
    # ------------------------------------------------------------------

    async def _speech_loop(self) -> None:
        try:
            while True:
                unit = await self.speech.get()
                try:
                    await self._speak(unit)
                except QueueClosed:
                    raise
                except Exception as e:
                    self.metrics.errors += 1
                    self._log.error("Speech loop error", error=str(e), exc_info=True)
                    await self._send_control(ControlMessage.error("Speech playback failed"))
        except QueueClosed:
            return

    async def _begin_unit(self, unit: SpeakableUnit) -> bool:
        """Enter speaking for a current-generation unit. False if the unit is stale."""
        async with self._state_lock:
            if unit.generation != self.generation:
                return False
            if self._state != VoiceState.SPEAKING:
                await self._apply_state(VoiceState.SPEAKING)
            return True

    async def _finish_response(self, unit: SpeakableUnit) -> None:
        async with self._state_lock:
            if (
                unit.generation == self.generation
                and self._state == VoiceState.SPEAKING
                and self.speech.empty()
            ):
                await self._apply_state(VoiceState.LISTENING)

    def _still_speaking(self, unit: SpeakableUnit) -> bool:
        return self._state == VoiceState.SPEAKING and unit.generation == self.generation

    async def _speak(self, unit: SpeakableUnit) -> None:
        if unit.end_of_response:
            await self._finish_response(unit)
            return

        if not await self._begin_unit(unit):
            return

        try:
            audio = await self._deps.synthesizer.synthesize(unit.text, self.voice)
        except Exception as e:
            self.metrics.errors += 1
            self._log.warning("TTS failed", error=str(e), text=unit.text[:60])
            await self._send_control(ControlMessage.error(f"Speech synthesis failed: {e}"))
            return

        if not audio or not self._still_speaking(unit):
            return

        self.metrics.units_spoken += 1

        if is_encoded_audio(audio):
            await self.outbound.put(audio)
            self.metrics.frames_sent += 1
            return

        pacing = self.config.pacing_interval_ms / 1000
        for frame in chunk_audio(audio, self.config.frame_bytes):
            if not self._still_speaking(unit):
                self._log.debug("Playback aborted", text=unit.text[:60])
                return
            await self.outbound.put(frame)
            self.metrics.frames_sent += 1
            await asyncio.sleep(pacing)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Request shutdown. Safe to call any number of times, from any task."""
        if not self._cancelled.is_set():
            self._log.debug("Connection cancel requested")
            self._cancelled.set()

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error("Connection task crashed", task=task.get_name(), error=str(exc))
            self.cancel()

    async def serve(self) -> None:
        """Run the connection until cancelled, then tear it down."""
        self._log.info("Voice connection started", voice=self.voice)
        await self.set_state(VoiceState.LISTENING)

        transport = self._transport
        self._tasks = [
            asyncio.create_task(
                transport.read_pump(self.inbound, self.handle_control, self.cancel),
                name=f"{self.connection_id}:read",
            ),
            asyncio.create_task(
                transport.write_pump(self.outbound, self.cancel),
                name=f"{self.connection_id}:write",
            ),
            asyncio.create_task(self._utterance_loop(), name=f"{self.connection_id}:utterance"),
            asyncio.create_task(self._response_loop(), name=f"{self.connection_id}:response"),
            asyncio.create_task(self._speech_loop(), name=f"{self.connection_id}:speech"),
        ]
        for task in self._tasks:
            task.add_done_callback(self._on_task_done)

        try:
            await self._cancelled.wait()
        finally:
            await self._shutdown()

    async def _shutdown(self) -> None:
        self.cancel()
        for queue in (self.inbound, self.transcripts, self.speech, self.outbound):
            queue.close()

        try:
            await self._transport.close()
        except Exception as e:
            self._log.warning("Transport close failed", error=str(e))

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=self.config.shutdown_grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        self._state = VoiceState.IDLE
        self.metrics.frames_dropped = self.inbound.dropped + self.outbound.dropped
        self._stopped.set()
        self._log.info("Voice connection closed", **self.metrics.to_dict())

    async def stop(self) -> None:
        """Cancel and wait for teardown to finish."""
        self.cancel()
        if self._tasks:
            await self._stopped.wait()


async def create_connection(
    transport: VoiceTransport,
    deps: DuplexDeps,
    config: Optional[Config] = None,
    connection_id: Optional[str] = None,
) -> VoiceConnection:
    """Create a connection; call `serve()` on it to run."""
    return VoiceConnection(transport, deps, config=config, connection_id=connection_id)
