"""
FastAPI server for the duplex voice agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- WS /ws/voice: Full-duplex voice (binary PCM16 + JSON control)
- WS /ws/voice/wake: Wake-word listener (binary PCM16 in, {"type":"wake"} out)
- WS /ws/voice/relay: Gateway relay (JSON envelopes both ways)
"""

import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.voice.config import ConfigError, get_config, init_config


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    active_wake_listeners: int = 0
    active_relays: int = 0
    wake_detections: int = 0
    interruptions: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "active_wake_listeners": self.active_wake_listeners,
            "active_relays": self.active_relays,
            "wake_detections": self.wake_detections,
            "interruptions": self.interruptions,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting duplex voice server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        # Probe collaborators once; tests may inject their own beforehand.
        if getattr(app.state, "deps", None) is None:
            from src.voice.deps import build_deps

            app.state.deps = build_deps(config)

        if config.llm_provider == "groq" and config.groq_api_key:
            from src.voice.providers.llm import validate_groq_model

            await validate_groq_model(config.groq_api_key, config.groq_model)

        logger.info("Server ready", port=config.port, sample_rate=config.sample_rate)

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    deps = getattr(app.state, "deps", None)
    if deps is not None:
        await deps.close()


app = FastAPI(
    title="Duplex Voice Agent",
    description="Full-duplex voice conversation with barge-in",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_connections": metrics.active_connections,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.websocket("/ws/voice")
async def voice_endpoint(websocket: WebSocket) -> None:
    """
    Full-duplex voice WebSocket.

    Runs one VoiceConnection until the client disconnects.
    """
    from src.voice.pipeline import VoiceConnection
    from src.voice.transports.websocket import WebSocketTransport

    await websocket.accept()
    config = get_config()

    connection_id = f"voice_{int(time.time() * 1000)}"
    metrics.total_connections += 1
    metrics.active_connections += 1
    logger.info("Voice WebSocket connected", connection_id=connection_id, active=metrics.active_connections)

    transport = WebSocketTransport.from_config(websocket, config, connection_id=connection_id)
    connection = VoiceConnection(transport, websocket.app.state.deps, config, connection_id=connection_id)
    try:
        await connection.serve()
    except Exception as e:
        logger.error("Voice connection error", connection_id=connection_id, error=str(e))
        metrics.errors += 1
    finally:
        metrics.active_connections -= 1
        metrics.interruptions += connection.metrics.interruptions
        metrics.errors += connection.metrics.errors
        logger.info("Voice WebSocket closed", connection_id=connection_id, active=metrics.active_connections)


@app.websocket("/ws/voice/wake")
async def wake_endpoint(websocket: WebSocket) -> None:
    """
    Wake-word WebSocket.

    Sends {"type":"wake"} on each detection and stays open; the client then
    opens /ws/voice itself.
    """
    from src.voice.audio import decode_pcm16
    from src.voice.protocol import ControlMessage, encode_control
    from src.voice.wakeword import WakeWordDetector

    await websocket.accept()
    config = get_config()
    deps = websocket.app.state.deps

    async def on_detect() -> None:
        metrics.wake_detections += 1
        await asyncio.wait_for(
            websocket.send_text(encode_control(ControlMessage.wake())),
            timeout=config.write_wait_seconds,
        )

    detector = WakeWordDetector(
        deps.transcriber,
        on_detect,
        vad=deps.vad_factory(),
        sample_rate=config.sample_rate,
        phrase=config.wake_phrase,
    )

    metrics.active_wake_listeners += 1
    logger.info("Wake word listener started")
    try:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break
            data = message.get("bytes")
            if data:
                await detector.feed(decode_pcm16(data))
    except asyncio.TimeoutError:
        logger.warning("Wake notification write deadline exceeded, closing")
        await websocket.close()
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.info("Wake word listener disconnected", error=str(e))
    finally:
        metrics.active_wake_listeners -= 1


@app.websocket("/ws/voice/relay")
async def relay_endpoint(websocket: WebSocket) -> None:
    """
    Gateway relay WebSocket.

    The gateway forwards the device's messages as JSON envelopes; replies go
    back the same way.
    """
    from src.voice.pipeline import VoiceConnection
    from src.voice.protocol import RelayEnvelope, decode_envelope, encode_envelope
    from src.voice.transports.relay import RelayTransport

    await websocket.accept()
    config = get_config()
    connection_id = f"relay_{int(time.time() * 1000)}"

    async def send(envelope: RelayEnvelope) -> None:
        await asyncio.wait_for(
            websocket.send_text(encode_envelope(envelope)),
            timeout=config.write_wait_seconds,
        )

    transport = RelayTransport(
        send,
        sample_rate=config.output_sample_rate,
        queue_size=config.inbound_queue_size,
    )
    connection = VoiceConnection(transport, websocket.app.state.deps, config, connection_id=connection_id)

    async def read_envelopes() -> None:
        # Dead gateways are detected by uvicorn's ping timeout, not by silence.
        try:
            while True:
                envelope = decode_envelope(await websocket.receive_text())
                if envelope is not None:
                    transport.feed(envelope)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info("Relay disconnected", connection_id=connection_id, error=str(e))

    serve_task = asyncio.create_task(connection.serve())
    read_task = asyncio.create_task(read_envelopes())

    metrics.total_connections += 1
    metrics.active_relays += 1
    logger.info("Relay connected", connection_id=connection_id)
    try:
        await asyncio.wait({serve_task, read_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        read_task.cancel()
        await connection.stop()
        await asyncio.gather(serve_task, read_task, return_exceptions=True)
        metrics.active_relays -= 1
        metrics.interruptions += connection.metrics.interruptions
        metrics.errors += connection.metrics.errors
        logger.info("Relay closed", connection_id=connection_id)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", host=config.host, port=config.port)

    uvicorn.run(
        "server.app:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        ws_ping_interval=config.ping_period_seconds,
        ws_ping_timeout=max(config.pong_wait_seconds - config.ping_period_seconds, 1.0),
        reload=False,
    )


if __name__ == "__main__":
    main()
