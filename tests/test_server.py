"""
Tests for the FastAPI server endpoints.
"""

import base64
import json

import pytest
from fastapi.testclient import TestClient

from server.app import app
from src.voice.deps import DuplexDeps
from conftest import FakeRunner, FakeSynthesizer, FakeTranscriber, frame_bytes_of, silence_frame, tone_frame


def utterance_frames(speech_frames: int = 15):
    return (
        [frame_bytes_of(silence_frame())] * 20
        + [frame_bytes_of(tone_frame())] * speech_frames
        + [frame_bytes_of(silence_frame())] * 30
    )


@pytest.fixture
def deps():
    return DuplexDeps(
        transcriber=FakeTranscriber("hey nebo"),
        synthesizer=FakeSynthesizer(audio=b"\x00\x00" * 960),
        runner=FakeRunner(["Hi there."]),
    )


@pytest.fixture
def client(deps):
    app.state.deps = deps
    with TestClient(app) as test_client:
        yield test_client
    app.state.deps = None


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_metrics(client):
    response = client.get("/metrics")
    assert response.status_code == 200
    body = response.json()
    assert "uptime_seconds" in body
    assert "active_connections" in body
    assert "wake_detections" in body


def test_lifespan_builds_default_deps():
    app.state.deps = None
    with TestClient(app):
        built = app.state.deps
        assert built is not None
        assert built.runner is None
    app.state.deps = None


def test_voice_socket_full_turn(client):
    with client.websocket_connect("/ws/voice") as ws:
        assert ws.receive_json() == {"type": "state", "state": "listening"}
        ws.send_text(json.dumps({"type": "config", "sample_rate": 16000, "voice": "emma"}))

        for frame in utterance_frames():
            ws.send_bytes(frame)

        transcripts = []
        audio_frames = []
        states = []
        while len(audio_frames) < 3 or not states or states[-1] != "listening":
            message = ws.receive()
            if message.get("bytes") is not None:
                audio_frames.append(message["bytes"])
                continue
            control = json.loads(message["text"])
            if control["type"] == "transcript":
                transcripts.append(control["text"])
            elif control["type"] == "state":
                states.append(control["state"])

        assert transcripts == ["hey nebo"]
        assert "speaking" in states
        assert all(len(f) == 640 for f in audio_frames)


def test_wake_socket_sends_wake(client):
    with client.websocket_connect("/ws/voice/wake") as ws:
        frames = (
            [frame_bytes_of(silence_frame())] * 20
            + [frame_bytes_of(tone_frame())] * 20
            + [frame_bytes_of(silence_frame())] * 20
        )
        for frame in frames:
            ws.send_bytes(frame)

        assert ws.receive_json() == {"type": "wake"}


def test_relay_socket(client):
    with client.websocket_connect("/ws/voice/relay") as ws:
        assert ws.receive_json() == {"type": "state", "state": "listening"}

        ws.send_text(json.dumps({"type": "config", "voice": "adam"}))
        for frame in utterance_frames():
            ws.send_text(json.dumps({
                "type": "audio",
                "data": base64.b64encode(frame).decode("ascii"),
            }))

        transcript = None
        while transcript is None:
            envelope = ws.receive_json()
            if envelope["type"] == "transcript":
                transcript = envelope

        assert transcript["text"] == "hey nebo"
        assert transcript["final"] is True
