import io

import pytest
import requests

import config
import server
import speech_services
from sessions import SessionRegistry


class FakeSpeech:
    """Stands in for the hosted APIs; chunk transcripts are looked up by audio bytes."""

    def __init__(self):
        self.chunk_texts = {}
        self.chunk_error = False
        self.diarized = {"transcript": "", "words": [], "provider": "deepgram"}
        self.diarized_calls = []
        self.summary = {"summary": "They are thinking of a red bicycle.", "topic": "Red bicycle"}
        self.summarized = []

    def transcribe_chunk(self, audio, mimetype="audio/webm", language="en"):
        if self.chunk_error:
            raise speech_services.ServiceError("deepgram", "unavailable")
        return self.chunk_texts.get(audio, "")

    def transcribe_diarized(self, audio, mimetype="audio/webm", language="en"):
        self.diarized_calls.append({"audio": audio, "mimetype": mimetype, "language": language})
        if isinstance(self.diarized, Exception):
            raise self.diarized
        return self.diarized

    def summarize_text(self, text):
        self.summarized.append(text)
        if isinstance(self.summary, Exception):
            raise self.summary
        return dict(self.summary)


@pytest.fixture
def registry(monkeypatch):
    reg = SessionRegistry(ttl=3600)
    monkeypatch.setattr(server, "registry", reg)
    return reg


@pytest.fixture
def speech(monkeypatch):
    fake = FakeSpeech()
    monkeypatch.setattr(speech_services, "transcribe_chunk", fake.transcribe_chunk)
    monkeypatch.setattr(speech_services, "transcribe_diarized", fake.transcribe_diarized)
    monkeypatch.setattr(speech_services, "summarize_text", fake.summarize_text)
    return fake


@pytest.fixture
def offline(monkeypatch):
    """Real service clients whose every HTTP call fails with ``state["error"]``."""
    state = {"error": requests.exceptions.ChunkedEncodingError("connection broken mid-body"), "calls": 0}

    def fake_post(url, **kwargs):
        state["calls"] += 1
        raise state["error"]

    monkeypatch.setattr(speech_services.requests, "post", fake_post)
    monkeypatch.setattr(speech_services.time, "sleep", lambda s: None)
    monkeypatch.setattr(config, "DEEPGRAM_API_KEY", "dg-key")
    monkeypatch.setattr(config, "GEMINI_API_KEY", "gm-key")
    monkeypatch.setattr(config, "GOOGLE_TRANSLATE_API_KEY", "")
    monkeypatch.setattr(speech_services.aai.settings, "api_key", None)
    return state


@pytest.fixture
def http(registry):
    server.app.config["TESTING"] = True
    return server.app.test_client()


@pytest.fixture
def connect(registry):
    """Open Socket.IO test clients, optionally joining a session right away."""
    clients = []

    def _connect(session_id=None, role=None, **extra):
        client = server.socketio.test_client(server.app)
        clients.append(client)
        if session_id:
            client.emit("join", {"sessionId": session_id, "role": role, **extra})
        return client

    yield _connect
    for client in clients:
        if client.is_connected():
            client.disconnect()


@pytest.fixture
def received():
    """Everything a client received since the last call, as {event name: [payloads]}."""

    def _received(client):
        events = {}
        for e in client.get_received():
            events.setdefault(e["name"], []).append(e["args"][0] if e["args"] else None)
        return events

    return _received


@pytest.fixture
def upload(http):
    def _upload(path, data, **form):
        body = {"audio": (io.BytesIO(data), "chunk.webm", "audio/webm")}
        body.update(form)
        return http.post(path, data=body, content_type="multipart/form-data")

    return _upload
