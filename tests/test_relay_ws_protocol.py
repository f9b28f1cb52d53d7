from types import SimpleNamespace
import asyncio

import numpy as np
import pytest
from fastapi.testclient import TestClient

from voxrelay.cli.relay_ws import _create_app
from voxrelay.streaming.backend import RecognitionEvent


class _FakeStream:
    """Emits one distinct final result per written audio chunk."""

    def __init__(self, config, backend):
        self.config = config
        self.backend = backend
        self.written = []
        self.closed = False
        self._queue = asyncio.Queue()

    @property
    def writable(self):
        return not self.closed

    def write(self, chunk):
        self.written.append(chunk)
        self.backend.phrases += 1
        self._queue.put_nowait(RecognitionEvent(text=f"frase {self.backend.phrases}", is_final=True))

    async def events(self):
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def close(self):
        self.closed = True
        self._queue.put_nowait(None)


class _FakeBackend:
    def __init__(self):
        self.streams = []
        self.phrases = 0

    async def open_stream(self, config):
        stream = _FakeStream(config, self)
        self.streams.append(stream)
        return stream


class _FakeTranslator:
    def __init__(self):
        self.calls = []

    def translate(self, text: str, source_language: str = None, target_language: str = None):
        self.calls.append((text, source_language, target_language))
        return f"[{source_language}->{target_language}] {text}"


def _args():
    return SimpleNamespace(
        interim_interval_ms=800.0,
        duplicate_window_ms=1500.0,
        restart_delay_sec=0.05,
        idle_restart_delay_sec=0.05,
        idle_check_sec=0,
        idle_timeout_sec=20.0,
        stt_model="latest_short",
        session_trace_log=False,
        ping_interval_sec=25.0,
    )


def _pcm():
    return np.array([0, 1000, -1000], dtype="<i2").tobytes()


def _receive_caption(ws, max_steps: int = 20):
    seen = []
    for _ in range(max_steps):
        msg = ws.receive_json()
        if "texto_original" in msg:
            return msg
        seen.append(msg.get("type"))
    pytest.fail(f"did not receive a caption, seen={seen}")


def test_health_reports_empty_registry():
    app = _create_app(_args(), _FakeBackend(), translator=_FakeTranslator())
    with TestClient(app) as client:
        resp = client.get("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["calls"] == 0
    assert body["participants"] == 0
    assert body["time"].endswith("Z")


def test_ws_single_participant_receives_own_caption():
    backend = _FakeBackend()
    translator = _FakeTranslator()
    app = _create_app(_args(), backend, translator=translator)

    with TestClient(app) as client:
        with client.websocket_connect("/ws?callID=c1&userID=A&sourceLang=es&targetLang=en") as ws:
            ws.send_bytes(_pcm())
            caption = _receive_caption(ws)

    assert caption["userID"] == "A"
    assert caption["texto_original"] == "frase 1"
    assert caption["traduccion"] == "[es->en] frase 1"
    assert caption["sourceLang"] == "es-ES"
    assert caption["targetLang"] == "en"
    assert caption["isFinal"] is True
    assert caption["isSelf"] is True
    assert backend.streams[0].config.language_code == "es-ES"
    assert backend.streams[0].written == [_pcm()]


def test_ws_root_path_accepts_participants():
    app = _create_app(_args(), _FakeBackend(), translator=_FakeTranslator())

    with TestClient(app) as client:
        with client.websocket_connect("/?userID=A&sourceLang=en&targetLang=es") as ws:
            ws.send_bytes(_pcm())
            caption = _receive_caption(ws)

    assert caption["traduccion"] == "[en->es] frase 1"


def test_ws_two_participants_get_translation_in_their_language():
    translator = _FakeTranslator()
    app = _create_app(_args(), _FakeBackend(), translator=translator)

    with TestClient(app) as client:
        with client.websocket_connect("/ws?callID=c1&userID=A&sourceLang=es&targetLang=en") as ws_a:
            with client.websocket_connect("/ws?callID=c1&userID=B&sourceLang=en&targetLang=fr") as ws_b:
                health = client.get("/health").json()
                calls = client.get("/debug/calls").json()

                ws_a.send_bytes(_pcm())
                to_a = _receive_caption(ws_a)
                to_b = _receive_caption(ws_b)

    assert health["calls"] == 1
    assert health["participants"] == 2
    assert sorted(calls["c1"]) == ["A", "B"]

    assert to_a["isSelf"] is True
    assert to_a["traduccion"] == "[es->en] frase 1"
    assert to_b["isSelf"] is False
    assert to_b["userID"] == "A"
    assert to_b["traduccion"] == "[es->fr] frase 1"
    assert to_b["targetLang"] == "fr"
    assert sorted(c[2] for c in translator.calls) == ["en", "fr"]


def test_ws_participants_in_other_calls_receive_nothing():
    app = _create_app(_args(), _FakeBackend(), translator=_FakeTranslator())

    with TestClient(app) as client:
        with client.websocket_connect("/ws?callID=c1&userID=A") as ws_a:
            with client.websocket_connect("/ws?callID=c2&userID=B") as ws_b:
                ws_a.send_bytes(_pcm())
                _receive_caption(ws_a)
                ws_b.send_bytes(_pcm())
                from_b = _receive_caption(ws_b)

    assert from_b["userID"] == "B"
    assert from_b["texto_original"] == "frase 2"


def test_ws_garbage_text_and_bad_frames_keep_connection_alive():
    backend = _FakeBackend()
    app = _create_app(_args(), backend, translator=_FakeTranslator())

    with TestClient(app) as client:
        with client.websocket_connect("/ws?userID=A") as ws:
            ws.send_text("definitely not json")
            ws.send_bytes(b"\x00")
            ws.send_text('{"type":"ping"}')
            pong = ws.receive_json()
            ws.send_bytes(_pcm())
            caption = _receive_caption(ws)

    assert pong == {"type": "pong"}
    assert caption["texto_original"] == "frase 1"
    assert backend.streams[0].written == [_pcm()]


def test_ws_same_language_skips_translation():
    translator = _FakeTranslator()
    app = _create_app(_args(), _FakeBackend(), translator=translator)

    with TestClient(app) as client:
        with client.websocket_connect("/ws?userID=A&sourceLang=es&targetLang=es") as ws:
            ws.send_bytes(_pcm())
            caption = _receive_caption(ws)

    assert caption["traduccion"] == "frase 1"
    assert translator.calls == []


def test_ws_disconnect_removes_participant_and_stops_stream():
    backend = _FakeBackend()
    app = _create_app(_args(), backend, translator=None)

    with TestClient(app) as client:
        with client.websocket_connect("/ws?callID=c1&userID=A") as ws:
            ws.send_bytes(_pcm())
            caption = _receive_caption(ws)
        calls = client.get("/debug/calls").json()
        health = client.get("/health").json()

    assert caption["traduccion"] == "frase 1"
    assert calls == {}
    assert health["participants"] == 0
    assert backend.streams[0].closed is True
