# coding=utf-8
# Copyright 2026 The Alibaba Qwen team.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Multi-participant live caption relay over WebSocket (Google STT + translation backends).
"""
import argparse
import asyncio
import json
import logging
import os
import socket
import tempfile
import time
import urllib.request
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Any, AsyncIterator, Dict, MutableMapping, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from voxrelay.streaming.backend import RecognitionEvent, StreamConfig, Translator
from voxrelay.streaming.connection import ConnectionHandler, parse_connection_params
from voxrelay.streaming.fanout import TranslationFanout, _iso_now
from voxrelay.streaming.languages import short_language_code
from voxrelay.streaming.liveness import LivenessProber
from voxrelay.streaming.registry import CallRegistry

logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "zh": "Chinese",
    "ja": "Japanese",
}


def _stage_google_credentials(environ: MutableMapping[str, str], target_dir: Path) -> Optional[str]:
    raw = str(environ.get("GOOGLE_KEY_JSON") or "").strip()
    if not raw:
        return None
    try:
        json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"GOOGLE_KEY_JSON is not valid json: {e}") from e

    target = Path(target_dir)
    target.mkdir(parents=True, exist_ok=True)
    key_path = target / "google-key-from-env.json"
    key_path.write_text(raw, encoding="utf-8")
    with suppress(OSError):
        os.chmod(key_path, 0o600)
    environ["GOOGLE_KEY_PATH"] = str(key_path)
    environ.setdefault("GOOGLE_APPLICATION_CREDENTIALS", str(key_path))
    logger.info("GOOGLE_KEY_JSON written to %s", key_path)
    return str(key_path)


def _assert_port_bindable(host: str, port: int) -> None:
    bind_host = str(host or "0.0.0.0").strip() or "0.0.0.0"
    bind_port = int(port)
    try:
        addr_infos = socket.getaddrinfo(
            bind_host,
            bind_port,
            family=socket.AF_UNSPEC,
            type=socket.SOCK_STREAM,
            proto=socket.IPPROTO_TCP,
            flags=socket.AI_PASSIVE,
        )
    except socket.gaierror as exc:
        raise RuntimeError(f"invalid bind host '{bind_host}': {exc}") from exc

    last_error: Optional[OSError] = None
    for family, socktype, proto, _, sockaddr in addr_infos:
        probe = socket.socket(family, socktype, proto)
        with suppress(OSError):
            probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            probe.bind(sockaddr)
            return
        except OSError as exc:
            last_error = exc
        finally:
            probe.close()
    raise RuntimeError(f"bind {bind_host}:{bind_port} is not available: {last_error}") from last_error


class GoogleSpeechStream:
    """
    One ``streaming_recognize`` call on Google Cloud Speech-to-Text.

    Audio is queued for the request iterator; the first request carries the
    streaming config and a ``None`` sentinel ends the request side.
    """

    def __init__(self, config: StreamConfig, max_pending_chunks: int = 256) -> None:
        from google.cloud import speech

        self._speech = speech
        self.config = config
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, int(max_pending_chunks)))
        self._call: Any = None
        self._closed = False
        self._streaming_config = speech.StreamingRecognitionConfig(
            config=speech.RecognitionConfig(
                encoding=speech.RecognitionConfig.AudioEncoding[config.encoding],
                sample_rate_hertz=int(config.sample_rate_hz),
                language_code=config.language_code,
                enable_automatic_punctuation=bool(config.automatic_punctuation),
                use_enhanced=bool(config.enhanced),
                model=config.model,
            ),
            interim_results=bool(config.interim_results),
        )

    async def _requests(self) -> AsyncIterator[Any]:
        yield self._speech.StreamingRecognizeRequest(streaming_config=self._streaming_config)
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield self._speech.StreamingRecognizeRequest(audio_content=chunk)

    async def open(self, client: Any) -> "GoogleSpeechStream":
        self._call = await client.streaming_recognize(requests=self._requests())
        return self

    @property
    def writable(self) -> bool:
        return not self._closed and self._call is not None

    def write(self, chunk: bytes) -> None:
        if self._closed:
            raise RuntimeError("write after end")
        try:
            self._queue.put_nowait(bytes(chunk))
        except asyncio.QueueFull as e:
            raise RuntimeError("stt request queue is full") from e

    async def events(self) -> AsyncIterator[RecognitionEvent]:
        if self._call is None:
            return
        async for response in self._call:
            results = list(response.results)
            if not results:
                continue
            result = results[0]
            if not result.alternatives:
                continue
            text = str(result.alternatives[0].transcript or "")
            if not text:
                continue
            yield RecognitionEvent(text=text, is_final=bool(result.is_final), received_at=time.monotonic())

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with suppress(asyncio.QueueFull):
            self._queue.put_nowait(None)
        call = self._call
        if call is not None:
            call.cancel()


class GoogleSpeechBackend:
    def __init__(self, key_path: Optional[str] = None, max_pending_chunks: int = 256) -> None:
        self.key_path = str(key_path or "").strip() or None
        self.max_pending_chunks = max(1, int(max_pending_chunks))
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from google.cloud import speech

            if self.key_path:
                self._client = speech.SpeechAsyncClient.from_service_account_file(self.key_path)
            else:
                self._client = speech.SpeechAsyncClient()
        return self._client

    async def open_stream(self, config: StreamConfig) -> GoogleSpeechStream:
        stream = GoogleSpeechStream(config, max_pending_chunks=self.max_pending_chunks)
        return await stream.open(self._get_client())


class GoogleTranslator:
    """
    Google Cloud Translation (v2 basic) client. The source language is auto-detected.
    """

    def __init__(self, key_path: Optional[str] = None, default_target_language: str = "en") -> None:
        from google.cloud import translate_v2 as translate

        self.key_path = str(key_path or "").strip() or None
        self.default_target_language = short_language_code(default_target_language)
        if self.key_path:
            self.client = translate.Client.from_service_account_json(self.key_path)
        else:
            self.client = translate.Client()

    def translate(
        self,
        text: str,
        source_language: Optional[str] = None,
        target_language: Optional[str] = None,
    ) -> str:
        src = str(text or "").strip()
        if not src:
            return ""
        target = short_language_code(target_language or self.default_target_language)
        result = self.client.translate(src, target_language=target, format_="text")
        return str(result.get("translatedText", "") or "").strip()


class OpenAIAPITranslator:
    """
    Translation client using an OpenAI-compatible Chat Completions HTTP API.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        max_new_tokens: int = 256,
        timeout_sec: float = 30.0,
        api_key: str = "",
    ) -> None:
        self.base_url = str(base_url or "").strip()
        if not self.base_url:
            raise ValueError("translation api base_url is empty")
        self.model = str(model or "").strip()
        if not self.model:
            raise ValueError("translation api model is empty")
        self.max_new_tokens = max(8, int(max_new_tokens))
        self.timeout_sec = max(1.0, float(timeout_sec))
        self.api_key = str(api_key or "").strip()

        normalized = self.base_url.rstrip("/")
        if normalized.endswith("/chat/completions"):
            self.chat_url = normalized
        elif normalized.endswith("/v1"):
            self.chat_url = f"{normalized}/chat/completions"
        else:
            self.chat_url = f"{normalized}/v1/chat/completions"

    def _build_prompt(self, text: str, source_language: Optional[str] = None, target_language: Optional[str] = None) -> str:
        source = LANGUAGE_NAMES.get(short_language_code(source_language), "the source language") if source_language else "the source language"
        target = LANGUAGE_NAMES.get(short_language_code(target_language), short_language_code(target_language))
        return (
            f"Translate the following {source} text into {target}.\n"
            "Keep the meaning and proper nouns; output only the translation, no explanations.\n\n"
            f"Text:\n{text}"
        )

    def _extract_content(self, payload: Dict[str, Any]) -> str:
        choices = payload.get("choices")
        if isinstance(choices, list) and choices:
            message = choices[0].get("message", {}) if isinstance(choices[0], dict) else {}
            content = message.get("content")
            if isinstance(content, str):
                return content.strip()
            if isinstance(content, list):
                chunks = []
                for item in content:
                    if isinstance(item, str):
                        chunks.append(item)
                    elif isinstance(item, dict):
                        txt = item.get("text")
                        if isinstance(txt, str):
                            chunks.append(txt)
                return "".join(chunks).strip()
        return ""

    def translate(
        self,
        text: str,
        source_language: Optional[str] = None,
        target_language: Optional[str] = None,
    ) -> str:
        src = str(text or "").strip()
        if not src:
            return ""
        body = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": self._build_prompt(
                        src,
                        source_language=source_language,
                        target_language=target_language or "en",
                    ),
                }
            ],
            "max_tokens": self.max_new_tokens,
            "temperature": 0,
            "top_p": 1,
            "stream": False,
        }
        data = json.dumps(body, ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        req = urllib.request.Request(self.chat_url, data=data, headers=headers, method="POST")
        with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
        return self._extract_content(json.loads(raw))


class _WebSocketConnection:
    """Participant-facing view of one accepted Starlette WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def open(self) -> bool:
        if self._closed:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def send_json(self, payload: Dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_text(json.dumps(payload, ensure_ascii=False))

    async def ping(self) -> None:
        # ASGI has no protocol-level ping; uvicorn sends those itself (ws_ping_interval).
        await self.send_json({"type": "keepalive", "timestamp": _iso_now()})

    async def close(self, code: int = 1000) -> None:
        if self._closed:
            return
        self._closed = True
        with suppress(Exception):
            await self.websocket.close(code=code)


def _session_options(args: argparse.Namespace) -> Dict[str, Any]:
    return dict(
        min_interval_ms=float(getattr(args, "interim_interval_ms", 800.0)),
        duplicate_window_ms=float(getattr(args, "duplicate_window_ms", 1500.0)),
        restart_delay_sec=float(getattr(args, "restart_delay_sec", 1.0)),
        idle_restart_delay_sec=float(getattr(args, "idle_restart_delay_sec", 0.5)),
        idle_check_sec=float(getattr(args, "idle_check_sec", 8.0)),
        idle_timeout_sec=float(getattr(args, "idle_timeout_sec", 20.0)),
        stt_model=str(getattr(args, "stt_model", "latest_short") or "latest_short"),
        trace_log=bool(getattr(args, "session_trace_log", False)),
    )


def _create_app(args: argparse.Namespace, backend: Any, translator: Optional[Translator] = None) -> FastAPI:
    registry = CallRegistry()
    fanout = TranslationFanout(registry, translator)
    prober = LivenessProber(registry, interval_sec=float(getattr(args, "ping_interval_sec", 25.0)))
    session_options = _session_options(args)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        prober.start()
        try:
            yield
        finally:
            await prober.stop()
            for participant in registry.participants():
                if participant.session is not None:
                    with suppress(Exception):
                        await participant.session.stop()

    app = FastAPI(title="VoxRelay Caption Relay", lifespan=lifespan)
    app.state.registry = registry
    app.state.fanout = fanout
    app.state.prober = prober

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "time": _iso_now(),
            "calls": registry.call_count,
            "participants": registry.participant_count,
        }

    @app.get("/debug/calls")
    async def debug_calls() -> Dict[str, Any]:
        return registry.snapshot()

    async def _serve(websocket: WebSocket) -> None:
        params = parse_connection_params(websocket.query_params)
        conn = _WebSocketConnection(websocket)
        handler = ConnectionHandler(params, conn, registry, fanout, backend, **session_options)
        peer = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
        reason = "close"
        logger.info("ws open peer=%s call=%s user=%s", peer, params.call_id, params.participant_id)
        try:
            # Registered before the handshake completes, so an accepted client is already a call member.
            await handler.on_connect()
            await websocket.accept()
            while True:
                msg = await websocket.receive()
                if msg.get("type") == "websocket.disconnect":
                    break
                raw = msg.get("bytes")
                text = msg.get("text")
                if raw is not None:
                    handler.on_binary(raw)
                elif text is not None:
                    await handler.on_text(text)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            reason = "error"
            logger.warning("ws error peer=%s user=%s err=%s", peer, params.participant_id, e)
        finally:
            conn.mark_closed()
            await handler.on_disconnect(reason)
            with suppress(Exception):
                await websocket.close(code=1000)
            logger.info(
                "ws close peer=%s call=%s user=%s reason=%s text_frames=%d",
                peer,
                params.call_id,
                params.participant_id,
                reason,
                handler.text_frames,
            )

    app.add_api_websocket_route("/", _serve)
    app.add_api_websocket_route("/ws", _serve)
    return app


def _build_translator(args: argparse.Namespace, key_path: Optional[str]) -> Optional[Translator]:
    translation_backend = str(getattr(args, "translation_backend", "google") or "google").strip().lower()
    if translation_backend == "none":
        logger.info("translation disabled, captions carry the original text")
        return None
    if translation_backend == "openai_api":
        logger.info(
            "loading openai-compatible translator base_url=%s model=%s",
            args.translation_api_base_url,
            args.translation_api_model,
        )
        return OpenAIAPITranslator(
            base_url=args.translation_api_base_url,
            model=args.translation_api_model,
            max_new_tokens=args.translation_max_new_tokens,
            timeout_sec=args.translation_api_timeout_sec,
            api_key=args.translation_api_key,
        )
    logger.info("loading google translator key=%s", key_path or "(application default)")
    return GoogleTranslator(key_path=key_path)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="VoxRelay live caption relay (WebSocket)")
    p.add_argument("--host", default="0.0.0.0", help="Bind host")
    p.add_argument("--port", type=int, default=int(os.environ.get("PORT", "3000")), help="Bind port")
    p.add_argument(
        "--google-key-path",
        default=os.environ.get("GOOGLE_KEY_PATH") or None,
        help="Service account json for Google STT/translation (application default credentials when omitted)",
    )
    p.add_argument("--stt-model", default="latest_short", help="Google STT recognition model")
    p.add_argument(
        "--translation-backend",
        default="google",
        choices=["google", "openai_api", "none"],
        help="Translation backend used for captions",
    )
    p.add_argument("--translation-api-base-url", default=os.environ.get("TRANSLATION_API_BASE_URL", ""))
    p.add_argument("--translation-api-model", default=os.environ.get("TRANSLATION_API_MODEL", ""))
    p.add_argument("--translation-api-key", default=os.environ.get("TRANSLATION_API_KEY", ""))
    p.add_argument("--translation-api-timeout-sec", type=float, default=30.0)
    p.add_argument("--translation-max-new-tokens", type=int, default=256)
    p.add_argument(
        "--interim-interval-ms",
        type=float,
        default=800.0,
        help="Minimum gap between accepted interim results of one participant",
    )
    p.add_argument(
        "--duplicate-window-ms",
        type=float,
        default=1500.0,
        help="Window in which a result repeating the last accepted text is dropped",
    )
    p.add_argument(
        "--restart-delay-sec",
        type=float,
        default=1.0,
        help="Delay before recreating a failed or ended recognition stream",
    )
    p.add_argument(
        "--idle-restart-delay-sec",
        type=float,
        default=0.5,
        help="Delay before recreating a stream torn down for inactivity",
    )
    p.add_argument("--idle-check-sec", type=float, default=8.0, help="Inactivity check period per session")
    p.add_argument(
        "--idle-timeout-sec",
        type=float,
        default=20.0,
        help="Recreate a recognition stream after this many seconds without audio or results",
    )
    p.add_argument("--ping-interval-sec", type=float, default=25.0, help="Keepalive interval for open connections")
    p.add_argument(
        "--session-trace-log",
        default=False,
        action=argparse.BooleanOptionalAction,
        help="Emit structured session_trace logs for recognition session transitions",
    )
    p.add_argument("--ssl-certfile", default=None, help="Path to TLS certificate file (enables HTTPS/WSS)")
    p.add_argument("--ssl-keyfile", default=None, help="Path to TLS private key file")
    p.add_argument("--log-level", default="info", choices=["critical", "error", "warning", "info", "debug"])
    return p.parse_args()


def main() -> None:
    load_dotenv()
    try:
        staged_key = _stage_google_credentials(
            os.environ,
            Path(os.environ.get("VOXRELAY_CREDENTIALS_DIR") or tempfile.gettempdir()),
        )
    except (ValueError, OSError) as exc:
        logging.basicConfig(level=logging.ERROR)
        logger.error("credential staging failed: %s", exc)
        raise SystemExit(2) from exc

    args = parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    key_path = args.google_key_path or staged_key

    try:
        _assert_port_bindable(args.host, args.port)
    except RuntimeError as exc:
        logger.error("startup guard failed: %s", exc)
        raise SystemExit(2) from exc

    backend = GoogleSpeechBackend(key_path=key_path)
    translator = _build_translator(args, key_path)
    app = _create_app(args, backend, translator=translator)

    logger.info("caption relay listening on %s:%d", args.host, args.port)
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        ws_ping_interval=args.ping_interval_sec,
        ssl_certfile=args.ssl_certfile,
        ssl_keyfile=args.ssl_keyfile,
    )


if __name__ == "__main__":
    main()
