# coding=utf-8
from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from voxrelay.streaming.backend import TranscriptionBackend
from voxrelay.streaming.fanout import TranslationFanout
from voxrelay.streaming.registry import CallRegistry, Participant, ParticipantConnection
from voxrelay.streaming.session import RecognitionSession

logger = logging.getLogger(__name__)

DEFAULT_CALL_ID = "default"
DEFAULT_SOURCE_LANGUAGE = "es"
DEFAULT_TARGET_LANGUAGE = "en"


@dataclass(frozen=True)
class ConnectionParams:
    call_id: str
    participant_id: str
    source_language: str
    target_language: str


def _generate_participant_id() -> str:
    # Only ids the client supplied may collide and evict; generated ones never do.
    return f"u_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def parse_connection_params(query: Mapping[str, Any]) -> ConnectionParams:
    def _get(name: str) -> str:
        return str(query.get(name) or "").strip()

    return ConnectionParams(
        call_id=_get("callID") or DEFAULT_CALL_ID,
        participant_id=_get("userID") or _generate_participant_id(),
        source_language=_get("sourceLang") or DEFAULT_SOURCE_LANGUAGE,
        target_language=_get("targetLang") or DEFAULT_TARGET_LANGUAGE,
    )


def _parse_control_message(text: str) -> Optional[Dict[str, Any]]:
    try:
        payload = json.loads(text)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


class ConnectionHandler:
    """
    Bridge one transport connection to one participant and its recognition session.
    """

    def __init__(
        self,
        params: ConnectionParams,
        connection: ParticipantConnection,
        registry: CallRegistry,
        fanout: TranslationFanout,
        backend: TranscriptionBackend,
        session_factory: Optional[Callable[..., RecognitionSession]] = None,
        **session_options: Any,
    ) -> None:
        self.params = params
        self.connection = connection
        self.registry = registry
        self.fanout = fanout
        self.backend = backend
        self.session_factory = session_factory or RecognitionSession
        self.session_options = session_options
        self.participant = Participant(
            participant_id=params.participant_id,
            call_id=params.call_id,
            source_language=params.source_language,
            target_language=params.target_language,
            connection=connection,
        )
        self.session: Optional[RecognitionSession] = None
        self.closed = False
        self.binary_frames = 0
        self.dropped_frames = 0
        self.text_frames = 0

    async def _on_utterance(self, speaker: Participant, text: str, is_final: bool) -> None:
        await self.fanout.dispatch(speaker.call_id, speaker, text, is_final)

    async def on_connect(self) -> RecognitionSession:
        participant = self.participant
        logger.info(
            "participant joined id=%s call=%s source=%s target=%s",
            participant.participant_id,
            participant.call_id,
            participant.source_language,
            participant.target_language,
        )
        evicted = self.registry.join(participant.call_id, participant)
        if evicted is not None:
            await _teardown_participant(evicted)

        self.session = self.session_factory(
            participant,
            self.backend,
            self._on_utterance,
            is_connected=lambda: self.registry.is_registered(participant),
            **self.session_options,
        )
        participant.session = self.session
        await self.session.start()
        return self.session

    def on_binary(self, chunk: bytes) -> bool:
        self.binary_frames += 1
        session = self.session
        if self.closed or session is None or not chunk or len(chunk) % 2 != 0:
            self.dropped_frames += 1
            return False
        if not session.write_audio(bytes(chunk)):
            self.dropped_frames += 1
            return False
        return True

    async def on_text(self, text: str) -> None:
        self.text_frames += 1
        payload = _parse_control_message(text)
        if payload is None:
            return
        if str(payload.get("type", "")).lower() == "ping" and self.connection.open:
            try:
                await self.connection.send_json({"type": "pong"})
            except Exception as e:
                logger.debug("pong failed participant=%s err=%s", self.participant.participant_id, e)

    async def on_disconnect(self, reason: str = "close") -> None:
        if self.closed:
            return
        self.closed = True
        participant = self.participant
        # Leave before the first await so a pending restart sees the participant gone.
        self.registry.leave(participant.call_id, participant.participant_id, expected=participant)
        if self.session is not None:
            try:
                await self.session.stop()
            except Exception as e:
                logger.warning("session stop failed participant=%s err=%s", participant.participant_id, e)
        logger.info(
            "participant left id=%s call=%s reason=%s frames=%d dropped=%d",
            participant.participant_id,
            participant.call_id,
            reason,
            self.binary_frames,
            self.dropped_frames,
        )


async def _teardown_participant(participant: Participant) -> None:
    session = participant.session
    if session is not None:
        try:
            await session.stop()
        except Exception as e:
            logger.warning("session stop failed participant=%s err=%s", participant.participant_id, e)
    conn = participant.connection
    if conn is not None and conn.open:
        try:
            await conn.close(code=4000)
        except Exception as e:
            logger.warning("close failed participant=%s err=%s", participant.participant_id, e)
