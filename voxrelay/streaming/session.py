# coding=utf-8
from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import suppress
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from voxrelay.streaming.backend import RecognitionEvent, StreamConfig, TranscriptionBackend, TranscriptionStream
from voxrelay.streaming.pacing import PacingFilter
from voxrelay.streaming.registry import Participant

logger = logging.getLogger(__name__)

UtteranceCallback = Callable[[Participant, str, bool], Awaitable[Any]]


class SessionState(str, Enum):
    STARTING = "starting"
    LIVE = "live"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class RecognitionSession:
    """
    Owns the transcription stream of one participant and hides its instability.

    States:
    - STARTING: first stream is being opened, audio is dropped
    - LIVE: stream installed, audio forwarded, events consumed in order
    - RESTARTING: old stream torn down, new one pending after a fixed delay
    - STOPPED: participant gone, every task cancelled

    The stream handle and the state are swapped together without awaiting in
    between, so audio is never written to a stream that is being replaced.
    A restart waits for an utterance already being fanned out before it
    cancels the old consumer.
    """

    def __init__(
        self,
        participant: Participant,
        backend: TranscriptionBackend,
        on_utterance: UtteranceCallback,
        *,
        is_connected: Optional[Callable[[], bool]] = None,
        min_interval_ms: float = 800.0,
        duplicate_window_ms: float = 1500.0,
        restart_delay_sec: float = 1.0,
        idle_restart_delay_sec: float = 0.5,
        idle_check_sec: float = 8.0,
        idle_timeout_sec: float = 20.0,
        stt_model: str = "latest_short",
        clock: Callable[[], float] = time.monotonic,
        trace_log: bool = False,
    ) -> None:
        self.participant = participant
        self.backend = backend
        self.on_utterance = on_utterance
        self._is_connected = is_connected
        self.restart_delay_sec = max(0.0, float(restart_delay_sec))
        self.idle_restart_delay_sec = max(0.0, float(idle_restart_delay_sec))
        self.idle_check_sec = max(0.0, float(idle_check_sec))
        self.idle_timeout_sec = max(0.0, float(idle_timeout_sec))
        self.stt_model = str(stt_model or "latest_short")
        self._clock = clock
        self.trace_log = bool(trace_log)

        self.state = SessionState.STARTING
        self.stream: Optional[TranscriptionStream] = None
        self.pacing = PacingFilter(min_interval_ms=min_interval_ms, duplicate_window_ms=duplicate_window_ms)
        self.last_activity_at = self._clock()
        self.restart_count = 0
        self.accepted_events = 0
        self.dropped_events = 0
        self._consumer_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._trace_seq = 0
        self._dispatching = False

    @property
    def participant_id(self) -> str:
        return self.participant.participant_id

    @property
    def restarting(self) -> bool:
        return self.state is SessionState.RESTARTING

    @property
    def stopped(self) -> bool:
        return self.state is SessionState.STOPPED

    def _connected(self) -> bool:
        if self._is_connected is None:
            return True
        return bool(self._is_connected())

    def _config(self) -> StreamConfig:
        return StreamConfig(
            language_code=self.participant.recognition_language,
            interim_results=True,
            automatic_punctuation=True,
            enhanced=True,
            model=self.stt_model,
        )

    def _trace(self, event: str, **fields: Any) -> None:
        if not self.trace_log:
            return
        self._trace_seq += 1
        row = {
            "topic": "session",
            "event": event,
            "participant_id": self.participant_id,
            "call_id": self.participant.call_id,
            "state": self.state.value,
            "restart_count": self.restart_count,
            "seq": self._trace_seq,
            "ts_ms": int(time.monotonic() * 1000),
        }
        row.update(fields)
        try:
            logger.info("session_trace %s", json.dumps(row, ensure_ascii=False, separators=(",", ":")))
        except (TypeError, ValueError):
            logger.info("session_trace %s", row)

    async def start(self) -> "RecognitionSession":
        if self.state is not SessionState.STARTING:
            return self
        config = self._config()
        logger.info(
            "stt open participant=%s call=%s language=%s target=%s",
            self.participant_id,
            self.participant.call_id,
            config.language_code,
            self.participant.translation_language,
        )
        self._trace("start", language=config.language_code)
        try:
            stream = await self.backend.open_stream(config)
        except Exception as e:
            logger.warning("stt open failed participant=%s err=%s", self.participant_id, e)
            self._schedule_restart("open_failed", self.restart_delay_sec)
        else:
            if not self._install(stream):
                await self._close_stream(stream)

        if self._idle_task is None and self.idle_check_sec > 0 and self.state is not SessionState.STOPPED:
            self._idle_task = asyncio.create_task(self._idle_monitor())
        return self

    def _install(self, stream: TranscriptionStream) -> bool:
        if self.state is SessionState.STOPPED or not self._connected():
            return False
        self.stream = stream
        self.pacing.reset()
        self.last_activity_at = self._clock()
        self.state = SessionState.LIVE
        self._consumer_task = asyncio.create_task(self._consume(stream))
        self._trace("live")
        return True

    def write_audio(self, chunk: bytes) -> bool:
        if self.state is not SessionState.LIVE:
            return False
        stream = self.stream
        if stream is None or not stream.writable:
            return False
        self.last_activity_at = self._clock()
        try:
            stream.write(chunk)
        except Exception as e:
            logger.debug("audio dropped participant=%s err=%s", self.participant_id, e)
            return False
        return True

    async def _consume(self, stream: TranscriptionStream) -> None:
        reason = "end"
        try:
            async for event in stream.events():
                await self._on_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = "error"
            logger.warning("stt error participant=%s err=%s", self.participant_id, e)
        else:
            logger.info("stt stream ended participant=%s", self.participant_id)
        if stream is self.stream:
            self._schedule_restart(reason, self.restart_delay_sec)

    async def _on_event(self, event: RecognitionEvent) -> None:
        text = str(event.text or "").strip()
        if not text:
            return
        now = self._clock()
        self.last_activity_at = now
        decision = self.pacing.evaluate(text, bool(event.is_final), now * 1000.0)
        if not decision.accept:
            self.dropped_events += 1
            return
        self.accepted_events += 1
        self._dispatching = True
        try:
            await self.on_utterance(self.participant, text, bool(event.is_final))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("utterance dispatch failed participant=%s err=%s", self.participant_id, e)
        finally:
            self._dispatching = False

    def check_idle(self) -> bool:
        """Restart the stream when no audio or result arrived within ``idle_timeout_sec``."""
        if self.state is not SessionState.LIVE:
            return False
        idle = self._clock() - self.last_activity_at
        if idle <= self.idle_timeout_sec:
            return False
        logger.info("idle %ds participant=%s, recreating stream", int(idle), self.participant_id)
        return self._schedule_restart("idle", self.idle_restart_delay_sec)

    async def _idle_monitor(self) -> None:
        while self.state is not SessionState.STOPPED:
            await asyncio.sleep(self.idle_check_sec)
            self.check_idle()

    def _schedule_restart(self, reason: str, delay_sec: float) -> bool:
        if self.state in (SessionState.RESTARTING, SessionState.STOPPED):
            return False
        if not self._connected():
            logger.info("stt restart skipped participant=%s reason=%s (disconnected)", self.participant_id, reason)
            return False
        old_stream = self.stream
        old_consumer = self._consumer_task
        self.stream = None
        self._consumer_task = None
        self.state = SessionState.RESTARTING
        self.restart_count += 1
        self._trace("restart_scheduled", reason=reason, delay_ms=int(delay_sec * 1000))
        self._restart_task = asyncio.create_task(self._restart(old_stream, old_consumer, reason, delay_sec))
        return True

    async def _restart(
        self,
        old_stream: Optional[TranscriptionStream],
        old_consumer: Optional[asyncio.Task],
        reason: str,
        delay_sec: float,
    ) -> None:
        try:
            if old_consumer is not None and not old_consumer.done():
                # An accepted utterance finishes its fan-out before the old consumer goes.
                while self._dispatching and not old_consumer.done():
                    await asyncio.sleep(0.01)
                old_consumer.cancel()
                with suppress(asyncio.CancelledError, Exception):
                    await old_consumer
            await self._close_stream(old_stream)

            wait = float(delay_sec)
            attempts = 0
            while True:
                await asyncio.sleep(wait)
                if self.state is not SessionState.RESTARTING or not self._connected():
                    self._trace("restart_abandoned", reason=reason)
                    return
                attempts += 1
                try:
                    stream = await self.backend.open_stream(self._config())
                except Exception as e:
                    logger.warning(
                        "stt reopen failed participant=%s attempt=%d err=%s",
                        self.participant_id,
                        attempts,
                        e,
                    )
                    self._trace("reopen_failed", reason=reason, attempt=attempts, error=str(e))
                    wait = self.restart_delay_sec
                    continue

                if self.state is not SessionState.RESTARTING or not self._install(stream):
                    await self._close_stream(stream)
                    self._trace("restart_abandoned", reason=reason)
                    return
                logger.info(
                    "stt stream recreated participant=%s reason=%s attempts=%d",
                    self.participant_id,
                    reason,
                    attempts,
                )
                self._trace("stream_recreated", reason=reason, attempts=attempts)
                return
        finally:
            if self._restart_task is asyncio.current_task():
                self._restart_task = None

    async def _close_stream(self, stream: Optional[TranscriptionStream]) -> None:
        if stream is None:
            return
        try:
            await stream.close()
        except Exception as e:
            logger.warning("error closing stt stream participant=%s err=%s", self.participant_id, e)

    async def stop(self) -> None:
        if self.state is SessionState.STOPPED:
            return
        self.state = SessionState.STOPPED
        stream = self.stream
        self.stream = None
        current = asyncio.current_task()
        tasks: List[asyncio.Task] = []
        for task in (self._restart_task, self._idle_task, self._consumer_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                tasks.append(task)
        self._restart_task = None
        self._idle_task = None
        self._consumer_task = None
        for task in tasks:
            with suppress(asyncio.CancelledError, Exception):
                await task
        await self._close_stream(stream)
        self._trace(
            "stop",
            accepted_events=self.accepted_events,
            dropped_events=self.dropped_events,
        )
        logger.info(
            "stt closed participant=%s restarts=%d accepted=%d dropped=%d",
            self.participant_id,
            self.restart_count,
            self.accepted_events,
            self.dropped_events,
        )
