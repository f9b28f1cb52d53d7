import asyncio
import logging
from pathlib import Path

from tools.session_trace_report import _group_rows, _parse_session_rows, _summarize
from voxrelay.streaming.registry import Participant
from voxrelay.streaming.session import RecognitionSession


def test_parse_session_rows_filters_and_parses(tmp_path: Path):
    p = tmp_path / "relay.log"
    p.write_text(
        "\n".join(
            [
                '12:00:00 [INFO] voxrelay.streaming.session - session_trace {"topic":"session","event":"start","participant_id":"A","seq":1}',
                '12:00:00 [INFO] voxrelay.streaming.session - session_trace {"topic":"other","event":"x"}',
                "12:00:01 [INFO] voxrelay.streaming.session - session_trace {broken",
                "12:00:01 [INFO] voxrelay.cli.relay_ws - ws open peer=1.2.3.4:5 call=c1 user=A",
            ]
        ),
        encoding="utf-8",
    )
    rows = _parse_session_rows(p)
    assert len(rows) == 1
    assert rows[0]["event"] == "start"


def test_summarize_groups_by_participant():
    rows = [
        {"topic": "session", "event": "start", "participant_id": "A", "call_id": "c1", "state": "starting", "seq": 1},
        {"topic": "session", "event": "live", "participant_id": "A", "call_id": "c1", "state": "live", "seq": 2},
        {"topic": "session", "event": "restart_scheduled", "reason": "error", "participant_id": "A", "call_id": "c1", "state": "restarting", "seq": 3, "ts_ms": 1000},
        {"topic": "session", "event": "reopen_failed", "reason": "error", "participant_id": "A", "call_id": "c1", "state": "restarting", "seq": 4},
        {"topic": "session", "event": "stream_recreated", "reason": "error", "participant_id": "A", "call_id": "c1", "state": "live", "seq": 5, "ts_ms": 2250},
        {"topic": "session", "event": "restart_scheduled", "reason": "idle", "participant_id": "B", "call_id": "c1", "state": "restarting", "seq": 1},
    ]
    out = _summarize(_group_rows(rows))
    assert "participants=2" in out
    assert "participant=A call=c1 rows=5" in out
    assert "restarts=1 recreated=1 reopen_failed=1 abandoned=0" in out
    assert "reasons=error:1 max_gap_ms=1250 last_state=live" in out
    assert "reasons=idle:1 max_gap_ms=- last_state=restarting" in out


class _EndingStream:
    def __init__(self):
        self.closed = False

    @property
    def writable(self):
        return not self.closed

    def write(self, chunk):
        pass

    async def events(self):
        return
        yield

    async def close(self):
        self.closed = True


class _Backend:
    def __init__(self):
        self.opens = 0

    async def open_stream(self, config):
        self.opens += 1
        return _EndingStream()


def test_session_trace_log_round_trips_through_report(tmp_path: Path, caplog):
    async def _on_utterance(participant, text, is_final):
        pass

    async def scenario():
        participant = Participant("A", "c1", "es", "en")
        session = RecognitionSession(
            participant,
            _Backend(),
            _on_utterance,
            is_connected=lambda: session.restart_count < 1,
            restart_delay_sec=0.01,
            idle_check_sec=0,
            trace_log=True,
        )
        await session.start()
        await asyncio.sleep(0.1)
        await session.stop()

    with caplog.at_level(logging.INFO, logger="voxrelay.streaming.session"):
        asyncio.run(scenario())

    log_path = tmp_path / "relay.log"
    log_path.write_text("\n".join(r.getMessage() for r in caplog.records), encoding="utf-8")
    rows = _parse_session_rows(log_path)
    events = [r["event"] for r in rows]
    assert events[:3] == ["start", "live", "restart_scheduled"]
    assert "restart_abandoned" in events
    assert events[-1] == "stop"

    out = _summarize(_group_rows(rows))
    assert "participant=A call=c1" in out
    assert "reasons=end:1" in out
