#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import re
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Dict, List


SESSION_TRACE_RE = re.compile(r"session_trace\s+(\{.*\})\s*$")


def _parse_session_rows(path: Path) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8", errors="replace") as f:
        for line in f:
            m = SESSION_TRACE_RE.search(line.strip())
            if not m:
                continue
            try:
                row = json.loads(m.group(1))
            except json.JSONDecodeError:
                continue
            if str(row.get("topic", "")) != "session":
                continue
            rows.append(row)
    return rows


def _group_rows(rows: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for row in rows:
        grouped[str(row.get("participant_id", "unknown"))].append(row)
    return grouped


def _restart_gaps_ms(items: List[Dict[str, Any]]) -> List[int]:
    """Time between each restart_scheduled row and the stream_recreated row that ends it."""
    gaps: List[int] = []
    pending = None
    for row in items:
        event = row.get("event")
        ts = row.get("ts_ms")
        if event == "restart_scheduled" and ts is not None:
            pending = int(ts)
        elif event == "stream_recreated" and ts is not None and pending is not None:
            gaps.append(max(0, int(ts) - pending))
            pending = None
        elif event in ("restart_abandoned", "stop"):
            pending = None
    return gaps


def _summarize(grouped: Dict[str, List[Dict[str, Any]]]) -> str:
    lines = [f"participants={len(grouped)}"]
    for participant_id in sorted(grouped):
        items = sorted(grouped[participant_id], key=lambda r: int(r.get("seq", 0) or 0))
        events = Counter(str(r.get("event", "")) for r in items)
        reasons = Counter(str(r.get("reason", "")) for r in items if r.get("event") == "restart_scheduled")
        call_id = str(items[0].get("call_id", "")) if items else ""
        last_state = str(items[-1].get("state", "")) if items else ""
        reason_text = ",".join(f"{k}:{v}" for k, v in sorted(reasons.items())) or "-"
        gaps = _restart_gaps_ms(items)
        gap_text = f"{max(gaps)}" if gaps else "-"
        lines.append(
            f"participant={participant_id} call={call_id} rows={len(items)} "
            f"restarts={events.get('restart_scheduled', 0)} recreated={events.get('stream_recreated', 0)} "
            f"reopen_failed={events.get('reopen_failed', 0)} abandoned={events.get('restart_abandoned', 0)} "
            f"reasons={reason_text} max_gap_ms={gap_text} last_state={last_state}"
        )
    return "\n".join(lines)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Summarize session_trace rows from a relay server log.")
    p.add_argument("log", help="server log file written with --session-trace-log")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    rows = _parse_session_rows(Path(args.log).expanduser())
    print(_summarize(_group_rows(rows)))


if __name__ == "__main__":
    main()
