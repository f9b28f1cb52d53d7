#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import time
import wave
from pathlib import Path
from typing import Any, Dict, List
from urllib.parse import urlencode

import websockets

from voxrelay.debug.caption_selfcheck import analyze_caption_events, missing_fanout, summarize_result

SAMPLE_RATE = 16000


def _load_pcm(path: Path) -> bytes:
    with wave.open(str(path), "rb") as wf:
        fmt = (wf.getnchannels(), wf.getsampwidth(), wf.getframerate())
        if fmt != (1, 2, SAMPLE_RATE):
            raise ValueError(f"need mono 16-bit {SAMPLE_RATE}Hz wav, got channels/width/rate={fmt}")
        return wf.readframes(wf.getnframes())


def _frames(pcm: bytes, chunk_ms: int) -> List[bytes]:
    step = max(1, SAMPLE_RATE * int(chunk_ms) // 1000) * 2
    return [pcm[i : i + step] for i in range(0, len(pcm), step)]


def _participant_url(base_url: str, call_id: str, user_id: str, source_lang: str, target_lang: str) -> str:
    query = {"callID": call_id, "userID": user_id, "sourceLang": source_lang, "targetLang": target_lang}
    sep = "&" if "?" in base_url else "?"
    return f"{base_url}{sep}{urlencode(query)}"


async def _collect(ws, sink: List[Dict[str, Any]]) -> None:
    async for raw in ws:
        if isinstance(raw, bytes):
            continue
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if isinstance(msg, dict):
            sink.append(msg)


async def _run_call(args: argparse.Namespace, pcm: bytes) -> Dict[str, List[Dict[str, Any]]]:
    """Connect the speaker and every listener to one call, stream the wav, return what each received."""
    stamp = int(time.time() * 1000)
    peers = {"speaker": (f"selfcheck_spk_{stamp}", args.source_lang, args.target_lang)}
    for idx, lang in enumerate(args.listener_lang or []):
        peers[f"listener{idx}:{lang}"] = (f"selfcheck_lst{idx}_{stamp}", args.source_lang, lang)

    received: Dict[str, List[Dict[str, Any]]] = {name: [] for name in peers}
    sockets = {}
    collectors = []
    try:
        for name, (user_id, src, tgt) in peers.items():
            url = _participant_url(args.ws_url, args.call_id, user_id, src, tgt)
            sockets[name] = await websockets.connect(url, max_size=4 * 1024 * 1024)
            collectors.append(asyncio.create_task(_collect(sockets[name], received[name])))

        pause = (args.chunk_ms / 1000.0) / max(0.01, float(args.realtime_factor))
        for frame in _frames(pcm, args.chunk_ms):
            await sockets["speaker"].send(frame)
            await asyncio.sleep(pause)
        await asyncio.sleep(max(0.0, float(args.drain_sec)))
    finally:
        for ws in sockets.values():
            await ws.close()
        await asyncio.gather(*collectors, return_exceptions=True)
    return received


def _dump(path: Path, received: Dict[str, List[Dict[str, Any]]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for name, events in received.items():
            for event in events:
                f.write(json.dumps({"peer": name, "event": event}, ensure_ascii=False) + "\n")


def _load(path: Path) -> Dict[str, List[Dict[str, Any]]]:
    received: Dict[str, List[Dict[str, Any]]] = {}
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            row = json.loads(line)
            received.setdefault(str(row.get("peer", "speaker")), []).append(row.get("event") or {})
    return received


def _report(received: Dict[str, List[Dict[str, Any]]]) -> str:
    lines = []
    speaker_events = received.get("speaker", [])
    speaker_ids = {str(m.get("userID")) for m in speaker_events if m.get("isSelf")}
    for name, events in received.items():
        lines.append(f"[{name}]")
        lines.append(summarize_result(analyze_caption_events(events)))
        if name != "speaker":
            for speaker_id in sorted(speaker_ids):
                missing = missing_fanout(speaker_id, speaker_events, events)
                lines.append(f"fanout_missing={len(missing)}")
                lines.extend(f"  - {text}" for text in missing[:8])
    return "\n".join(lines)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Stream a wav into one relay call and check the captions every peer receives.")
    p.add_argument("--ws-url", default="ws://127.0.0.1:3000/")
    p.add_argument("--wav", default="", help="mono 16-bit 16kHz wav spoken by the speaker")
    p.add_argument("--call-id", default="selfcheck")
    p.add_argument("--source-lang", default="es")
    p.add_argument("--target-lang", default="en", help="speaker's own caption language")
    p.add_argument(
        "--listener-lang",
        action="append",
        help="add a silent listener with this target language (repeatable)",
    )
    p.add_argument("--chunk-ms", type=int, default=100)
    p.add_argument("--realtime-factor", type=float, default=1.0, help="1.0=realtime, 2.0=2x faster")
    p.add_argument("--drain-sec", type=float, default=5.0, help="keep listening this long after the last chunk")
    p.add_argument("--events-jsonl", default="", help="save received events; or load them when --wav is omitted")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    events_path = Path(args.events_jsonl).expanduser() if args.events_jsonl else None

    if args.wav:
        received = asyncio.run(_run_call(args, _load_pcm(Path(args.wav).expanduser())))
        if events_path is not None:
            _dump(events_path, received)
    elif events_path is not None:
        received = _load(events_path)
    else:
        raise SystemExit("provide --wav for replay, or --events-jsonl to load existing events")

    print(_report(received))


if __name__ == "__main__":
    main()
