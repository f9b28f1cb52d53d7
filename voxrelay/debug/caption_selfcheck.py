from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple


def _parse_ts(raw: Any) -> Optional[datetime]:
    text = str(raw or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _is_caption(msg: Dict[str, Any]) -> bool:
    return "texto_original" in msg and "userID" in msg


@dataclass
class CaptionSelfcheckResult:
    partial_count: int
    final_count: int
    self_count: int
    peer_count: int
    speakers: List[str]
    max_chars: int
    duplicate_captions: int
    empty_translations: int
    out_of_order: int
    examples: List[Dict[str, Any]] = field(default_factory=list)


def analyze_caption_events(events: Iterable[Dict[str, Any]]) -> CaptionSelfcheckResult:
    """
    Check the caption stream one client received.

    Duplicates are consecutive captions from the same speaker with identical
    text and final flag; out-of-order means a speaker's timestamp went backwards.
    """
    partial_count = 0
    final_count = 0
    self_count = 0
    peer_count = 0
    max_chars = 0
    duplicates = 0
    empty = 0
    out_of_order = 0
    speakers: List[str] = []
    last_by_speaker: Dict[str, Tuple[str, bool]] = {}
    last_ts_by_speaker: Dict[str, datetime] = {}
    examples: List[Dict[str, Any]] = []

    for idx, msg in enumerate(events):
        if not isinstance(msg, dict) or not _is_caption(msg):
            continue

        speaker = str(msg.get("userID", "") or "")
        text = str(msg.get("texto_original", "") or "").strip()
        translation = str(msg.get("traduccion", "") or "").strip()
        is_final = bool(msg.get("isFinal", False))
        if speaker not in speakers:
            speakers.append(speaker)

        if is_final:
            final_count += 1
        else:
            partial_count += 1
        if bool(msg.get("isSelf", False)):
            self_count += 1
        else:
            peer_count += 1
        max_chars = max(max_chars, len(text))

        if not translation:
            empty += 1

        prev = last_by_speaker.get(speaker)
        if prev is not None and prev == (text, is_final):
            duplicates += 1
            if len(examples) < 8:
                examples.append({"kind": "duplicate", "index": idx, "speaker": speaker, "text": text[:160]})
        last_by_speaker[speaker] = (text, is_final)

        ts = _parse_ts(msg.get("timestamp"))
        if ts is not None:
            prev_ts = last_ts_by_speaker.get(speaker)
            if prev_ts is not None and ts < prev_ts:
                out_of_order += 1
                if len(examples) < 8:
                    examples.append(
                        {
                            "kind": "out_of_order",
                            "index": idx,
                            "speaker": speaker,
                            "timestamp": str(msg.get("timestamp")),
                        }
                    )
            last_ts_by_speaker[speaker] = ts

    return CaptionSelfcheckResult(
        partial_count=partial_count,
        final_count=final_count,
        self_count=self_count,
        peer_count=peer_count,
        speakers=speakers,
        max_chars=max_chars,
        duplicate_captions=duplicates,
        empty_translations=empty,
        out_of_order=out_of_order,
        examples=examples,
    )


def missing_fanout(
    speaker_id: str,
    speaker_events: Iterable[Dict[str, Any]],
    listener_events: Iterable[Dict[str, Any]],
) -> List[str]:
    """Final texts the speaker received for itself that never reached the listener."""
    own_finals = [
        str(m.get("texto_original", "") or "").strip()
        for m in speaker_events
        if isinstance(m, dict)
        and _is_caption(m)
        and bool(m.get("isSelf", False))
        and bool(m.get("isFinal", False))
    ]
    heard = {
        str(m.get("texto_original", "") or "").strip()
        for m in listener_events
        if isinstance(m, dict)
        and _is_caption(m)
        and str(m.get("userID", "")) == speaker_id
        and bool(m.get("isFinal", False))
    }
    return [text for text in own_finals if text not in heard]


def summarize_result(result: CaptionSelfcheckResult) -> str:
    lines = [
        f"partials={result.partial_count}",
        f"finals={result.final_count}",
        f"self={result.self_count}",
        f"peer={result.peer_count}",
        f"speakers={','.join(result.speakers)}",
        f"max_chars={result.max_chars}",
        f"duplicate_captions={result.duplicate_captions}",
        f"empty_translations={result.empty_translations}",
        f"out_of_order={result.out_of_order}",
    ]
    if result.examples:
        lines.append("examples:")
        for ex in result.examples:
            kind = ex.get("kind", "event")
            lines.append(f"  - {kind}: {ex}")
    return "\n".join(lines)
