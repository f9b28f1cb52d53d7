# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class PacingDecision:
    accept: bool
    reason: str
    since_last_ms: float


class PacingFilter:
    """
    Throttle interim results and suppress repeated text for one recognition stream.

    Interims are dropped until ``min_interval_ms`` has passed since the last
    accepted result. Finals skip that throttle. Any result repeating the last
    accepted text inside ``duplicate_window_ms`` is dropped; after the window a
    repeat is a new utterance and goes through.
    """

    def __init__(self, min_interval_ms: float = 800.0, duplicate_window_ms: float = 1500.0) -> None:
        self.min_interval_ms = max(0.0, float(min_interval_ms))
        self.duplicate_window_ms = max(0.0, float(duplicate_window_ms))
        self.last_text = ""
        self.last_accepted_ms: Optional[float] = None

    def reset(self) -> None:
        self.last_text = ""
        self.last_accepted_ms = None

    def evaluate(self, text: str, is_final: bool, now_ms: float) -> PacingDecision:
        cur = str(text or "")
        now = float(now_ms)
        if not cur.strip():
            return PacingDecision(accept=False, reason="empty", since_last_ms=0.0)

        if self.last_accepted_ms is None:
            self._accept(cur, now)
            return PacingDecision(accept=True, reason="first", since_last_ms=0.0)

        since = max(0.0, now - self.last_accepted_ms)
        if not is_final and since < self.min_interval_ms:
            return PacingDecision(accept=False, reason="interval", since_last_ms=since)
        if cur == self.last_text and since < self.duplicate_window_ms:
            return PacingDecision(accept=False, reason="duplicate", since_last_ms=since)

        self._accept(cur, now)
        return PacingDecision(accept=True, reason="final" if is_final else "interim", since_last_ms=since)

    def _accept(self, text: str, now_ms: float) -> None:
        self.last_text = text
        self.last_accepted_ms = now_ms
