# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol


@dataclass(frozen=True)
class StreamConfig:
    language_code: str
    sample_rate_hz: int = 16000
    encoding: str = "LINEAR16"
    interim_results: bool = True
    automatic_punctuation: bool = True
    enhanced: bool = True
    model: str = "latest_short"


@dataclass(frozen=True)
class RecognitionEvent:
    text: str
    is_final: bool
    received_at: float = 0.0


class TranscriptionStream(Protocol):
    """
    One live recognition stream.

    ``events()`` yields results in backend order and ends (or raises) when the
    backend closes the stream.
    """

    @property
    def writable(self) -> bool: ...

    def write(self, chunk: bytes) -> None: ...

    def events(self) -> AsyncIterator[RecognitionEvent]: ...

    async def close(self) -> None: ...


class TranscriptionBackend(Protocol):
    async def open_stream(self, config: StreamConfig) -> TranscriptionStream: ...


class Translator(Protocol):
    def translate(
        self,
        text: str,
        source_language: Optional[str] = None,
        target_language: Optional[str] = None,
    ) -> str: ...
