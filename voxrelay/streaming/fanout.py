# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from voxrelay.streaming.backend import Translator
from voxrelay.streaming.languages import same_language, short_language_code
from voxrelay.streaming.registry import CallRegistry, Participant

logger = logging.getLogger(__name__)


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class TranslatedPayload:
    speaker_id: str
    original_text: str
    translated_text: str
    source_language: str
    target_language: str
    timestamp: str
    is_final: bool
    is_self: bool

    def to_message(self) -> Dict[str, Any]:
        return {
            "userID": self.speaker_id,
            "texto_original": self.original_text,
            "traduccion": self.translated_text,
            "sourceLang": self.source_language,
            "targetLang": self.target_language,
            "timestamp": self.timestamp,
            "isFinal": bool(self.is_final),
            "isSelf": bool(self.is_self),
        }


class TranslationFanout:
    """
    Translate one utterance per recipient language and push it to every call member.

    A translation failure only skips the recipients waiting on that language,
    a send failure only skips that recipient.
    """

    def __init__(self, registry: CallRegistry, translator: Optional[Translator] = None) -> None:
        self.registry = registry
        self.translator = translator

    async def _translate(self, text: str, source_language: str, target_language: str) -> str:
        if self.translator is None or same_language(source_language, target_language):
            return text
        out = await asyncio.to_thread(
            self.translator.translate,
            text,
            source_language=source_language,
            target_language=target_language,
        )
        return str(out or "").strip()

    async def dispatch(
        self,
        call_id: str,
        speaker: Participant,
        text: str,
        is_final: bool,
    ) -> List[TranslatedPayload]:
        recipients = self.registry.members(call_id)
        if not recipients:
            return []

        source_short = short_language_code(speaker.source_language)
        targets: Dict[str, List[Participant]] = {}
        for member in recipients:
            targets.setdefault(member.translation_language, []).append(member)

        languages = list(targets.keys())
        t0 = time.monotonic()
        results = await asyncio.gather(
            *(self._translate(text, source_short, lang) for lang in languages),
            return_exceptions=True,
        )
        latency = time.monotonic() - t0
        if latency >= 1.0:
            logger.info(
                "translation latency speaker=%s call=%s sec=%.2f languages=%d",
                speaker.participant_id,
                call_id,
                latency,
                len(languages),
            )

        timestamp = _iso_now()
        deliveries: List[TranslatedPayload] = []
        sends = []
        for lang, result in zip(languages, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "translation failed speaker=%s call=%s target=%s err=%s",
                    speaker.participant_id,
                    call_id,
                    lang,
                    result,
                )
                continue
            for member in targets[lang]:
                payload = TranslatedPayload(
                    speaker_id=speaker.participant_id,
                    original_text=text,
                    translated_text=result,
                    source_language=speaker.recognition_language,
                    target_language=lang,
                    timestamp=timestamp,
                    is_final=is_final,
                    is_self=member is speaker,
                )
                deliveries.append(payload)
                sends.append(self._deliver(member, payload))

        sent = await asyncio.gather(*sends)
        delivered = [p for p, ok in zip(deliveries, sent) if ok]

        if is_final:
            own = next((p for p in delivered if p.is_self), None)
            logger.info(
                "final %s: %s -> %s",
                speaker.participant_id,
                text,
                own.translated_text if own is not None else "",
            )
        return delivered

    async def _deliver(self, member: Participant, payload: TranslatedPayload) -> bool:
        conn = member.connection
        if conn is None or not conn.open:
            return False
        try:
            await conn.send_json(payload.to_message())
        except Exception as e:
            logger.warning("send failed participant=%s err=%s", member.participant_id, e)
            return False
        return True
