# coding=utf-8
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from voxrelay.streaming.languages import normalize_language_code, short_language_code

logger = logging.getLogger(__name__)


class ParticipantConnection(Protocol):
    @property
    def open(self) -> bool: ...

    async def send_json(self, payload: Dict[str, Any]) -> None: ...

    async def ping(self) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass(eq=False)
class Participant:
    participant_id: str
    call_id: str
    source_language: str
    target_language: str
    connection: Optional[ParticipantConnection] = None
    session: Optional[Any] = None

    @property
    def recognition_language(self) -> str:
        return normalize_language_code(self.source_language)

    @property
    def translation_language(self) -> str:
        return short_language_code(self.target_language)


@dataclass(eq=False)
class Call:
    call_id: str
    members: Dict[str, Participant] = field(default_factory=dict)


class CallRegistry:
    """
    Call membership keyed by call id, plus a global participant index.

    Mutations never await, so a join or leave is complete before any other
    callback on the loop observes the registry.
    """

    def __init__(self) -> None:
        self._calls: Dict[str, Call] = {}
        self._participants: Dict[str, Participant] = {}

    @property
    def call_count(self) -> int:
        return len(self._calls)

    @property
    def participant_count(self) -> int:
        return len(self._participants)

    def join(self, call_id: str, participant: Participant) -> Optional[Participant]:
        """
        Add ``participant`` to ``call_id``; returns a displaced record that had the same id.
        """
        cid = str(call_id)
        participant.call_id = cid
        evicted = self._participants.get(participant.participant_id)
        if evicted is not None and evicted is not participant:
            self.leave(evicted.call_id, evicted.participant_id, expected=evicted)
            logger.info(
                "participant replaced id=%s old_call=%s new_call=%s",
                participant.participant_id,
                evicted.call_id,
                cid,
            )
        else:
            evicted = None

        call = self._calls.get(cid)
        if call is None:
            call = Call(call_id=cid)
            self._calls[cid] = call
            logger.info("call opened call=%s", cid)
        call.members[participant.participant_id] = participant
        self._participants[participant.participant_id] = participant
        return evicted

    def leave(self, call_id: str, participant_id: str, expected: Optional[Participant] = None) -> bool:
        cid = str(call_id)
        pid = str(participant_id)
        call = self._calls.get(cid)
        if call is None:
            return False
        current = call.members.get(pid)
        if current is None:
            return False
        if expected is not None and current is not expected:
            return False

        del call.members[pid]
        if self._participants.get(pid) is current:
            del self._participants[pid]
        if not call.members:
            del self._calls[cid]
            logger.info("call closed call=%s", cid)
        return True

    def members(self, call_id: str) -> List[Participant]:
        call = self._calls.get(str(call_id))
        if call is None:
            return []
        return list(call.members.values())

    def get(self, participant_id: str) -> Optional[Participant]:
        return self._participants.get(str(participant_id))

    def is_registered(self, participant: Participant) -> bool:
        return self._participants.get(participant.participant_id) is participant

    def has_call(self, call_id: str) -> bool:
        return str(call_id) in self._calls

    def participants(self) -> List[Participant]:
        return list(self._participants.values())

    def snapshot(self) -> Dict[str, List[str]]:
        return {cid: list(call.members.keys()) for cid, call in self._calls.items()}
