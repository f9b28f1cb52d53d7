# coding=utf-8

from .backend import RecognitionEvent, StreamConfig, TranscriptionBackend, TranscriptionStream, Translator
from .connection import ConnectionHandler, ConnectionParams, parse_connection_params
from .fanout import TranslatedPayload, TranslationFanout
from .languages import normalize_language_code, same_language, short_language_code
from .liveness import LivenessProber
from .pacing import PacingDecision, PacingFilter
from .registry import Call, CallRegistry, Participant, ParticipantConnection
from .session import RecognitionSession, SessionState

__all__ = [
    "Call",
    "CallRegistry",
    "ConnectionHandler",
    "ConnectionParams",
    "LivenessProber",
    "PacingDecision",
    "PacingFilter",
    "Participant",
    "ParticipantConnection",
    "RecognitionEvent",
    "RecognitionSession",
    "SessionState",
    "StreamConfig",
    "TranscriptionBackend",
    "TranscriptionStream",
    "TranslatedPayload",
    "TranslationFanout",
    "Translator",
    "normalize_language_code",
    "parse_connection_params",
    "same_language",
    "short_language_code",
]
