# coding=utf-8
from __future__ import annotations

from typing import Any, Dict

DEFAULT_RECOGNITION_CODE = "en-US"
DEFAULT_SHORT_CODE = "en"

RECOGNITION_CODES: Dict[str, str] = {
    "es": "es-ES",
    "en": "en-US",
    "fr": "fr-FR",
    "de": "de-DE",
    "it": "it-IT",
    "pt": "pt-PT",
    "zh": "zh-CN",
    "ja": "ja-JP",
}


def normalize_language_code(code: Any) -> str:
    """
    Map a short code to the region-qualified form the recognizer expects.

    Codes that already carry a region (``pt-BR``) are passed through.
    """
    raw = str(code or "").strip()
    if "-" in raw and len(raw) > 2:
        return raw
    key = (raw or DEFAULT_SHORT_CODE).lower()
    return RECOGNITION_CODES.get(key, DEFAULT_RECOGNITION_CODE)


def short_language_code(code: Any) -> str:
    raw = str(code or "").strip()
    if not raw:
        return DEFAULT_SHORT_CODE
    if "-" in raw:
        return raw.split("-", 1)[0]
    return raw


def same_language(a: Any, b: Any) -> bool:
    return short_language_code(a).lower() == short_language_code(b).lower()
