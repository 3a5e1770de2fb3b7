"""Text normalization helpers for scraped page fragments.

Deterministic and provider-agnostic: decoding of HTTP bodies, mojibake
repair, entity decoding and markup stripping used by the extraction layer.
"""

from __future__ import annotations

import html
import re
import unicodedata
from typing import Mapping, Optional

import ftfy
from charset_normalizer import from_bytes

__all__ = [
    "decode_bytes_auto",
    "minimal_text_fix",
    "decode_entities",
    "strip_tags",
    "excerpt",
]

_ZERO_WIDTH = {0x200B, 0x200C, 0x200D, 0x2060, 0xFEFF}
_REMOVE = {0x00, 0x0B, 0x0C}
_C1_TO_SPACE = {cp: " " for cp in range(0x80, 0xA0)}
_TRANSLATE = {**{cp: None for cp in _ZERO_WIDTH | _REMOVE}, **_C1_TO_SPACE}

_TAG_RE = re.compile(r"<[^>]*>")
_TEMPLATE_RE = re.compile(r"{{[^}]*}}")
_WS_RE = re.compile(r"\s+")


def decode_bytes_auto(body: bytes, headers: Optional[Mapping[str, str]] = None) -> str:
    """Decode HTTP bytes using charset header hints with charset-normalizer fallback."""

    if not body:
        return ""
    enc = None
    if headers:
        ct = headers.get("content-type", "") or headers.get("Content-Type", "")
        match = re.search(r"charset=([^\s;]+)", ct, re.I)
        if match:
            enc = match.group(1).strip(' "\'').lower()
    if enc:
        try:
            return body.decode(enc, errors="replace")
        except LookupError:
            pass
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError:
        pass
    result = from_bytes(body).best()
    if result is None:
        return body.decode("utf-8", errors="replace")
    return str(result)


def minimal_text_fix(text: str) -> str:
    """Fix mojibake and strip zero-width/control noise without collapsing structure."""

    if not text:
        return ""
    normalized = unicodedata.normalize("NFC", text)
    fixed = ftfy.fix_text(normalized, normalization="NFC")
    return fixed.translate(_TRANSLATE)


def decode_entities(text: Optional[str]) -> str:
    """Decode HTML entities (named and numeric) into Unicode characters."""

    if not text:
        return ""
    return html.unescape(text)


def strip_tags(fragment: str) -> str:
    """Replace markup with spaces, drop ``{{ }}`` template expressions, collapse whitespace."""

    text = _TAG_RE.sub(" ", fragment or "")
    text = _TEMPLATE_RE.sub("", text)
    return _WS_RE.sub(" ", text).strip()


def excerpt(text: str, limit: int = 150) -> str:
    """Bound ``text`` to ``limit`` characters, marking truncation with an ellipsis."""

    text = text or ""
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."
