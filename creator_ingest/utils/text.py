"""Text helpers used when normalizing collected content."""
from __future__ import annotations

import hashlib
import html
import math
import re

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

WORDS_PER_MINUTE = 200


def strip_html(value: str | None) -> str:
    if not value:
        return ""
    return _WS_RE.sub(" ", html.unescape(_TAG_RE.sub(" ", value))).strip()


def word_count(*parts: str | None) -> int:
    text = " ".join(strip_html(p) for p in parts if p)
    return len(text.split()) if text else 0


def reading_time_minutes(words: int) -> int:
    if words <= 0:
        return 0
    return max(1, math.ceil(words / WORDS_PER_MINUTE))


def content_hash(title: str | None, body: str | None) -> str:
    """Stable hash of normalized title + body, used to group cross-platform duplicates."""
    normalized = " ".join(
        _WS_RE.sub(" ", strip_html(part).lower()).strip() for part in (title, body)
    ).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def truncate(value: str | None, limit: int) -> str | None:
    if value is None or len(value) <= limit:
        return value
    return value[: max(0, limit - 3)].rstrip() + "..."


__all__ = ["strip_html", "word_count", "reading_time_minutes", "content_hash", "truncate", "WORDS_PER_MINUTE"]
