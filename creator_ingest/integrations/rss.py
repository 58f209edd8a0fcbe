"""
RSS / Atom feed collector (also used for plain websites exposing a feed).
"""
from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Any, Optional

import feedparser

from creator_ingest.models.schemas.content import CandidateRecord, MediaRef
from creator_ingest.models.db.enums import MediaType
from creator_ingest.utils.text import strip_html, truncate

from .base import FetchOptions, HttpCollector
from .errors import CollectorError

_TITLE_LIMIT = 500


def _entry_published(entry: Any) -> Optional[datetime]:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if not parsed:
        return None
    return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)


def _entry_body(entry: Any) -> Optional[str]:
    contents = entry.get("content") or []
    for block in contents:
        value = block.get("value") if isinstance(block, dict) else None
        if value:
            return value
    return entry.get("summary") or None


def _entry_media(entry: Any) -> tuple[list[MediaRef], Optional[str]]:
    media: list[MediaRef] = []
    thumbnail: Optional[str] = None

    for enclosure in entry.get("enclosures") or []:
        href = enclosure.get("href") or enclosure.get("url")
        if not href:
            continue
        mime = (enclosure.get("type") or "").lower()
        if mime.startswith("image/"):
            kind = MediaType.IMAGE
            thumbnail = thumbnail or href
        elif mime.startswith("video/"):
            kind = MediaType.VIDEO
        elif mime.startswith("audio/"):
            kind = MediaType.AUDIO
        else:
            kind = MediaType.DOCUMENT
        media.append(MediaRef(url=href, type=kind))

    for item in entry.get("media_content") or []:
        url = item.get("url")
        if url and not any(m.url == url for m in media):
            kind = MediaType.VIDEO if (item.get("medium") == "video") else MediaType.IMAGE
            media.append(MediaRef(url=url, type=kind))
            if kind == MediaType.IMAGE:
                thumbnail = thumbnail or url

    for item in entry.get("media_thumbnail") or []:
        if item.get("url"):
            thumbnail = thumbnail or item["url"]

    return media, thumbnail


class RssCollector(HttpCollector):
    """Collector for RSS / Atom feeds. ``platform_name`` is set per instance."""

    def __init__(self, platform_name: str = "rss", **kwargs: Any) -> None:
        self.platform_name = platform_name
        super().__init__(**kwargs)

    def normalize_entry(self, entry: Any, feed_url: str) -> CandidateRecord:
        link = entry.get("link") or ""
        guid = entry.get("id") or entry.get("guid") or link
        body = _entry_body(entry)
        summary = entry.get("summary")
        media, thumbnail = _entry_media(entry)
        title = strip_html(entry.get("title") or "") or None
        return CandidateRecord(
            platform=self.platform_name,
            platform_content_id=str(guid or ""),
            url=link or feed_url,
            title=truncate(title, _TITLE_LIMIT) if title else None,
            description=strip_html(summary) if summary else None,
            content_body=strip_html(body) if body else None,
            thumbnail_url=thumbnail,
            published_at=_entry_published(entry),
            media_urls=media,
        )

    def parse(self, raw: str, feed_url: str, options: FetchOptions) -> list[CandidateRecord]:
        parsed = feedparser.parse(raw)
        if parsed.get("bozo") and not parsed.get("entries"):
            reason = parsed.get("bozo_exception")
            raise CollectorError(f"Unparseable feed at {feed_url}: {reason}")
        entries = list(parsed.get("entries") or [])[: max(0, options.max_results)]
        return [self.normalize_entry(entry, feed_url) for entry in entries]

    async def fetch(self, source_url: str, options: FetchOptions) -> list[CandidateRecord]:
        self.logger.info("Fetching feed", url=source_url, max_results=options.max_results)
        raw = await self._get_text(
            source_url,
            headers={"Accept": "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8"},
        )
        records = self.parse(raw, source_url, options)
        self.logger.info("Feed fetched", url=source_url, entries=len(records))
        return records


__all__ = ["RssCollector"]
