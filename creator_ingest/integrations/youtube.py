"""
YouTube collector backed by the YouTube Data API v3.

Channel resolution accepts ``/channel/UC...``, ``/@handle`` and legacy
``/user/name`` URLs. Videos are read from the channel's uploads playlist and
enriched with statistics in one batched ``videos.list`` call.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from creator_ingest.models.db.enums import MediaType
from creator_ingest.models.schemas.content import CandidateRecord, EngagementMetrics, MediaRef
from creator_ingest.utils.text import truncate
from creator_ingest.utils.time import parse_timestamp

from .base import FetchOptions, HttpCollector
from .errors import CollectorError, ProviderNotFoundError

API_BASE = "https://www.googleapis.com/youtube/v3"

_CHANNEL_RE = re.compile(r"/channel/(UC[\w-]{10,})")
_HANDLE_RE = re.compile(r"/@([\w.\-]+)")
_USER_RE = re.compile(r"/(?:user|c)/([\w.\-]+)")
_DURATION_RE = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")


def parse_duration(value: Optional[str]) -> Optional[int]:
    """ISO-8601 ``PT#H#M#S`` to seconds."""
    if not value:
        return None
    match = _DURATION_RE.fullmatch(value)
    if not match:
        return None
    hours, minutes, seconds = (int(g or 0) for g in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def _best_thumbnail(thumbnails: Dict[str, Any] | None) -> Optional[Dict[str, Any]]:
    if not thumbnails:
        return None
    for key in ("maxres", "standard", "high", "medium", "default"):
        thumb = thumbnails.get(key)
        if thumb and thumb.get("url"):
            return thumb
    return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class YouTubeCollector(HttpCollector):
    platform_name = "youtube"

    def __init__(self, api_key: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key

    async def _api(self, resource: str, **params: Any) -> Dict[str, Any]:
        params["key"] = self.api_key
        data = await self._get_json(f"{API_BASE}/{resource}", params=params)
        return data or {}

    async def resolve_channel_id(self, source_url: str) -> str:
        path = urlparse(source_url).path or source_url
        match = _CHANNEL_RE.search(path)
        if match:
            return match.group(1)

        handle = _HANDLE_RE.search(path)
        user = _USER_RE.search(path)
        if handle:
            query = {"forHandle": f"@{handle.group(1)}"}
        elif user:
            query = {"forUsername": user.group(1)}
        else:
            raise CollectorError(f"Unrecognised YouTube channel URL: {source_url}")

        data = await self._api("channels", part="id", **query)
        items = data.get("items") or []
        if not items:
            raise ProviderNotFoundError(f"YouTube channel not found for {source_url}", status=404)
        return items[0]["id"]

    @staticmethod
    def uploads_playlist_id(channel_id: str) -> str:
        # Every channel's uploads playlist shares its id suffix.
        return "UU" + channel_id[2:]

    def normalize_video(self, video: Dict[str, Any]) -> CandidateRecord:
        snippet = video.get("snippet") or {}
        stats = video.get("statistics") or {}
        details = video.get("contentDetails") or {}
        video_id = video.get("id") or ""
        thumb = _best_thumbnail(snippet.get("thumbnails"))
        watch_url = f"https://www.youtube.com/watch?v={video_id}"

        media = [
            MediaRef(
                url=watch_url,
                type=MediaType.VIDEO,
                thumbnail_url=thumb.get("url") if thumb else None,
                width=thumb.get("width") if thumb else None,
                height=thumb.get("height") if thumb else None,
                duration=parse_duration(details.get("duration")),
            )
        ] if video_id else []

        published: Optional[datetime] = parse_timestamp(snippet.get("publishedAt"))
        return CandidateRecord(
            platform=self.platform_name,
            platform_content_id=video_id,
            url=watch_url if video_id else "",
            title=truncate(snippet.get("title"), 500),
            description=snippet.get("description") or None,
            content_body=snippet.get("description") or None,
            thumbnail_url=thumb.get("url") if thumb else None,
            published_at=published,
            media_urls=media,
            engagement_metrics=EngagementMetrics(
                views=_as_int(stats.get("viewCount")),
                likes=_as_int(stats.get("likeCount")),
                comments=_as_int(stats.get("commentCount")),
            ),
        )

    async def fetch(self, source_url: str, options: FetchOptions) -> list[CandidateRecord]:
        channel_id = await self.resolve_channel_id(source_url)
        playlist = await self._api(
            "playlistItems",
            part="contentDetails",
            playlistId=self.uploads_playlist_id(channel_id),
            maxResults=min(max(options.max_results, 1), 50),
        )
        video_ids = [
            item["contentDetails"]["videoId"]
            for item in playlist.get("items") or []
            if (item.get("contentDetails") or {}).get("videoId")
        ]
        if not video_ids:
            self.logger.info("No uploads found", channel_id=channel_id)
            return []

        videos = await self._api(
            "videos",
            part="snippet,contentDetails,statistics",
            id=",".join(video_ids),
        )
        records = [self.normalize_video(v) for v in videos.get("items") or []]
        self.logger.info("YouTube videos fetched", channel_id=channel_id, count=len(records))
        return records


__all__ = ["YouTubeCollector", "parse_duration"]
