"""
Bright Data dataset provider for LinkedIn profile posts.

Collection is asynchronous on Bright Data's side: ``trigger_async`` starts a
discovery snapshot and returns its id, ``poll_status`` reports progress and
``download`` fetches the finished result set. Scheduling the polls is the
snapshot collector's job, not this class's.
"""
from __future__ import annotations

import json
from datetime import timedelta
from typing import Any, Dict, Optional

from creator_ingest.config import SNAPSHOT_SETTINGS
from creator_ingest.models.db.enums import MediaType, ReferenceType
from creator_ingest.models.schemas.content import CandidateRecord, EngagementMetrics, MediaRef
from creator_ingest.utils.text import strip_html, truncate
from creator_ingest.utils.time import parse_timestamp, utc_now

from .base import HttpCollector, ProviderStatus
from .errors import CollectorError

API_BASE = "https://api.brightdata.com"

_RUNNING_STATES = {"running", "building", "collecting", "digesting", "starting", "unknown"}


def _status_from_payload(data: Dict[str, Any]) -> str:
    raw = str(data.get("Status") or data.get("status") or "unknown").lower()
    if raw in ("ready", "done", "completed"):
        return "ready"
    if raw in ("failed", "error", "canceled", "cancelled"):
        return "failed"
    return "running"


def _post_media(post: Dict[str, Any]) -> list[MediaRef]:
    media: list[MediaRef] = []
    for image in post.get("images") or []:
        if image:
            media.append(MediaRef(url=image, type=MediaType.IMAGE))

    for video in post.get("videos") or []:
        url = video if isinstance(video, str) else (video or {}).get("url")
        if not url:
            continue
        thumb = post.get("video_thumbnail") or (video.get("thumbnail") if isinstance(video, dict) else None)
        media.append(MediaRef(url=url, type=MediaType.VIDEO, thumbnail_url=thumb, duration=post.get("video_duration")))

    link_data = post.get("external_link_data") or {}
    for link in post.get("embedded_links") or []:
        if link:
            media.append(MediaRef(
                url=link,
                type=MediaType.LINK_PREVIEW,
                link_title=link_data.get("title"),
                link_description=link_data.get("description"),
            ))

    if post.get("document_cover_image"):
        pages = post.get("document_page_count")
        media.append(MediaRef(
            url=post["document_cover_image"],
            type=MediaType.DOCUMENT,
            link_title="Document",
            link_description=f"{pages} pages" if pages else None,
        ))
    return media


def _post_reference(post: Dict[str, Any]) -> tuple[Optional[ReferenceType], Optional[Dict[str, Any]]]:
    repost = post.get("repost") or {}
    if not repost.get("repost_id"):
        return None, None
    return ReferenceType.RETWEET, {
        "platform_content_id": str(repost["repost_id"]),
        "url": repost.get("repost_url") or None,
        "text": repost.get("repost_text") or None,
        "author": {
            "username": repost.get("repost_user_id"),
            "name": repost.get("repost_user_name"),
        } if repost.get("repost_user_id") else None,
        "created_at": repost.get("repost_date") or None,
    }


class BrightDataSnapshotProvider(HttpCollector):
    platform_name = "linkedin"

    def __init__(self, api_key: str, dataset_id: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.dataset_id = dataset_id

    def _auth(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def normalize_post(self, post: Dict[str, Any]) -> Optional[CandidateRecord]:
        """LinkedIn post to candidate; posts lacking an id or url are dropped."""
        post_id = post.get("id")
        url = post.get("url")
        if not post_id or not url:
            self.logger.warning(
                "Skipping LinkedIn post without id or url",
                post_id=post_id,
                url=url,
                text=truncate(post.get("post_text"), 50),
            )
            return None

        text = post.get("post_text") or ""
        body = post.get("post_text_html") or text
        ref_type, ref = _post_reference(post)
        media = _post_media(post)
        metrics = EngagementMetrics(
            likes=post.get("num_likes") or 0,
            comments=post.get("num_comments") or 0,
            custom={
                "hashtags": post.get("hashtags") or [],
                "post_type": post.get("post_type"),
                "author_followers": post.get("user_followers"),
                "author_title": post.get("user_title"),
            },
        )
        return CandidateRecord(
            platform=self.platform_name,
            platform_content_id=str(post_id),
            url=url,
            title=truncate(post.get("title") or post.get("headline") or "LinkedIn post", 500),
            description=text or None,
            content_body=strip_html(body) or None,
            thumbnail_url=next((m.thumbnail_url or m.url for m in media if m.type in (MediaType.IMAGE, MediaType.VIDEO)), None),
            published_at=parse_timestamp(post.get("date_posted")),
            media_urls=media,
            engagement_metrics=metrics,
            reference_type=ref_type,
            referenced_content=ref,
        )

    async def trigger_async(self, source_urls: list[str]) -> str:
        if not source_urls:
            raise ValueError("trigger_async requires at least one source url")
        now = utc_now()
        start = now - timedelta(hours=float(SNAPSHOT_SETTINGS["lookback_hours"]))
        body = [
            {"url": url, "start_date": start.isoformat(), "end_date": now.isoformat()}
            for url in source_urls
        ]
        params = {
            "dataset_id": self.dataset_id or "",
            "include_errors": "true",
            "type": "discover_new",
            "discover_by": "profile_url",
            "limit_per_input": str(SNAPSHOT_SETTINGS["limit_per_input"]),
        }
        data = await self._post_json(f"{API_BASE}/datasets/v3/trigger", body, params=params, headers=self._auth())
        snapshot_id = (data or {}).get("snapshot_id") if isinstance(data, dict) else None
        if not snapshot_id:
            raise CollectorError("Bright Data trigger returned no snapshot_id")
        self.logger.info("Snapshot triggered", snapshot_id=snapshot_id, urls=len(source_urls))
        return str(snapshot_id)

    async def poll_status(self, snapshot_id: str) -> ProviderStatus:
        status, body = await self._request(
            "GET",
            f"{API_BASE}/datasets/v3/log/{snapshot_id}",
            headers=self._auth(),
            allow_not_found=True,
        )
        if status == 404:
            # Bright Data answers 404 for snapshots that finished with zero records.
            return ProviderStatus(status="ready", result_count=0, error="empty dataset (0 records)")
        try:
            data = json.loads(body) if body else {}
        except ValueError as e:
            raise CollectorError("Bright Data returned invalid status JSON") from e
        return ProviderStatus(
            status=_status_from_payload(data),
            result_count=data.get("Dataset_size") or data.get("dataset_size"),
            error=data.get("error"),
            error_code=data.get("error_code"),
            raw={k: data.get(k) for k in ("cost", "file_size", "created") if k in data},
        )

    async def download(self, snapshot_id: str) -> list[CandidateRecord]:
        try:
            posts = await self._get_json(
                f"{API_BASE}/datasets/v3/snapshot/{snapshot_id}",
                params={"format": "json"},
                headers=self._auth(),
            )
        except CollectorError as e:
            if e.status == 400:
                self.logger.info("Snapshot download returned 400, treating as empty", snapshot_id=snapshot_id)
                return []
            raise
        if not posts:
            return []
        if isinstance(posts, dict):
            posts = [posts]
        records = [r for r in (self.normalize_post(p) for p in posts if isinstance(p, dict)) if r is not None]
        max_results = int(SNAPSHOT_SETTINGS["max_results"])
        self.logger.info("Snapshot downloaded", snapshot_id=snapshot_id, posts=len(posts), kept=len(records))
        return records[:max_results]


__all__ = ["BrightDataSnapshotProvider"]
