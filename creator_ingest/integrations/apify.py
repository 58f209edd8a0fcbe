"""
Apify-backed collector for Twitter/X and Threads.

Runs the configured actor through ``run-sync-get-dataset-items`` so one HTTP
round trip both executes the scrape and returns the dataset. Quote tweets and
reposts keep a copy of the referenced post in ``referenced_content``.
"""
from __future__ import annotations

import re
from datetime import timedelta
from typing import Any, Dict, Optional

from creator_ingest.config import COLLECTOR_SETTINGS
from creator_ingest.models.db.enums import MediaType, ReferenceType
from creator_ingest.models.schemas.content import CandidateRecord, EngagementMetrics, MediaRef
from creator_ingest.utils.time import parse_timestamp, utc_now

from .base import FetchOptions, HttpCollector
from .errors import CollectorError

API_BASE = "https://api.apify.com/v2"

_TWITTER_USER_RE = re.compile(r"(?:x\.com|twitter\.com)/@?(\w+)", re.IGNORECASE)
_THREADS_USER_RE = re.compile(r"@([\w.]+)")

TWEET_LOOKBACK_DAYS = 60


def _int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None


# ---------------------------- Twitter helpers ---------------------------- #

def _tweet_media(tweet: Dict[str, Any]) -> list[MediaRef]:
    media: list[MediaRef] = []
    for item in ((tweet.get("extendedEntities") or {}).get("media") or []):
        large = ((item.get("sizes") or {}).get("large") or {})
        if item.get("type") in ("video", "animated_gif"):
            variants = [
                v for v in ((item.get("video_info") or {}).get("variants") or [])
                if v.get("content_type") == "video/mp4"
            ]
            best = max(variants, key=lambda v: v.get("bitrate") or 0) if variants else None
            url = (best or {}).get("url") or item.get("media_url_https") or item.get("url")
            if not url:
                continue
            duration_ms = (item.get("video_info") or {}).get("duration_millis")
            media.append(MediaRef(
                url=url,
                type=MediaType.VIDEO,
                thumbnail_url=item.get("media_url_https"),
                width=large.get("w"),
                height=large.get("h"),
                duration=duration_ms / 1000 if duration_ms else None,
            ))
        else:
            url = item.get("media_url_https") or item.get("url")
            if url:
                media.append(MediaRef(url=url, type=MediaType.IMAGE, width=large.get("w"), height=large.get("h")))

    for entity in ((tweet.get("entities") or {}).get("urls") or []):
        expanded = entity.get("expanded_url")
        if expanded and not any(m.url == expanded for m in media):
            media.append(MediaRef(
                url=expanded,
                type=MediaType.LINK_PREVIEW,
                link_title=entity.get("title") or entity.get("display_url"),
                link_description=entity.get("description"),
            ))
    return media


def _tweet_metrics(tweet: Dict[str, Any]) -> EngagementMetrics:
    return EngagementMetrics(
        likes=_int(tweet.get("likeCount")),
        comments=_int(tweet.get("replyCount")),
        retweets=_int(tweet.get("retweetCount")),
        shares=_int(tweet.get("retweetCount")),
        views=_int(tweet.get("viewCount")),
        bookmarks=_int(tweet.get("bookmarkCount")),
    )


def _tweet_reference(tweet: Dict[str, Any]) -> tuple[Optional[ReferenceType], Optional[Dict[str, Any]]]:
    quoted = tweet.get("quote")
    retweeted = tweet.get("retweet")
    if tweet.get("isQuote") and quoted:
        ref_type, ref = ReferenceType.QUOTE, quoted
    elif retweeted:
        ref_type, ref = ReferenceType.RETWEET, retweeted
    elif tweet.get("isReply") and tweet.get("inReplyToId"):
        author = tweet.get("inReplyToUsername")
        return ReferenceType.REPLY, {
            "platform_content_id": str(tweet["inReplyToId"]),
            "author": {"username": author} if author else None,
        }
    else:
        return None, None

    author = ref.get("author") or {}
    return ref_type, {
        "platform_content_id": str(ref.get("id") or ""),
        "url": ref.get("url") or ref.get("twitterUrl"),
        "text": ref.get("text") or ref.get("fullText"),
        "author": {
            "username": author.get("userName"),
            "name": author.get("name"),
            "avatar_url": author.get("profilePicture"),
            "is_verified": author.get("isBlueVerified"),
        } if author else None,
        "created_at": ref.get("createdAt"),
        "media_urls": [m.model_dump(mode="json", exclude_none=True) for m in _tweet_media(ref)],
        "engagement_metrics": _tweet_metrics(ref).model_dump(exclude_none=True),
    }


# ---------------------------- Threads helpers ---------------------------- #

def _threads_post_url(post: Dict[str, Any]) -> str:
    code = post.get("code")
    username = (post.get("user") or {}).get("username")
    if not code or not username:
        return ""
    return f"https://www.threads.net/@{username}/post/{code}"


def _threads_media(post: Dict[str, Any]) -> list[MediaRef]:
    media: list[MediaRef] = []

    def _collect(node: Dict[str, Any]) -> None:
        candidates = ((node.get("image_versions2") or {}).get("candidates") or [])
        videos = node.get("video_versions") or []
        if videos and videos[0].get("url"):
            best = videos[0]
            media.append(MediaRef(
                url=best["url"],
                type=MediaType.VIDEO,
                width=best.get("width"),
                height=best.get("height"),
                thumbnail_url=candidates[0].get("url") if candidates else None,
            ))
        elif candidates and candidates[0].get("url"):
            best = candidates[0]
            media.append(MediaRef(url=best["url"], type=MediaType.IMAGE, width=best.get("width"), height=best.get("height")))

    _collect(post)
    for item in post.get("carousel_media") or []:
        _collect(item)
    return media


def _threads_metrics(post: Dict[str, Any]) -> EngagementMetrics:
    return EngagementMetrics(likes=_int(post.get("like_count")), comments=_int(post.get("reply_count")))


def _threads_reference(post: Dict[str, Any]) -> tuple[Optional[ReferenceType], Optional[Dict[str, Any]]]:
    share = ((post.get("text_post_app_info") or {}).get("share_info") or {})
    reply_author = (post.get("text_post_app_info") or {}).get("reply_to_author")
    if share.get("quoted_post"):
        ref_type, ref = ReferenceType.QUOTE, share["quoted_post"]
    elif share.get("reposted_post"):
        ref_type, ref = ReferenceType.RETWEET, share["reposted_post"]
    elif reply_author:
        return ReferenceType.REPLY, {
            "platform_content_id": "",
            "author": {"username": reply_author.get("username"), "name": reply_author.get("full_name")},
        }
    else:
        return None, None

    user = ref.get("user") or {}
    taken_at = parse_timestamp(ref.get("taken_at"))
    return ref_type, {
        "platform_content_id": str(ref.get("id") or ref.get("pk") or ""),
        "url": _threads_post_url(ref) or None,
        "text": (ref.get("caption") or {}).get("text") or ref.get("text"),
        "author": {
            "username": user.get("username"),
            "name": user.get("full_name") or user.get("name"),
            "avatar_url": user.get("profile_pic_url"),
            "is_verified": user.get("is_verified"),
        } if user else None,
        "created_at": taken_at.isoformat() if taken_at else None,
        "media_urls": [m.model_dump(mode="json", exclude_none=True) for m in _threads_media(ref)],
        "engagement_metrics": _threads_metrics(ref).model_dump(exclude_none=True),
    }


class ApifyCollector(HttpCollector):
    """One instance per platform (``twitter`` or ``threads``)."""

    def __init__(self, platform_name: str, api_token: str, *, actor_id: Optional[str] = None, **kwargs: Any) -> None:
        if platform_name not in ("twitter", "threads"):
            raise ValueError(f"Apify collector does not support platform {platform_name!r}")
        self.platform_name = platform_name
        super().__init__(**kwargs)
        self.api_token = api_token
        self.actor_id = actor_id or str(COLLECTOR_SETTINGS[f"apify_{platform_name}_actor"])

    # --------------------------- actor input --------------------------- #
    def build_input(self, source_url: str, options: FetchOptions) -> Dict[str, Any]:
        if self.platform_name == "twitter":
            return {"searchTerms": [self.twitter_search_term(source_url)], "maxItems": options.max_results, "sort": "Latest"}
        return {"urls": [f"@{self.threads_username(source_url)}"], "postsPerSource": options.max_results}

    @staticmethod
    def twitter_search_term(source_url: str) -> str:
        since = (utc_now() - timedelta(days=TWEET_LOOKBACK_DAYS)).date().isoformat()
        if "from:" in source_url:
            term = source_url
        else:
            match = _TWITTER_USER_RE.search(source_url)
            if not match:
                raise CollectorError(f"Cannot derive Twitter username from {source_url}")
            term = f"from:{match.group(1)}"
        for flag in ("-filter:replies", "-filter:retweets"):
            if flag not in term:
                term = f"{term} {flag}"
        if "since:" not in term:
            term = f"{term} since:{since}"
        return term

    @staticmethod
    def threads_username(source_url: str) -> str:
        match = _THREADS_USER_RE.search(source_url)
        if not match:
            raise CollectorError(f"Threads URL must contain an @username: {source_url}")
        return match.group(1)

    # ------------------------- normalization --------------------------- #
    def normalize_tweet(self, tweet: Dict[str, Any]) -> CandidateRecord:
        tweet_id = str(tweet.get("id") or "")
        username = (tweet.get("author") or {}).get("userName") or "unknown"
        url = tweet.get("url") or tweet.get("twitterUrl") or (f"https://twitter.com/i/status/{tweet_id}" if tweet_id else "")
        text = tweet.get("text") or tweet.get("fullText") or ""
        ref_type, ref = _tweet_reference(tweet)
        media = _tweet_media(tweet)
        return CandidateRecord(
            platform="twitter",
            platform_content_id=tweet_id or url,
            url=url,
            title=f"Tweet by @{username}",
            description=text or None,
            content_body=text or None,
            thumbnail_url=next((m.thumbnail_url or m.url for m in media if m.type in (MediaType.IMAGE, MediaType.VIDEO)), None),
            published_at=parse_timestamp(tweet.get("createdAt")),
            media_urls=media,
            engagement_metrics=_tweet_metrics(tweet),
            reference_type=ref_type,
            referenced_content=ref,
        )

    def normalize_thread(self, post: Dict[str, Any]) -> CandidateRecord:
        username = (post.get("user") or {}).get("username") or "unknown"
        text = (post.get("caption") or {}).get("text") or ""
        ref_type, ref = _threads_reference(post)
        media = _threads_media(post)
        return CandidateRecord(
            platform="threads",
            platform_content_id=str(post.get("id") or post.get("pk") or ""),
            url=_threads_post_url(post),
            title=f"Thread by @{username}",
            description=text or None,
            content_body=text or None,
            thumbnail_url=next((m.thumbnail_url or m.url for m in media), None),
            published_at=parse_timestamp(post.get("taken_at")),
            media_urls=media,
            engagement_metrics=_threads_metrics(post),
            reference_type=ref_type,
            referenced_content=ref,
        )

    def normalize(self, item: Dict[str, Any]) -> CandidateRecord:
        if self.platform_name == "twitter":
            return self.normalize_tweet(item)
        return self.normalize_thread(item)

    async def fetch(self, source_url: str, options: FetchOptions) -> list[CandidateRecord]:
        actor_input = self.build_input(source_url, options)
        self.logger.info("Running Apify actor", actor=self.actor_id, url=source_url)
        items = await self._post_json(
            f"{API_BASE}/acts/{self.actor_id}/run-sync-get-dataset-items",
            actor_input,
            params={"token": self.api_token},
        )
        if not isinstance(items, list):
            raise CollectorError(f"Unexpected Apify response for {self.platform_name}: {type(items).__name__}")
        records = [self.normalize(item) for item in items if isinstance(item, dict)]
        self.logger.info("Apify items normalized", actor=self.actor_id, count=len(records))
        return records[: options.max_results]


__all__ = ["ApifyCollector"]
