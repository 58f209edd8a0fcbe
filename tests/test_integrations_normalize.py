import asyncio

import pytest

from creator_ingest.integrations import (
    ApifyCollector,
    BrightDataSnapshotProvider,
    CollectorError,
    FetchOptions,
    HttpCollector,
    ProviderAuthError,
    ProviderNotFoundError,
    RateLimitedError,
    RssCollector,
    TransientProviderError,
    YouTubeCollector,
    build_collector_registry,
    is_permanent,
    is_rate_limited,
)
from creator_ingest.integrations.brightdata import _status_from_payload
from creator_ingest.integrations.youtube import parse_duration
from creator_ingest.models.db import MediaType, ReferenceType

RSS_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Someone's blog</title>
    <link>https://someone.blog</link>
    <description>Posts</description>
    <item>
      <title>First &lt;b&gt;post&lt;/b&gt;</title>
      <link>https://someone.blog/first</link>
      <guid>post-1</guid>
      <pubDate>Mon, 06 Sep 2021 16:45:00 +0000</pubDate>
      <description>&lt;p&gt;Hello &amp;amp; welcome&lt;/p&gt;</description>
      <enclosure url="https://someone.blog/cover.jpg" type="image/jpeg" length="1000"/>
    </item>
    <item>
      <title>Second post</title>
      <link>https://someone.blog/second</link>
      <description>Plain text</description>
    </item>
  </channel>
</rss>
"""


# ---------------------------- RSS ---------------------------- #

def test_rss_entries_normalized():
    records = RssCollector("rss").parse(RSS_FEED, "https://someone.blog/feed", FetchOptions(max_results=10))
    assert len(records) == 2

    first = records[0]
    assert first.platform == "rss"
    assert first.platform_content_id == "post-1"
    assert first.url == "https://someone.blog/first"
    assert first.title == "First post"
    assert first.content_body == "Hello & welcome"
    assert first.thumbnail_url == "https://someone.blog/cover.jpg"
    assert first.media_urls[0].type == MediaType.IMAGE
    assert first.published_at.year == 2021
    assert first.published_at.tzinfo is not None

    # No guid: the link doubles as the natural key
    assert records[1].platform_content_id == "https://someone.blog/second"
    assert records[1].published_at is None


def test_rss_respects_max_results():
    records = RssCollector("website").parse(RSS_FEED, "https://someone.blog/feed", FetchOptions(max_results=1))
    assert [r.platform for r in records] == ["website"]


def test_unparseable_feed_raises():
    with pytest.raises(CollectorError):
        RssCollector("rss").parse("this is not a feed <<<", "https://broken.example/feed", FetchOptions())


# ---------------------------- YouTube ---------------------------- #

def test_parse_duration():
    assert parse_duration("PT1H2M3S") == 3723
    assert parse_duration("PT45S") == 45
    assert parse_duration("P1D") is None
    assert parse_duration(None) is None


def test_youtube_video_normalized():
    video = {
        "id": "abc123",
        "snippet": {
            "title": "Launch video",
            "description": "We shipped it",
            "publishedAt": "2024-05-01T12:00:00Z",
            "thumbnails": {
                "default": {"url": "https://i.ytimg.com/default.jpg", "width": 120, "height": 90},
                "maxres": {"url": "https://i.ytimg.com/maxres.jpg", "width": 1280, "height": 720},
            },
        },
        "statistics": {"viewCount": "1500", "likeCount": "42", "commentCount": "bad"},
        "contentDetails": {"duration": "PT1M5S"},
    }
    record = YouTubeCollector(api_key="k").normalize_video(video)

    assert record.platform == "youtube"
    assert record.url == "https://www.youtube.com/watch?v=abc123"
    assert record.thumbnail_url == "https://i.ytimg.com/maxres.jpg"
    assert record.media_urls[0].type == MediaType.VIDEO
    assert record.media_urls[0].duration == 65
    assert record.media_urls[0].width == 1280
    assert record.engagement_metrics.views == 1500
    assert record.engagement_metrics.likes == 42
    assert record.engagement_metrics.comments is None
    assert record.published_at.year == 2024


def test_youtube_channel_resolution_without_lookup():
    collector = YouTubeCollector(api_key="k")
    channel_id = asyncio.run(collector.resolve_channel_id("https://www.youtube.com/channel/UC1234567890abcdef"))
    assert channel_id == "UC1234567890abcdef"
    assert collector.uploads_playlist_id(channel_id) == "UU1234567890abcdef"


def test_youtube_handle_resolved_through_api(monkeypatch):
    collector = YouTubeCollector(api_key="k")
    calls = []

    async def fake_api(resource, **params):
        calls.append((resource, params))
        return {"items": [{"id": "UCresolved00000"}]} if params.get("forHandle") == "@someone" else {"items": []}

    monkeypatch.setattr(collector, "_api", fake_api)
    assert asyncio.run(collector.resolve_channel_id("https://www.youtube.com/@someone")) == "UCresolved00000"
    assert calls[0][0] == "channels"
    with pytest.raises(ProviderNotFoundError):
        asyncio.run(collector.resolve_channel_id("https://www.youtube.com/@nobody"))


# ---------------------------- Twitter / Threads ---------------------------- #

def test_quote_tweet_keeps_referenced_post():
    tweet = {
        "id": "1001",
        "url": "https://x.com/someone/status/1001",
        "text": "Look at this",
        "createdAt": "Wed Oct 10 20:19:24 +0000 2018",
        "author": {"userName": "someone"},
        "likeCount": 10,
        "retweetCount": 2,
        "isQuote": True,
        "quote": {
            "id": "99",
            "url": "https://x.com/other/status/99",
            "text": "Original thought",
            "author": {"userName": "other", "name": "Other Person"},
        },
        "extendedEntities": {
            "media": [{
                "type": "video",
                "media_url_https": "https://pbs.twimg.com/thumb.jpg",
                "video_info": {
                    "duration_millis": 12000,
                    "variants": [
                        {"content_type": "video/mp4", "bitrate": 256000, "url": "https://video.twimg.com/low.mp4"},
                        {"content_type": "video/mp4", "bitrate": 2176000, "url": "https://video.twimg.com/high.mp4"},
                        {"content_type": "application/x-mpegURL", "url": "https://video.twimg.com/pl.m3u8"},
                    ],
                },
            }]
        },
        "entities": {"urls": [{"expanded_url": "https://someone.blog/first", "display_url": "someone.blog/first"}]},
    }
    record = ApifyCollector("twitter", "token").normalize_tweet(tweet)

    assert record.platform_content_id == "1001"
    assert record.title == "Tweet by @someone"
    assert record.reference_type == ReferenceType.QUOTE
    assert record.referenced_content["platform_content_id"] == "99"
    assert record.referenced_content["author"]["username"] == "other"
    assert record.media_urls[0].url == "https://video.twimg.com/high.mp4"
    assert record.media_urls[0].duration == 12
    assert record.media_urls[1].type == MediaType.LINK_PREVIEW
    assert record.thumbnail_url == "https://pbs.twimg.com/thumb.jpg"
    assert record.engagement_metrics.likes == 10
    assert record.published_at.year == 2018


def test_reply_tweet_reference():
    record = ApifyCollector("twitter", "token").normalize_tweet({
        "id": "5", "text": "agreed", "isReply": True, "inReplyToId": 4, "inReplyToUsername": "other",
    })
    assert record.reference_type == ReferenceType.REPLY
    assert record.referenced_content == {"platform_content_id": "4", "author": {"username": "other"}}
    assert record.url == "https://twitter.com/i/status/5"


def test_twitter_search_term():
    term = ApifyCollector.twitter_search_term("https://x.com/someone")
    assert term.startswith("from:someone -filter:replies -filter:retweets since:")


def test_threads_post_normalized():
    post = {
        "id": "314",
        "code": "C0de",
        "user": {"username": "someone"},
        "caption": {"text": "Threads hello"},
        "like_count": 3,
        "image_versions2": {"candidates": [{"url": "https://cdn.threads.net/img.jpg", "width": 640, "height": 640}]},
        "text_post_app_info": {"share_info": {"reposted_post": {"id": "7", "code": "Rp", "user": {"username": "other"}}}},
    }
    record = ApifyCollector("threads", "token").normalize_thread(post)
    assert record.url == "https://www.threads.net/@someone/post/C0de"
    assert record.reference_type == ReferenceType.RETWEET
    assert record.referenced_content["url"] == "https://www.threads.net/@other/post/Rp"
    assert record.media_urls[0].type == MediaType.IMAGE
    assert record.engagement_metrics.likes == 3


def test_threads_username_required():
    assert ApifyCollector.threads_username("https://www.threads.net/@some.one") == "some.one"
    with pytest.raises(CollectorError):
        ApifyCollector.threads_username("https://www.threads.net/someone")


def test_apify_rejects_unsupported_platform():
    with pytest.raises(ValueError):
        ApifyCollector("youtube", "token")


# ---------------------------- LinkedIn (Bright Data) ---------------------------- #

def test_linkedin_post_without_id_is_dropped():
    provider = BrightDataSnapshotProvider(api_key="k")
    assert provider.normalize_post({"url": "https://www.linkedin.com/posts/x", "post_text": "hi"}) is None
    assert provider.normalize_post({"id": "1", "post_text": "hi"}) is None


def test_linkedin_post_normalized():
    provider = BrightDataSnapshotProvider(api_key="k")
    record = provider.normalize_post({
        "id": "7100",
        "url": "https://www.linkedin.com/posts/someone_7100",
        "post_text": "Big news",
        "date_posted": "2024-06-01T09:30:00.000Z",
        "num_likes": 12,
        "num_comments": 3,
        "images": ["https://media.licdn.com/a.jpg"],
        "embedded_links": ["https://someone.blog/first"],
        "external_link_data": {"title": "First post"},
        "document_cover_image": "https://media.licdn.com/doc.jpg",
        "document_page_count": 8,
        "repost": {"repost_id": "6900", "repost_user_id": "other", "repost_text": "Shared"},
    })
    assert record.platform_content_id == "7100"
    assert [m.type for m in record.media_urls] == [MediaType.IMAGE, MediaType.LINK_PREVIEW, MediaType.DOCUMENT]
    assert record.media_urls[1].link_title == "First post"
    assert record.media_urls[2].link_description == "8 pages"
    assert record.reference_type == ReferenceType.RETWEET
    assert record.referenced_content["platform_content_id"] == "6900"
    assert record.engagement_metrics.likes == 12
    assert record.engagement_metrics.comments == 3
    assert record.thumbnail_url == "https://media.licdn.com/a.jpg"


@pytest.mark.parametrize("raw,expected", [
    ({"Status": "ready"}, "ready"),
    ({"status": "done"}, "ready"),
    ({"Status": "failed"}, "failed"),
    ({"status": "error"}, "failed"),
    ({"Status": "running"}, "running"),
    ({"Status": "collecting"}, "running"),
    ({}, "running"),
])
def test_brightdata_status_mapping(raw, expected):
    assert _status_from_payload(raw) == expected


def test_brightdata_missing_log_means_empty_dataset(monkeypatch):
    provider = BrightDataSnapshotProvider(api_key="k", dataset_id="ds")

    async def fake_request(method, url, **kwargs):
        assert kwargs["allow_not_found"] is True
        return 404, ""

    monkeypatch.setattr(provider, "_request", fake_request)
    status = asyncio.run(provider.poll_status("s1"))
    assert status.status == "ready"
    assert status.result_count == 0


def test_brightdata_status_payload_parsed(monkeypatch):
    provider = BrightDataSnapshotProvider(api_key="k", dataset_id="ds")

    async def fake_request(method, url, **kwargs):
        return 200, '{"Status": "ready", "Dataset_size": 4, "cost": 0.1}'

    monkeypatch.setattr(provider, "_request", fake_request)
    status = asyncio.run(provider.poll_status("s1"))
    assert status.status == "ready"
    assert status.result_count == 4
    assert status.raw == {"cost": 0.1}


def test_brightdata_download_400_is_empty(monkeypatch):
    provider = BrightDataSnapshotProvider(api_key="k")

    async def fake_get_json(url, **kwargs):
        raise CollectorError("linkedin request failed HTTP 400", status=400)

    monkeypatch.setattr(provider, "_get_json", fake_get_json)
    assert asyncio.run(provider.download("s1")) == []


def test_brightdata_trigger_requires_snapshot_id(monkeypatch):
    provider = BrightDataSnapshotProvider(api_key="k", dataset_id="ds")
    sent = {}

    async def fake_post_json(url, payload, **kwargs):
        sent.update(url=url, payload=payload, params=kwargs["params"])
        return {}

    monkeypatch.setattr(provider, "_post_json", fake_post_json)
    with pytest.raises(CollectorError):
        asyncio.run(provider.trigger_async(["https://www.linkedin.com/in/someone"]))
    assert sent["params"]["dataset_id"] == "ds"
    assert sent["params"]["discover_by"] == "profile_url"
    assert sent["payload"][0]["url"] == "https://www.linkedin.com/in/someone"


# ---------------------------- HTTP errors / registry ---------------------------- #

@pytest.mark.parametrize("status,error", [
    (429, RateLimitedError),
    (401, ProviderAuthError),
    (403, ProviderAuthError),
    (404, ProviderNotFoundError),
    (500, TransientProviderError),
    (503, TransientProviderError),
])
def test_http_status_mapping(status, error):
    with pytest.raises(error):
        HttpCollector()._raise_for_status(status, "body", "https://example.com")


def test_other_client_errors_are_plain_collector_errors():
    with pytest.raises(CollectorError) as exc_info:
        HttpCollector()._raise_for_status(400, "bad request", "https://example.com")
    assert type(exc_info.value) is CollectorError
    assert exc_info.value.status == 400
    HttpCollector()._raise_for_status(200, "", "https://example.com")
    HttpCollector()._raise_for_status(404, "", "https://example.com", allow_not_found=True)


def test_error_classification():
    assert is_rate_limited(RateLimitedError("slow down"))
    assert is_rate_limited(Exception("429 Too Many Requests"))
    assert not is_rate_limited(TransientProviderError("HTTP 502"))
    assert is_permanent(ProviderAuthError("bad key"))
    assert not is_permanent(TransientProviderError("HTTP 502"))
    assert TransientProviderError("x").transient is True
    assert is_permanent(CollectorError("bad request", status=400))
    assert not is_permanent(CollectorError("too many", status=429))
    assert not is_permanent(CollectorError("returned invalid JSON"))


def test_json_helpers_parse_and_reject_bodies(monkeypatch):
    collector = HttpCollector()
    bodies = iter(["{\"ok\": true}", "", "<html>oops</html>"])

    async def fake_request(method, url, **kwargs):
        return 200, next(bodies)

    monkeypatch.setattr(collector, "_request", fake_request)
    assert asyncio.run(collector._get_json("https://example.com/a")) == {"ok": True}
    assert asyncio.run(collector._post_json("https://example.com/b", {"q": 1})) is None
    with pytest.raises(CollectorError, match="invalid JSON"):
        asyncio.run(collector._get_json("https://example.com/c"))


def test_registry_only_registers_configured_collectors():
    registry = build_collector_registry({
        "youtube_api_key": None,
        "apify_api_key": "apify-token",
        "brightdata_api_key": "bd-key",
        "brightdata_dataset_id": "ds",
    })
    assert registry.platforms() == ["linkedin", "rss", "threads", "twitter", "website"]
    assert registry.is_async("LinkedIn") is True
    assert registry.get("linkedin") is None
    assert registry.get_async("linkedin").dataset_id == "ds"
    assert "youtube" not in registry
    assert registry.get("twitter").platform_name == "twitter"
