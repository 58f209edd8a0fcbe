"""
Integrations package initialization.

Exports the platform collectors and the registry used by the collection
worker to look them up by platform.
"""
from __future__ import annotations

from typing import Dict, Optional, Union

from creator_ingest.config import PROVIDER_CREDENTIALS
from creator_ingest.utils import get_logger

from .apify import ApifyCollector
from .base import AsyncSnapshotProvider, FetchOptions, HttpCollector, ProviderStatus, SyncCollector
from .brightdata import BrightDataSnapshotProvider
from .errors import (
    CollectorError,
    ProviderAuthError,
    ProviderNotFoundError,
    RateLimitedError,
    TransientProviderError,
    is_permanent,
    is_rate_limited,
)
from .rss import RssCollector
from .youtube import YouTubeCollector

logger = get_logger(__name__)

CollectorLike = Union[SyncCollector, AsyncSnapshotProvider]


class CollectorRegistry:
    """Platform name -> collector. Sync collectors and async providers are kept apart."""

    def __init__(self) -> None:
        self._sync: Dict[str, SyncCollector] = {}
        self._async: Dict[str, AsyncSnapshotProvider] = {}

    def register(self, platform: str, collector: SyncCollector) -> None:
        self._sync[platform.lower()] = collector

    def register_async(self, platform: str, provider: AsyncSnapshotProvider) -> None:
        self._async[platform.lower()] = provider

    def get(self, platform: str) -> Optional[SyncCollector]:
        return self._sync.get(platform.lower())

    def get_async(self, platform: str) -> Optional[AsyncSnapshotProvider]:
        return self._async.get(platform.lower())

    def is_async(self, platform: str) -> bool:
        return platform.lower() in self._async

    def platforms(self) -> list[str]:
        return sorted(set(self._sync) | set(self._async))

    def __contains__(self, platform: str) -> bool:
        return platform.lower() in self._sync or platform.lower() in self._async


def build_collector_registry(credentials: Optional[Dict[str, Optional[str]]] = None) -> CollectorRegistry:
    """Register every collector whose credentials are configured."""
    creds = PROVIDER_CREDENTIALS if credentials is None else credentials
    registry = CollectorRegistry()

    registry.register("rss", RssCollector("rss"))
    registry.register("website", RssCollector("website"))

    if creds.get("youtube_api_key"):
        registry.register("youtube", YouTubeCollector(api_key=creds["youtube_api_key"]))
    else:
        logger.warning("YouTube collector disabled: no API key configured")

    if creds.get("apify_api_key"):
        registry.register("twitter", ApifyCollector("twitter", creds["apify_api_key"]))
        registry.register("threads", ApifyCollector("threads", creds["apify_api_key"]))
    else:
        logger.warning("Twitter/Threads collectors disabled: no Apify token configured")

    if creds.get("brightdata_api_key"):
        registry.register_async(
            "linkedin",
            BrightDataSnapshotProvider(api_key=creds["brightdata_api_key"], dataset_id=creds.get("brightdata_dataset_id")),
        )
    else:
        logger.warning("LinkedIn snapshot provider disabled: no Bright Data key configured")

    logger.info("Collector registry built", platforms=registry.platforms())
    return registry


__all__ = [
    "ApifyCollector",
    "AsyncSnapshotProvider",
    "BrightDataSnapshotProvider",
    "CollectorError",
    "CollectorRegistry",
    "FetchOptions",
    "HttpCollector",
    "ProviderAuthError",
    "ProviderNotFoundError",
    "ProviderStatus",
    "RateLimitedError",
    "RssCollector",
    "SyncCollector",
    "TransientProviderError",
    "YouTubeCollector",
    "build_collector_registry",
    "is_permanent",
    "is_rate_limited",
]
