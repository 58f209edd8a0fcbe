"""Collector interfaces and the shared aiohttp plumbing they build on.

Two shapes of source exist:
- ``SyncCollector``: fetch-and-normalize in one call (feeds, video APIs).
- ``AsyncSnapshotProvider``: collection runs on the provider's side; we
  trigger it, poll its status, then download the finished result set.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import aiohttp

from creator_ingest.config import COLLECTOR_SETTINGS
from creator_ingest.models.schemas.content import CandidateRecord
from creator_ingest.utils import get_logger

from .errors import (
    CollectorError,
    ProviderAuthError,
    ProviderNotFoundError,
    RateLimitedError,
    TransientProviderError,
)


@dataclass(slots=True)
class FetchOptions:
    max_results: int = 20
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProviderStatus:
    status: str  # running | ready | failed
    result_count: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class SyncCollector(Protocol):
    platform_name: str

    async def fetch(self, source_url: str, options: FetchOptions) -> list[CandidateRecord]: ...


@runtime_checkable
class AsyncSnapshotProvider(Protocol):
    platform_name: str
    dataset_id: Optional[str]

    async def trigger_async(self, source_urls: list[str]) -> str: ...
    async def poll_status(self, snapshot_id: str) -> ProviderStatus: ...
    async def download(self, snapshot_id: str) -> list[CandidateRecord]: ...


class HttpCollector:
    """Base for collectors talking HTTP. One ClientSession per request batch."""

    platform_name: str = "unknown"

    def __init__(self, *, timeout_seconds: Optional[float] = None) -> None:
        self.logger = get_logger(f"integration.{self.platform_name}")
        seconds = float(timeout_seconds if timeout_seconds is not None else COLLECTOR_SETTINGS["request_timeout_seconds"])
        self.timeout = aiohttp.ClientTimeout(total=seconds)
        self.user_agent = str(COLLECTOR_SETTINGS.get("user_agent", "creator-ingest/1.0"))

    def _raise_for_status(self, status: int, body: str, url: str, *, allow_not_found: bool = False) -> None:
        snippet = body[:200] if body else ""
        if status == 429:
            raise RateLimitedError(f"{self.platform_name} rate limit exceeded (HTTP 429)")
        if status in (401, 403):
            raise ProviderAuthError(f"{self.platform_name} rejected credentials (HTTP {status})", status=status)
        if status == 404 and not allow_not_found:
            raise ProviderNotFoundError(f"{self.platform_name} resource not found: {url}", status=status)
        if status >= 500:
            raise TransientProviderError(f"{self.platform_name} upstream error HTTP {status}: {snippet}", status=status)
        if status >= 400 and status != 404:
            raise CollectorError(f"{self.platform_name} request failed HTTP {status}: {snippet}", status=status)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        allow_not_found: bool = False,
    ) -> tuple[int, str]:
        merged = {"User-Agent": self.user_agent, **(headers or {})}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout, headers=merged) as session:
                async with session.request(method, url, params=params, json=json_body) as response:
                    body = await response.text()
                    self._raise_for_status(response.status, body, url, allow_not_found=allow_not_found)
                    return response.status, body
        except asyncio.TimeoutError as e:
            raise TransientProviderError(f"{self.platform_name} request timed out: {url}") from e
        except aiohttp.ClientError as e:
            raise TransientProviderError(f"{self.platform_name} network error: {e}") from e

    async def _get_text(self, url: str, **kwargs: Any) -> str:
        _, body = await self._request("GET", url, **kwargs)
        return body

    async def _get_json(self, url: str, **kwargs: Any) -> Any:
        _, body = await self._request("GET", url, **kwargs)
        try:
            return json.loads(body) if body else None
        except ValueError as e:
            raise CollectorError(f"{self.platform_name} returned invalid JSON") from e

    async def _post_json(self, url: str, payload: Any, **kwargs: Any) -> Any:
        _, body = await self._request("POST", url, json_body=payload, **kwargs)
        try:
            return json.loads(body) if body else None
        except ValueError as e:
            raise CollectorError(f"{self.platform_name} returned invalid JSON") from e


__all__ = [
    "FetchOptions",
    "ProviderStatus",
    "SyncCollector",
    "AsyncSnapshotProvider",
    "HttpCollector",
]
