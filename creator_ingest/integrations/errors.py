"""Collector error taxonomy.

Transient errors (rate limits, timeouts, 5xx) are worth retrying later;
permanent errors (bad credentials, unknown resource, other 4xx) are not.
"""
from __future__ import annotations


class CollectorError(Exception):
    """Base class for errors raised while talking to a content provider."""

    transient: bool = False

    def __init__(self, message: str, *, status: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status = status
        self.code = code


class TransientProviderError(CollectorError):
    transient = True


class RateLimitedError(TransientProviderError):
    def __init__(self, message: str, *, status: int | None = 429, code: str | None = "rate_limited", retry_after: float | None = None):
        super().__init__(message, status=status, code=code)
        self.retry_after = retry_after


class ProviderAuthError(CollectorError):
    pass


class ProviderNotFoundError(CollectorError):
    pass


def is_rate_limited(exc: BaseException) -> bool:
    """Rate-limit detection from the exception type or, failing that, its message."""
    if isinstance(exc, RateLimitedError):
        return True
    msg = str(exc).lower()
    return "rate limit" in msg or "too many requests" in msg or "429" in msg


def is_permanent(exc: BaseException) -> bool:
    """Auth and not-found errors, plus any other non-transient 4xx (except 429)."""
    if isinstance(exc, (ProviderAuthError, ProviderNotFoundError)):
        return True
    if not isinstance(exc, CollectorError) or exc.transient or exc.status is None:
        return False
    return 400 <= exc.status < 500 and exc.status != 429


__all__ = [
    "CollectorError",
    "TransientProviderError",
    "RateLimitedError",
    "ProviderAuthError",
    "ProviderNotFoundError",
    "is_rate_limited",
    "is_permanent",
]
