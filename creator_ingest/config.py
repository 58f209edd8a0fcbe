"""Core ingestion configuration & tunable pipeline rules.

Everything that may need tuning in production (queue concurrency, provider
rate limits, lease durations, retry/backoff, snapshot polling bounds, cleanup
windows) is centralized here so it can be adjusted without diving into worker
logic. Values are read from environment variables where deployments commonly
override them; the dicts stay mutable so tests can monkeypatch values.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ------------------------------ Queue names ------------------------------- #
CREATOR_QUEUE = "creator-processing"
SNAPSHOT_QUEUE = "snapshot-processing"
SUMMARY_QUEUE = "ai-summary"
DIGEST_QUEUE = "email-digest"

# --------------------------------- Queue ---------------------------------- #
QUEUE_SETTINGS: dict[str, object] = {
    "use_redis": _env_bool("USE_REDIS_QUEUE", False),
    "redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
    "key_prefix": os.getenv("QUEUE_KEY_PREFIX", "ingest"),
    "health_check_timeout": float(os.getenv("REDIS_HEALTH_CHECK_TIMEOUT", "2.0")),
    "priorities": {  # Lower number = higher priority
        "high": 0,
        "normal": 5,
        "low": 10,
    },
    "warn_depth": 1000,
    "stats_cache_ttl_seconds": 60,
}

# Per-queue worker knobs. Concurrency bounds local resource usage while the
# rate limit bounds calls into the external provider behind the queue.
QUEUE_DEFINITIONS: dict[str, dict] = {
    CREATOR_QUEUE: {
        "job_types": ("creator_collection",),
        "concurrency": int(os.getenv("CREATOR_WORKER_CONCURRENCY", "10")),
        "rate_limit": {"max_jobs": 10, "window_seconds": 1.0},
        "lease_seconds": 300,
        "stalled_interval_seconds": 300,
        "max_stalled_count": 1,
        "max_attempts": 3,
        "backoff": {"base_seconds": 2, "factor": 2, "max_seconds": 300},
    },
    SNAPSHOT_QUEUE: {
        "job_types": ("snapshot_poll",),
        "concurrency": int(os.getenv("SNAPSHOT_WORKER_CONCURRENCY", "2")),
        "rate_limit": {"max_jobs": 5, "window_seconds": 60.0},
        "lease_seconds": 300,
        "stalled_interval_seconds": 300,
        "max_stalled_count": 1,
        "max_attempts": 3,
        "backoff": {"base_seconds": 30, "factor": 2, "max_seconds": 900},
    },
    SUMMARY_QUEUE: {
        "job_types": ("summarization",),
        "concurrency": 2,
        "rate_limit": {"max_jobs": 5, "window_seconds": 60.0},
        "lease_seconds": 30,
        "stalled_interval_seconds": 30,
        "max_stalled_count": 1,
        "max_attempts": 3,
        "backoff": {"base_seconds": 2, "factor": 2, "max_seconds": 300},
    },
    DIGEST_QUEUE: {
        "job_types": ("digest",),
        "concurrency": 5,
        "rate_limit": {"max_jobs": 10, "window_seconds": 1.0},
        "lease_seconds": 60,
        "stalled_interval_seconds": 60,
        "max_stalled_count": 1,
        "max_attempts": 3,
        "backoff": {"base_seconds": 2, "factor": 2, "max_seconds": 300},
    },
}

# --------------------------------- Backoff -------------------------------- #
BACKOFF_POLICY: dict[str, int | float] = {
    "base_seconds": 2,
    "factor": 2,          # Exponential factor
    "max_seconds": 300,
    "jitter_pct": 0.10,   # +/-10% jitter
}

# -------------------------------- Cleanup --------------------------------- #
CLEANUP_SETTINGS: dict[str, int] = {
    "completed_age_seconds": 3600,       # 1h
    "failed_age_seconds": 24 * 3600,     # failures kept longer for diagnosis
    "limit": 100,                        # per state, per queue, per call
}

# ------------------------------- Staggering ------------------------------- #
STAGGER_SETTINGS: dict[str, float] = {
    # Spacing between creator jobs that share a rate-limited provider.
    "creator_stagger_seconds": float(os.getenv("CREATOR_STAGGER_SECONDS", "15")),
    # Digest jobs are spread randomly over this window.
    "digest_spread_seconds": 300.0,
}

# ------------------------------- Snapshots -------------------------------- #
SNAPSHOT_SETTINGS: dict[str, int | float | str] = {
    "max_poll_attempts": 10,
    "initial_poll_delay_seconds": 60,
    "poll_backoff_base_seconds": 30,
    "poll_backoff_factor": 2,
    "poll_backoff_max_seconds": 900,
    "lookback_hours": 48,
    "limit_per_input": 5,
    "max_results": 100,
    "requeue_batch_limit": 20,
}

# ------------------------------- Collectors ------------------------------- #
COLLECTOR_SETTINGS: dict[str, int | float | str] = {
    "max_results": 20,
    "request_timeout_seconds": float(os.getenv("COLLECTOR_TIMEOUT_SECONDS", "30")),
    "apify_twitter_actor": os.getenv("APIFY_TWITTER_ACTOR", "apidojo~tweet-scraper"),
    "apify_threads_actor": os.getenv("APIFY_THREADS_ACTOR", "curious_coder~threads-scraper"),
    "user_agent": "creator-ingest/1.0 (+feed collector)",
}

PROVIDER_CREDENTIALS: dict[str, str | None] = {
    "youtube_api_key": os.getenv("YOUTUBE_API_KEY") or None,
    "apify_api_key": os.getenv("APIFY_API_KEY") or None,
    "brightdata_api_key": os.getenv("BRIGHTDATA_API_KEY") or None,
    "brightdata_dataset_id": os.getenv("BRIGHTDATA_LINKEDIN_DATASET_ID", "gd_lyy3tktm25m4avu764"),
}

# ------------------------------ Summarization ----------------------------- #
SUMMARY_SETTINGS: dict[str, bool] = {
    # Downstream consumer lives elsewhere; disable to stop chaining jobs.
    "enabled": _env_bool("SUMMARIZATION_ENABLED", True),
}

# -------------------------------- Workers --------------------------------- #
WORKER_SETTINGS: dict[str, bool | float] = {
    "enabled": _env_bool("WORKERS_ENABLED", True),
    "poll_interval_seconds": 1.0,
}

# Bearer secret for scheduler-triggered operational endpoints. Unset = open.
CRON_SECRET: str | None = os.getenv("CRON_SECRET") or None

__all__ = [
    "CREATOR_QUEUE",
    "SNAPSHOT_QUEUE",
    "SUMMARY_QUEUE",
    "DIGEST_QUEUE",
    # Rule groups
    "QUEUE_SETTINGS",
    "QUEUE_DEFINITIONS",
    "BACKOFF_POLICY",
    "CLEANUP_SETTINGS",
    "STAGGER_SETTINGS",
    "SNAPSHOT_SETTINGS",
    "COLLECTOR_SETTINGS",
    "PROVIDER_CREDENTIALS",
    "SUMMARY_SETTINGS",
    "WORKER_SETTINGS",
    "CRON_SECRET",
]
