"""Background workers that drain a named queue.

One ``QueueWorker`` per queue runs ``concurrency`` slot threads plus a stall
checker thread. Each slot loops:

    rate limiter slot -> claim (atomic, leased) -> validate payload
        -> run handler (lease renewed in the background) -> settle outcome

A slot never sleeps on behalf of a job: jobs that need to wait (snapshot polls
that are not ready yet) return a ``Retry`` outcome and are rescheduled by the
job store, freeing the slot immediately.
"""
from __future__ import annotations

import asyncio
import inspect
import threading
import time
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError

from creator_ingest.jobs.job import Completed, Failed, JobOutcome, JobRecord, JobState, PermanentJobError
from creator_ingest.jobs.manager import JobQueueManager
from creator_ingest.jobs.payloads import JobPayload, parse_payload
from creator_ingest.utils import bind_log_context, get_logger, log_performance
from creator_ingest.utils.ratelimiter import WindowRateLimiter

logger = get_logger(__name__)

HandlerResult = Union[JobOutcome, dict, None]
JobHandler = Callable[[JobPayload, JobRecord], Union[HandlerResult, Awaitable[HandlerResult]]]


class _LeaseKeeper:
    """Renews a job's lease every ``lease_seconds / 2`` while the handler runs."""

    def __init__(self, manager: JobQueueManager, job: JobRecord, lease_seconds: float) -> None:
        self._manager = manager
        self._job = job
        self._interval = max(0.5, lease_seconds / 2.0)
        self._lease_seconds = lease_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.lost = False

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                if not self._manager.extend_lease(self._job, lease_seconds=self._lease_seconds):
                    self.lost = True
                    logger.warning("Job lease lost during execution", queue=self._job.queue, job_id=self._job.job_id)
                    return
            except Exception as e:
                logger.error("Lease renewal failed", queue=self._job.queue, job_id=self._job.job_id, error=str(e))

    def __enter__(self) -> "_LeaseKeeper":
        self._thread = threading.Thread(target=self._run, name=f"lease-{self._job.job_id}", daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._interval)


class QueueWorker:
    def __init__(
        self,
        manager: JobQueueManager,
        queue: str,
        handler: JobHandler,
        *,
        concurrency: Optional[int] = None,
        rate_limiter: Optional[WindowRateLimiter] = None,
        poll_interval: float = 1.0,
    ) -> None:
        cfg = manager.queues[queue]
        self.manager = manager
        self.queue = queue
        self.handler = handler
        self.concurrency = int(concurrency if concurrency is not None else cfg.get("concurrency", 1))
        self.rate_limiter = rate_limiter if rate_limiter is not None else WindowRateLimiter.from_config(cfg.get("rate_limit", {}))
        self.lease_seconds = float(cfg.get("lease_seconds", 300))
        self.stalled_interval = float(cfg.get("stalled_interval_seconds", self.lease_seconds))
        self.job_types = tuple(cfg.get("job_types", ()))
        self.poll_interval = poll_interval
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()

    # ----------------------------- lifecycle ----------------------------- #
    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):  # pragma: no cover
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"{self.queue}-worker-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        self._threads.append(threading.Thread(target=self._stall_loop, name=f"{self.queue}-stall-checker", daemon=True))
        for thread in self._threads:
            thread.start()
        logger.info("Queue worker started", queue=self.queue, concurrency=self.concurrency)

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        logger.info("Queue worker stop requested", queue=self.queue)
        if timeout is not None:
            for thread in self._threads:
                thread.join(timeout=timeout)

    # ----------------------------- loops ----------------------------- #
    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                allowed, meta = self.rate_limiter.check_and_increment()
                if not allowed:
                    self._stop_event.wait(meta["retry_after"] or self.poll_interval)
                    continue
                if not self.run_once():
                    self.rate_limiter.release()
                    self._stop_event.wait(self.poll_interval)
            except Exception as e:  # pragma: no cover - defensive
                logger.error("Worker loop error", queue=self.queue, error=str(e), exc_info=True)
                self._stop_event.wait(1.0)

    def _stall_loop(self) -> None:
        while not self._stop_event.wait(self.stalled_interval):
            try:
                self.manager.recover_stalled(self.queue)
            except Exception as e:  # pragma: no cover - defensive
                logger.error("Stalled job check failed", queue=self.queue, error=str(e))

    # ----------------------------- processing ----------------------------- #
    def run_once(self) -> bool:
        """Claim and process a single job. Returns False when nothing was ready."""
        job = self.manager.claim(self.queue, lease_seconds=self.lease_seconds)
        if job is None:
            return False
        self.process(job)
        return True

    def process(self, job: JobRecord) -> JobState | None:
        with bind_log_context(queue=self.queue, job_id=job.job_id, job_type=job.job_type):
            started = time.perf_counter()
            logger.info("Processing job", attempt=job.attempts_made)
            with _LeaseKeeper(self.manager, job, self.lease_seconds):
                outcome = self._invoke(job)
            state = self.manager.settle(job, outcome)
            duration_ms = (time.perf_counter() - started) * 1000
            log_performance(f"job.{job.job_type}", duration_ms, {"state": state.value if state else None})
            if isinstance(outcome, Failed) and state == JobState.FAILED:
                logger.error("Job failed", reason=outcome.reason, attempts=job.attempts_made)
            return state

    def _invoke(self, job: JobRecord) -> JobOutcome:
        try:
            payload = parse_payload(job.payload)
        except ValidationError as e:
            return Failed(f"Invalid payload: {e.errors()[0].get('msg', str(e))}")
        if payload.job_type not in self.job_types:
            return Failed(f"Job type '{payload.job_type}' not accepted by queue '{self.queue}'")

        try:
            result = self.handler(payload, job)
            if inspect.isawaitable(result):
                result = asyncio.run(_await(result))
        except PermanentJobError as e:
            return Failed(str(e))
        except Exception as e:
            logger.error("Job handler raised", error=str(e), error_type=type(e).__name__, exc_info=True)
            return Failed(str(e) or type(e).__name__, retryable=True)

        if result is None:
            return Completed()
        if isinstance(result, dict):
            return Completed(result)
        return result


async def _await(awaitable: Awaitable[HandlerResult]) -> HandlerResult:
    return await awaitable


__all__ = ["QueueWorker", "JobHandler"]
