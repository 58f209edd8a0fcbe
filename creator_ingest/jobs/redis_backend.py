"""Redis-backed job state store.

Features:
- Deterministic job ids (dedup keys) with atomic "add unless non-terminal".
- Priority ordering (lower numeric priority value = higher priority), FIFO within a priority.
- Delayed jobs promoted to waiting by the claim itself.
- Leases: an active job carries a random token and an expiry; only the token
  holder can renew or settle it, and expired leases are recovered as stalls.
- Persistence across application restarts.

Data structures in Redis (prefix ``ingest`` by default, per queue ``q``):
 1. Hash:       ingest:q:job:<id>  - data (JSON), state, attempts, failures, stalled, timestamps, token
 2. Sorted Set: ingest:q:waiting   - score = priority * 1e13 + ready_at_ms
 3. Sorted Set: ingest:q:delayed   - score = ready_at_ms
 4. Sorted Set: ingest:q:active    - score = lease_until_ms
 5. Sorted Set: ingest:q:completed - score = finished_at_ms
 6. Sorted Set: ingest:q:failed    - score = finished_at_ms

Every state transition is a Lua script so it is atomic with respect to other
workers. Scores are formatted with ``%.0f`` inside Lua because Lua's default
number-to-string conversion would round 15-digit scores.
"""
from __future__ import annotations

import json
from typing import Any, Optional, Sequence

import redis

from creator_ingest.config import QUEUE_SETTINGS
from creator_ingest.jobs.backend import STALLED_REASON
from creator_ingest.jobs.job import JobRecord, JobState, JOB_STATES, QueueUnavailableError
from creator_ingest.utils import get_logger

logger = get_logger(__name__)


_ADD = """
local state = redis.call('HGET', KEYS[1], 'state')
if state then
  if state ~= 'completed' and state ~= 'failed' then return 0 end
  redis.call('ZREM', KEYS[4], ARGV[1])
  redis.call('ZREM', KEYS[5], ARGV[1])
  redis.call('DEL', KEYS[1])
end
local ready = tonumber(ARGV[4])
local now = tonumber(ARGV[5])
local pv = tonumber(ARGV[3])
redis.call('HSET', KEYS[1], 'data', ARGV[2], 'pv', ARGV[3], 'attempts', 0, 'failures', 0, 'stalled', 0,
  'ready_at', ARGV[4], 'created_at', ARGV[5])
if ready > now then
  redis.call('HSET', KEYS[1], 'state', 'delayed')
  redis.call('ZADD', KEYS[3], ARGV[4], ARGV[1])
else
  redis.call('HSET', KEYS[1], 'state', 'waiting')
  redis.call('ZADD', KEYS[2], string.format('%.0f', pv * 1e13 + ready), ARGV[1])
end
return 1
"""

_CLAIM = """
local now = tonumber(ARGV[2])
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[2], 'LIMIT', 0, 1000)
for _, id in ipairs(due) do
  local jk = ARGV[1] .. id
  local pv = tonumber(redis.call('HGET', jk, 'pv') or '5')
  local ready = tonumber(redis.call('HGET', jk, 'ready_at') or ARGV[2])
  redis.call('ZREM', KEYS[2], id)
  redis.call('ZADD', KEYS[1], string.format('%.0f', pv * 1e13 + ready), id)
  redis.call('HSET', jk, 'state', 'waiting')
end
local head = redis.call('ZRANGE', KEYS[1], 0, 0)
if #head == 0 then return false end
local id = head[1]
local jk = ARGV[1] .. id
redis.call('ZREM', KEYS[1], id)
local lease = string.format('%.0f', now + tonumber(ARGV[3]))
redis.call('ZADD', KEYS[3], lease, id)
redis.call('HSET', jk, 'state', 'active', 'token', ARGV[4], 'lease_until', lease, 'started_at', ARGV[2])
redis.call('HINCRBY', jk, 'attempts', 1)
return id
"""

_EXTEND = """
if redis.call('HGET', KEYS[1], 'state') ~= 'active' then return 0 end
if redis.call('HGET', KEYS[1], 'token') ~= ARGV[2] then return 0 end
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
redis.call('HSET', KEYS[1], 'lease_until', ARGV[3])
return 1
"""

_FINISH = """
if redis.call('HGET', KEYS[1], 'state') ~= 'active' then return 0 end
if redis.call('HGET', KEYS[1], 'token') ~= ARGV[2] then return 0 end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZADD', KEYS[3], ARGV[4], ARGV[1])
redis.call('HSET', KEYS[1], 'state', ARGV[3], 'finished_at', ARGV[4])
if ARGV[5] ~= '' then redis.call('HSET', KEYS[1], 'result', ARGV[5]) end
if ARGV[6] ~= '' then redis.call('HSET', KEYS[1], 'last_error', ARGV[6]) end
redis.call('HDEL', KEYS[1], 'token', 'lease_until')
return 1
"""

_RESCHEDULE = """
if redis.call('HGET', KEYS[1], 'state') ~= 'active' then return 0 end
if redis.call('HGET', KEYS[1], 'token') ~= ARGV[2] then return 0 end
local ready = tonumber(ARGV[3])
local now = tonumber(ARGV[4])
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[1], 'token', 'lease_until')
redis.call('HSET', KEYS[1], 'ready_at', ARGV[3])
if ARGV[5] ~= '' then redis.call('HSET', KEYS[1], 'last_error', ARGV[5]) end
if ARGV[6] == '1' then redis.call('HINCRBY', KEYS[1], 'failures', 1) end
if ready > now then
  redis.call('HSET', KEYS[1], 'state', 'delayed')
  redis.call('ZADD', KEYS[3], ARGV[3], ARGV[1])
else
  local pv = tonumber(redis.call('HGET', KEYS[1], 'pv') or '5')
  redis.call('HSET', KEYS[1], 'state', 'waiting')
  redis.call('ZADD', KEYS[4], string.format('%.0f', pv * 1e13 + ready), ARGV[1])
end
return 1
"""

_RECOVER = """
local now = tonumber(ARGV[2])
local max_stalled = tonumber(ARGV[3])
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[2])
local requeued = {}
local failed = {}
for _, id in ipairs(ids) do
  local jk = ARGV[1] .. id
  redis.call('ZREM', KEYS[1], id)
  redis.call('HDEL', jk, 'token', 'lease_until')
  local stalled = redis.call('HINCRBY', jk, 'stalled', 1)
  if stalled > max_stalled then
    redis.call('HSET', jk, 'state', 'failed', 'finished_at', ARGV[2], 'last_error', ARGV[4])
    redis.call('ZADD', KEYS[3], ARGV[2], id)
    table.insert(failed, id)
  else
    local pv = tonumber(redis.call('HGET', jk, 'pv') or '5')
    redis.call('HSET', jk, 'state', 'waiting', 'ready_at', ARGV[2])
    redis.call('ZADD', KEYS[2], string.format('%.0f', pv * 1e13 + now), id)
    table.insert(requeued, id)
  end
end
return {requeued, failed}
"""

_CLEAN = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[2], 'LIMIT', 0, tonumber(ARGV[3]))
local removed = 0
for _, id in ipairs(ids) do
  local jk = ARGV[1] .. id
  redis.call('ZREM', KEYS[1], id)
  if redis.call('HGET', jk, 'state') == ARGV[4] then
    redis.call('DEL', jk)
    removed = removed + 1
  end
end
return removed
"""

_REMOVE = """
for i = 2, #KEYS do redis.call('ZREM', KEYS[i], ARGV[1]) end
return redis.call('DEL', KEYS[1])
"""


def _ms(ts: float) -> int:
    return int(round(ts * 1000))


def _decode(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisJobBackend:
    name = "redis"

    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        self.redis_url: str = str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        self._prefix: str = str(QUEUE_SETTINGS.get("key_prefix", "ingest"))
        timeout = float(QUEUE_SETTINGS.get("health_check_timeout", 2.0))  # type: ignore[arg-type]
        self._client: redis.Redis = client if client is not None else redis.from_url(
            self.redis_url, socket_connect_timeout=timeout
        )
        self._scripts = {
            "add": self._client.register_script(_ADD),
            "claim": self._client.register_script(_CLAIM),
            "extend": self._client.register_script(_EXTEND),
            "finish": self._client.register_script(_FINISH),
            "reschedule": self._client.register_script(_RESCHEDULE),
            "recover": self._client.register_script(_RECOVER),
            "clean": self._client.register_script(_CLEAN),
            "remove": self._client.register_script(_REMOVE),
        }

    # ----------------------------- key helpers ----------------------------- #
    def _job_prefix(self, queue: str) -> str:
        return f"{self._prefix}:{queue}:job:"

    def _job_key(self, queue: str, job_id: str) -> str:
        return f"{self._job_prefix(queue)}{job_id}"

    def _set_key(self, queue: str, state: JobState | str) -> str:
        value = state.value if isinstance(state, JobState) else state
        return f"{self._prefix}:{queue}:{value}"

    def _run(self, script: str, keys: list[str], args: list[Any], client: Any = None) -> Any:
        try:
            return self._scripts[script](keys=keys, args=args, client=client)
        except redis.RedisError as e:
            logger.error("Redis error during job store operation", script=script, error=str(e))
            raise QueueUnavailableError(f"Redis job store unavailable: {e}") from e

    # ----------------------------- serialization ----------------------------- #
    @staticmethod
    def _serialize(job: JobRecord) -> str:
        return json.dumps({
            "job_type": job.job_type,
            "payload": job.payload,
            "dedup_key": job.dedup_key,
            "priority": job.priority,
            "priority_value": job.priority_value,
            "max_attempts": job.max_attempts,
        })

    def _safe_int_conversion(self, value: Any) -> int:
        """Safely convert a value to int, handling various Redis response types."""
        if value is None:
            return 0
        try:
            if isinstance(value, bytes):
                value = value.decode('utf-8')
            return int(float(value))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Failed to convert {type(value)} to int", error=str(e))
            return 0

    def _to_record(self, queue: str, job_id: str, raw: dict) -> JobRecord:
        fields = {_decode(k): _decode(v) for k, v in raw.items()}
        data = json.loads(fields.get("data") or "{}")

        def _ts(name: str) -> Optional[float]:
            value = fields.get(name)
            return int(value) / 1000.0 if value not in (None, "") else None

        result = fields.get("result")
        return JobRecord(
            queue=queue,
            job_id=job_id,
            job_type=data.get("job_type", ""),
            payload=data.get("payload", {}),
            dedup_key=data.get("dedup_key"),
            priority=data.get("priority", "normal"),
            priority_value=int(data.get("priority_value", 5)),
            state=JobState(fields.get("state") or JobState.WAITING.value),
            attempts_made=self._safe_int_conversion(fields.get("attempts")),
            failures_made=self._safe_int_conversion(fields.get("failures")),
            max_attempts=int(data.get("max_attempts", 3)),
            created_at=_ts("created_at") or 0.0,
            ready_at=_ts("ready_at") or 0.0,
            started_at=_ts("started_at"),
            finished_at=_ts("finished_at"),
            lease_token=fields.get("token"),
            lease_expires_at=_ts("lease_until"),
            stalled_count=self._safe_int_conversion(fields.get("stalled")),
            last_error=fields.get("last_error"),
            result=json.loads(result) if result else None,
        )

    # ----------------------------- public API ----------------------------- #
    def add(self, jobs: Sequence[JobRecord], now: float) -> list[bool]:
        if not jobs:
            return []
        try:
            pipe = self._client.pipeline(transaction=False)
            for job in jobs:
                q = job.queue
                self._scripts["add"](
                    keys=[
                        self._job_key(q, job.job_id),
                        self._set_key(q, JobState.WAITING),
                        self._set_key(q, JobState.DELAYED),
                        self._set_key(q, JobState.COMPLETED),
                        self._set_key(q, JobState.FAILED),
                    ],
                    args=[job.job_id, self._serialize(job), job.priority_value, _ms(job.ready_at), _ms(now)],
                    client=pipe,
                )
            results = pipe.execute()
        except redis.RedisError as e:
            logger.error("Redis error during enqueue", error=str(e), jobs=len(jobs))
            raise QueueUnavailableError(f"Redis job store unavailable: {e}") from e
        return [self._safe_int_conversion(r) == 1 for r in results]

    def get(self, queue: str, job_id: str) -> Optional[JobRecord]:
        try:
            raw = self._client.hgetall(self._job_key(queue, job_id))
        except redis.RedisError as e:
            raise QueueUnavailableError(f"Redis job store unavailable: {e}") from e
        if not raw:
            return None
        return self._to_record(queue, job_id, raw)

    def remove(self, queue: str, job_id: str) -> bool:
        keys = [self._job_key(queue, job_id)] + [self._set_key(queue, s) for s in JOB_STATES]
        return self._safe_int_conversion(self._run("remove", keys, [job_id])) > 0

    def claim(self, queue: str, now: float, lease_seconds: float, token: str) -> Optional[JobRecord]:
        job_id = self._run(
            "claim",
            [self._set_key(queue, JobState.WAITING), self._set_key(queue, JobState.DELAYED), self._set_key(queue, JobState.ACTIVE)],
            [self._job_prefix(queue), _ms(now), _ms(lease_seconds), token],
        )
        if not job_id:
            return None
        return self.get(queue, _decode(job_id) or "")

    def extend_lease(self, queue: str, job_id: str, token: str, lease_until: float) -> bool:
        result = self._run(
            "extend",
            [self._job_key(queue, job_id), self._set_key(queue, JobState.ACTIVE)],
            [job_id, token, _ms(lease_until)],
        )
        return self._safe_int_conversion(result) == 1

    def finish(self, queue: str, job_id: str, token: str, state: JobState, now: float, *, result: Optional[dict] = None, reason: Optional[str] = None) -> bool:
        if not state.is_terminal:
            raise ValueError(f"finish() requires a terminal state, got {state}")
        outcome = self._run(
            "finish",
            [self._job_key(queue, job_id), self._set_key(queue, JobState.ACTIVE), self._set_key(queue, state)],
            [job_id, token, state.value, _ms(now), json.dumps(result, default=str) if result is not None else "", reason or ""],
        )
        return self._safe_int_conversion(outcome) == 1

    def reschedule(self, queue: str, job_id: str, token: str, ready_at: float, now: float, reason: str, *, failed: bool = False) -> bool:
        outcome = self._run(
            "reschedule",
            [
                self._job_key(queue, job_id),
                self._set_key(queue, JobState.ACTIVE),
                self._set_key(queue, JobState.DELAYED),
                self._set_key(queue, JobState.WAITING),
            ],
            [job_id, token, _ms(ready_at), _ms(now), reason or "", "1" if failed else "0"],
        )
        return self._safe_int_conversion(outcome) == 1

    def recover_stalled(self, queue: str, now: float, max_stalled: int) -> tuple[list[str], list[str]]:
        result = self._run(
            "recover",
            [self._set_key(queue, JobState.ACTIVE), self._set_key(queue, JobState.WAITING), self._set_key(queue, JobState.FAILED)],
            [self._job_prefix(queue), _ms(now), max_stalled, STALLED_REASON],
        )
        requeued, failed = (result or [[], []])
        return [_decode(i) or "" for i in requeued], [_decode(i) or "" for i in failed]

    def counts(self, queue: str) -> dict[str, int]:
        try:
            pipe = self._client.pipeline(transaction=False)
            for state in JOB_STATES:
                pipe.zcard(self._set_key(queue, state))
            values = pipe.execute()
        except redis.RedisError as e:
            raise QueueUnavailableError(f"Redis job store unavailable: {e}") from e
        return {state: self._safe_int_conversion(v) for state, v in zip(JOB_STATES, values)}

    def clean(self, queue: str, state: JobState, older_than: float, limit: int) -> int:
        result = self._run(
            "clean",
            [self._set_key(queue, state)],
            [self._job_prefix(queue), _ms(older_than), int(limit), state.value],
        )
        return self._safe_int_conversion(result)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except (redis.RedisError, ConnectionError) as e:
            logger.warning("Redis ping failed", error=str(e))
            return False

    def close(self) -> None:
        try:
            self._client.close()
        except redis.RedisError as e:  # pragma: no cover
            logger.warning("Error closing Redis client", error=str(e))


__all__ = ["RedisJobBackend"]
