from __future__ import annotations

import logging
import time
from typing import Any, Callable
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError

from inboxrag.core.errors import LeaseLost, StorageError
from inboxrag.services.queue.base import DeadLetter, Job, QueueDepth, RetryOutcome
from inboxrag.services.resilience import backoff_delay_ms


logger = logging.getLogger(__name__)


# KEYS: jobs, visible, dead, done marker. ARGV: key, job json, now.
_ENQUEUE = """
if redis.call('EXISTS', KEYS[4]) == 1 then return 0 end
if redis.call('HEXISTS', KEYS[1], ARGV[1]) == 1 then return 0 end
if redis.call('HEXISTS', KEYS[3], ARGV[1]) == 1 then return 0 end
redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
return 1
"""

# KEYS: jobs, visible, leases, dead. ARGV: now, lease deadline, token, max attempts.
_DEQUEUE = """
local items = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1], 'LIMIT', 0, 1)
if #items == 0 then return false end
local key = items[1]
local raw = redis.call('HGET', KEYS[1], key)
if not raw then
  redis.call('ZREM', KEYS[2], key)
  redis.call('HDEL', KEYS[3], key)
  return {'skip', key}
end
local job = cjson.decode(raw)
if tonumber(job['attempts']) >= tonumber(ARGV[4]) then
  if job['last_error'] == '' then job['last_error'] = 'lease_expired' end
  job['lease_token'] = ''
  redis.call('HSET', KEYS[4], key, cjson.encode(job))
  redis.call('HDEL', KEYS[1], key)
  redis.call('ZREM', KEYS[2], key)
  redis.call('HDEL', KEYS[3], key)
  return {'dead', key}
end
job['attempts'] = tonumber(job['attempts']) + 1
job['lease_token'] = ARGV[3]
job['lease_expires_at'] = tonumber(ARGV[2])
local encoded = cjson.encode(job)
redis.call('HSET', KEYS[1], key, encoded)
redis.call('ZADD', KEYS[2], ARGV[2], key)
redis.call('HSET', KEYS[3], key, ARGV[3])
return {'job', encoded}
"""

# KEYS: jobs, visible, leases, done marker. ARGV: key, token, ttl seconds.
_ACK = """
if redis.call('HGET', KEYS[3], ARGV[1]) ~= ARGV[2] then return 0 end
redis.call('HDEL', KEYS[1], ARGV[1])
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[3], ARGV[1])
redis.call('SET', KEYS[4], '1', 'EX', ARGV[3])
return 1
"""

# KEYS: visible, leases. ARGV: key, token, new deadline.
_EXTEND = """
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then return 0 end
redis.call('ZADD', KEYS[1], ARGV[3], ARGV[1])
return 1
"""

# KEYS: jobs, visible, leases, dead. ARGV: key, token, visible at, reason, max attempts.
_RETRY = """
if redis.call('HGET', KEYS[3], ARGV[1]) ~= ARGV[2] then return 'lease_lost' end
local job = cjson.decode(redis.call('HGET', KEYS[1], ARGV[1]))
job['last_error'] = ARGV[4]
job['lease_token'] = ''
redis.call('HDEL', KEYS[3], ARGV[1])
if tonumber(job['attempts']) >= tonumber(ARGV[5]) then
  redis.call('HSET', KEYS[4], ARGV[1], cjson.encode(job))
  redis.call('HDEL', KEYS[1], ARGV[1])
  redis.call('ZREM', KEYS[2], ARGV[1])
  return 'dead_lettered'
end
redis.call('HSET', KEYS[1], ARGV[1], cjson.encode(job))
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
return 'retrying'
"""

# KEYS: jobs, visible, dead. ARGV: key, now.
_REQUEUE = """
local raw = redis.call('HGET', KEYS[3], ARGV[1])
if not raw then return 0 end
local job = cjson.decode(raw)
job['attempts'] = 0
job['lease_token'] = ''
redis.call('HSET', KEYS[1], ARGV[1], cjson.encode(job))
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
redis.call('HDEL', KEYS[3], ARGV[1])
return 1
"""


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


class RedisJobQueue:
    """Durable lease queue: a job hash, a visibility sorted set, lease tokens and a dead-letter hash.

    Every state transition runs as one Lua script, so concurrent consumers in any
    number of processes observe a single order of events.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str,
        max_attempts: int,
        backoff_base_ms: int,
        backoff_max_ms: int,
        completed_ttl_s: int,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._max_attempts = max_attempts
        self._backoff_base_ms = backoff_base_ms
        self._backoff_max_ms = backoff_max_ms
        self._completed_ttl_s = max(1, int(completed_ttl_s))
        # Scores come from the client clock; consumers are expected to run NTP-synced hosts.
        self._time = time_source or time.time
        self._enqueue = redis.register_script(_ENQUEUE)
        self._dequeue = redis.register_script(_DEQUEUE)
        self._ack = redis.register_script(_ACK)
        self._extend = redis.register_script(_EXTEND)
        self._retry = redis.register_script(_RETRY)
        self._requeue = redis.register_script(_REQUEUE)

    @property
    def _jobs_key(self) -> str:
        return f"{self._prefix}:jobs"

    @property
    def _visible_key(self) -> str:
        return f"{self._prefix}:visible"

    @property
    def _leases_key(self) -> str:
        return f"{self._prefix}:leases"

    @property
    def _dead_key(self) -> str:
        return f"{self._prefix}:dead"

    def _done_key(self, key: str) -> str:
        return f"{self._prefix}:done:{key}"

    async def enqueue(self, key: str, kind: str, payload: dict[str, Any]) -> bool:
        now = self._time()
        job = Job(key=key, kind=kind, payload=payload, enqueued_at=now)
        try:
            added = await self._enqueue(
                keys=[self._jobs_key, self._visible_key, self._dead_key, self._done_key(key)],
                args=[key, job.to_json(), now],
            )
        except RedisError as exc:
            raise StorageError("queue enqueue failed") from exc
        return bool(int(added))

    async def dequeue(self, lease_s: float) -> Job | None:
        while True:
            now = self._time()
            token = uuid4().hex
            try:
                result = await self._dequeue(
                    keys=[self._jobs_key, self._visible_key, self._leases_key, self._dead_key],
                    args=[now, now + lease_s, token, self._max_attempts],
                )
            except RedisError as exc:
                raise StorageError("queue dequeue failed") from exc
            if not result:
                return None
            status, value = _decode(result[0]), _decode(result[1])
            if status == "job":
                return Job.from_json(value)
            if status == "dead":
                logger.warning("job_dead_lettered key=%s reason=lease_expired", value)
            # Skipped and dead-lettered entries are not deliverable; look again.

    async def ack(self, job: Job) -> bool:
        try:
            acked = await self._ack(
                keys=[self._jobs_key, self._visible_key, self._leases_key, self._done_key(job.key)],
                args=[job.key, job.lease_token or "", self._completed_ttl_s],
            )
        except RedisError as exc:
            raise StorageError("queue ack failed") from exc
        return bool(int(acked))

    async def extend(self, job: Job, lease_s: float) -> None:
        deadline = self._time() + lease_s
        try:
            extended = await self._extend(
                keys=[self._visible_key, self._leases_key],
                args=[job.key, job.lease_token or "", deadline],
            )
        except RedisError as exc:
            raise StorageError("queue extend failed") from exc
        if not int(extended):
            raise LeaseLost(job.key)
        job.lease_expires_at = deadline

    async def retry(self, job: Job, reason: str) -> RetryOutcome:
        delay_ms = backoff_delay_ms(job.attempts, base_ms=self._backoff_base_ms, max_ms=self._backoff_max_ms)
        try:
            outcome = await self._retry(
                keys=[self._jobs_key, self._visible_key, self._leases_key, self._dead_key],
                args=[job.key, job.lease_token or "", self._time() + delay_ms / 1000.0, reason[:500], self._max_attempts],
            )
        except RedisError as exc:
            raise StorageError("queue retry failed") from exc
        return _decode(outcome)  # type: ignore[return-value]

    async def is_completed(self, key: str) -> bool:
        try:
            return bool(await self._redis.exists(self._done_key(key)))
        except RedisError as exc:
            raise StorageError("queue lookup failed") from exc

    async def dead_letters(self, limit: int = 100) -> list[DeadLetter]:
        try:
            raw = await self._redis.hgetall(self._dead_key)
        except RedisError as exc:
            raise StorageError("dead letter listing failed") from exc
        letters: list[DeadLetter] = []
        for _, value in sorted(raw.items(), key=lambda item: _decode(item[0]))[:limit]:
            job = Job.from_json(_decode(value))
            letters.append(
                DeadLetter(
                    key=job.key,
                    kind=job.kind,
                    payload=job.payload,
                    attempts=job.attempts,
                    last_error=job.last_error,
                )
            )
        return letters

    async def requeue_dead_letter(self, key: str) -> bool:
        try:
            moved = await self._requeue(
                keys=[self._jobs_key, self._visible_key, self._dead_key],
                args=[key, self._time()],
            )
        except RedisError as exc:
            raise StorageError("dead letter requeue failed") from exc
        return bool(int(moved))

    async def depth(self) -> QueueDepth:
        try:
            total = await self._redis.hlen(self._jobs_key)
            leased = await self._redis.hlen(self._leases_key)
            dead = await self._redis.hlen(self._dead_key)
        except RedisError as exc:
            raise StorageError("queue depth failed") from exc
        return QueueDepth(pending=max(0, int(total) - int(leased)), leased=int(leased), dead=int(dead))

    async def close(self) -> None:
        await self._redis.aclose()
