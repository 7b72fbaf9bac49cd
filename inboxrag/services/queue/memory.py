from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable
from uuid import uuid4

from inboxrag.core.errors import LeaseLost
from inboxrag.services.queue.base import DeadLetter, Job, QueueDepth, RetryOutcome
from inboxrag.services.resilience import backoff_delay_ms


logger = logging.getLogger(__name__)


class MemoryJobQueue:
    """Single-process queue with the same lease and dedup semantics as the Redis queue."""

    def __init__(
        self,
        *,
        max_attempts: int,
        backoff_base_ms: int,
        backoff_max_ms: int,
        completed_ttl_s: float,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._max_attempts = max_attempts
        self._backoff_base_ms = backoff_base_ms
        self._backoff_max_ms = backoff_max_ms
        self._completed_ttl_s = completed_ttl_s
        self._time = time_source or time.time
        self._lock = asyncio.Lock()
        self._jobs: dict[str, Job] = {}
        # Pending and leased jobs share one visibility clock, like the Redis sorted set.
        self._visible_at: dict[str, float] = {}
        self._leases: dict[str, str] = {}
        # Insertion order is expiry order because every entry gets the same TTL.
        self._completed: dict[str, float] = {}
        self._dead: dict[str, Job] = {}

    def _prune_completed(self, now: float) -> None:
        while self._completed:
            key, expires_at = next(iter(self._completed.items()))
            if expires_at > now:
                break
            del self._completed[key]

    def _completed_active(self, key: str, now: float) -> bool:
        expires_at = self._completed.get(key)
        if expires_at is None:
            return False
        if expires_at <= now:
            del self._completed[key]
            return False
        return True

    async def enqueue(self, key: str, kind: str, payload: dict[str, Any]) -> bool:
        async with self._lock:
            now = self._time()
            if key in self._jobs or key in self._dead or self._completed_active(key, now):
                return False
            self._jobs[key] = Job(key=key, kind=kind, payload=dict(payload), enqueued_at=now)
            self._visible_at[key] = now
            return True

    async def dequeue(self, lease_s: float) -> Job | None:
        async with self._lock:
            while True:
                now = self._time()
                self._prune_completed(now)
                ready = [(at, key) for key, at in self._visible_at.items() if at <= now]
                if not ready:
                    return None
                _, key = min(ready)
                job = self._jobs[key]
                if job.attempts >= self._max_attempts:
                    # A lease expired after the final attempt; the consumer is presumed dead.
                    job.last_error = job.last_error or "lease_expired"
                    self._move_to_dead(key)
                    logger.warning("job_dead_lettered key=%s reason=lease_expired", key)
                    continue
                job.attempts += 1
                job.lease_token = uuid4().hex
                job.lease_expires_at = now + lease_s
                self._visible_at[key] = job.lease_expires_at
                self._leases[key] = job.lease_token
                return _copy(job)

    async def ack(self, job: Job) -> bool:
        async with self._lock:
            if self._leases.get(job.key) != job.lease_token:
                return False
            self._jobs.pop(job.key, None)
            self._visible_at.pop(job.key, None)
            self._leases.pop(job.key, None)
            now = self._time()
            self._prune_completed(now)
            self._completed.pop(job.key, None)
            self._completed[job.key] = now + self._completed_ttl_s
            return True

    async def extend(self, job: Job, lease_s: float) -> None:
        async with self._lock:
            if self._leases.get(job.key) != job.lease_token:
                raise LeaseLost(job.key)
            expires_at = self._time() + lease_s
            self._visible_at[job.key] = expires_at
            self._jobs[job.key].lease_expires_at = expires_at
            job.lease_expires_at = expires_at

    async def retry(self, job: Job, reason: str) -> RetryOutcome:
        async with self._lock:
            if self._leases.get(job.key) != job.lease_token:
                return "lease_lost"
            stored = self._jobs[job.key]
            stored.last_error = reason
            stored.lease_token = None
            self._leases.pop(job.key, None)
            if stored.attempts >= self._max_attempts:
                self._move_to_dead(job.key)
                return "dead_lettered"
            delay_ms = backoff_delay_ms(
                stored.attempts, base_ms=self._backoff_base_ms, max_ms=self._backoff_max_ms
            )
            self._visible_at[job.key] = self._time() + delay_ms / 1000.0
            return "retrying"

    async def is_completed(self, key: str) -> bool:
        async with self._lock:
            return self._completed_active(key, self._time())

    async def dead_letters(self, limit: int = 100) -> list[DeadLetter]:
        return [
            DeadLetter(
                key=job.key,
                kind=job.kind,
                payload=dict(job.payload),
                attempts=job.attempts,
                last_error=job.last_error,
            )
            for job in list(self._dead.values())[:limit]
        ]

    async def requeue_dead_letter(self, key: str) -> bool:
        async with self._lock:
            job = self._dead.pop(key, None)
            if job is None:
                return False
            job.attempts = 0
            job.lease_token = None
            self._jobs[key] = job
            self._visible_at[key] = self._time()
            return True

    async def depth(self) -> QueueDepth:
        return QueueDepth(
            pending=len(self._jobs) - len(self._leases),
            leased=len(self._leases),
            dead=len(self._dead),
            extra={"completed": len(self._completed)},
        )

    async def close(self) -> None:
        return None

    def _move_to_dead(self, key: str) -> None:
        job = self._jobs.pop(key)
        self._visible_at.pop(key, None)
        self._leases.pop(key, None)
        job.lease_token = None
        self._dead[key] = job


def _copy(job: Job) -> Job:
    return Job(
        key=job.key,
        kind=job.kind,
        payload=dict(job.payload),
        attempts=job.attempts,
        enqueued_at=job.enqueued_at,
        lease_token=job.lease_token,
        lease_expires_at=job.lease_expires_at,
        last_error=job.last_error,
    )
