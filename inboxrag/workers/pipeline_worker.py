from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timezone
import logging
import signal

from pydantic import TypeAdapter, ValidationError
from redis.exceptions import RedisError

from inboxrag.core.config import get_settings
from inboxrag.core.errors import InfrastructureFailure, LeaseLost, StorageError
from inboxrag.core.logging import configure_logging, job_id_var
from inboxrag.domain.events import JobPayload, MessageJobPayload
from inboxrag.services.container import Container, get_container, reset_container
from inboxrag.services.queue.base import Job, JobQueue
from inboxrag.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

# Keep heartbeat key stable for ops endpoint lookups.
WORKER_HEARTBEAT_KEY = "inboxrag:worker:heartbeat"

_PAYLOADS: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LeaseRenewer:
    """Keeps a job's lease alive while it runs and answers the final-write ownership check."""

    def __init__(self, queue: JobQueue, job: Job, lease_s: float) -> None:
        self._queue = queue
        self._job = job
        self._lease_s = lease_s
        self.lost = False

    async def run(self) -> None:
        # Renew every third of the lease so one missed tick never lets it expire.
        interval = max(0.05, self._lease_s / 3)
        while True:
            await asyncio.sleep(interval)
            try:
                await self._queue.extend(self._job, self._lease_s)
            except LeaseLost:
                self.lost = True
                logger.warning("lease_renewal_lost key=%s", self._job.key)
                return
            except StorageError as exc:
                # The next tick or the final check decides; the lease may still be valid.
                logger.warning("lease_renewal_failed key=%s error=%s", self._job.key, exc)

    async def check(self) -> None:
        if self.lost:
            raise LeaseLost(self._job.key)
        await self._queue.extend(self._job, self._lease_s)


def _failure_reason(exc: Exception) -> str:
    # Keep stored reasons short and free of stack traces.
    message = str(exc) or exc.__class__.__name__
    return f"{exc.__class__.__name__}: {message}"[:500]


async def _retry(container: Container, job: Job, reason: str) -> str:
    outcome = await container.queue.retry(job, reason)
    if outcome == "dead_lettered":
        increment_counter("jobs_dead_lettered_total")
        logger.error("job_dead_lettered key=%s attempts=%s reason=%s", job.key, job.attempts, reason)
    elif outcome == "retrying":
        increment_counter("jobs_retried_total")
        logger.warning("job_retry_scheduled key=%s attempt=%s reason=%s", job.key, job.attempts, reason)
    else:
        increment_counter("jobs_lease_lost_total")
        logger.warning("job_retry_lease_lost key=%s", job.key)
    return outcome


async def handle_job(container: Container, job: Job) -> str:
    """Run one leased job and settle it with the queue.

    Returns ``acked``, ``invalid``, ``retrying``, ``dead_lettered`` or ``lease_lost``.
    """
    settings = get_settings()
    token = job_id_var.set(job.key)
    lease = LeaseRenewer(container.queue, job, settings.queue_lease_s)
    renewal = asyncio.create_task(lease.run())
    try:
        try:
            payload = _PAYLOADS.validate_python({**job.payload, "kind": job.kind})
        except ValidationError as exc:
            # A malformed payload will never succeed; settle it instead of retrying.
            increment_counter("jobs_invalid_total")
            logger.error("job_payload_invalid key=%s errors=%s", job.key, exc.error_count())
            await container.queue.ack(job)
            return "invalid"

        try:
            if isinstance(payload, MessageJobPayload):
                outcome = await container.pipeline.process(payload.event, lease=lease)
                if outcome.retryable:
                    return await _retry(container, job, outcome.error or "pipeline_failed")
            else:
                await container.indexer.run_indexing_job(
                    payload,
                    job_id=job.key,
                    attempt=job.attempts,
                    max_attempts=settings.queue_max_attempts,
                    lease=lease,
                )
        except LeaseLost:
            # Another consumer owns the job now; leave settlement to it.
            increment_counter("jobs_lease_lost_total")
            logger.warning("job_lease_lost key=%s", job.key)
            return "lease_lost"
        except InfrastructureFailure as exc:
            return await _retry(container, job, _failure_reason(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("job_unexpected_error key=%s", job.key)
            return await _retry(container, job, _failure_reason(exc))

        if not await container.queue.ack(job):
            increment_counter("jobs_lease_lost_total")
            logger.warning("job_ack_lease_lost key=%s", job.key)
            return "lease_lost"
        increment_counter("jobs_completed_total")
        return "acked"
    finally:
        renewal.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await renewal
        job_id_var.reset(token)


async def run_until_empty(container: Container, *, max_jobs: int = 1000) -> int:
    # Drain visible jobs in-process; used by inline execution mode and tests.
    settings = get_settings()
    handled = 0
    while handled < max_jobs:
        job = await container.queue.dequeue(settings.queue_lease_s)
        if job is None:
            break
        await handle_job(container, job)
        handled += 1
    return handled


async def _consume(container: Container, stop: asyncio.Event, index: int) -> None:
    settings = get_settings()
    logger.info("consumer_started index=%s", index)
    while not stop.is_set():
        try:
            job = await container.queue.dequeue(settings.queue_lease_s)
        except StorageError as exc:
            logger.warning("queue_dequeue_failed index=%s error=%s", index, exc)
            job = None
        if job is None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=settings.queue_poll_interval_s)
            continue
        await handle_job(container, job)
    logger.info("consumer_stopped index=%s", index)


async def set_worker_heartbeat(container: Container, *, timestamp: datetime | None = None) -> None:
    # Persist a heartbeat for the ops health endpoint.
    if container.redis is None:
        # Memory-backed workers have no shared place to publish liveness.
        return
    settings = get_settings()
    heartbeat_time = timestamp or _utc_now()
    await container.redis.set(
        WORKER_HEARTBEAT_KEY,
        heartbeat_time.isoformat(),
        ex=max(1, settings.worker_heartbeat_stale_after_s),
    )


async def get_worker_heartbeat(container: Container) -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    if container.redis is None:
        return None
    try:
        raw_value = await container.redis.get(WORKER_HEARTBEAT_KEY)
    except RedisError:
        return None
    if raw_value is None:
        return None
    if isinstance(raw_value, bytes):
        raw_value = raw_value.decode("utf-8")
    try:
        return datetime.fromisoformat(raw_value)
    except ValueError:
        return None


async def _heartbeat_loop(container: Container) -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat(container)
            depth = await container.queue.depth()
            set_gauge("queue_pending", depth.pending)
            set_gauge("queue_dead", depth.dead)
        except (RedisError, StorageError) as exc:
            logger.warning("heartbeat_failed error=%s", exc)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def run_worker(stop: asyncio.Event | None = None) -> None:
    configure_logging()
    settings = get_settings()
    container = get_container()
    # Storage must be reachable at startup; anything later is retried per job.
    await container.storage.tenants.ping()
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)

    concurrency = max(1, settings.worker_concurrency)
    consumers = [asyncio.create_task(_consume(container, stop, index)) for index in range(concurrency)]
    heartbeat = asyncio.create_task(_heartbeat_loop(container))
    logger.info("worker_started concurrency=%s queue=%s", concurrency, container.queue_backend)
    try:
        await stop.wait()
        # Consumers finish their current job before exiting.
        await asyncio.gather(*consumers)
    finally:
        heartbeat.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await heartbeat
        await reset_container()
        logger.info("worker_stopped")


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
