from __future__ import annotations

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from inboxrag.apps.api.deps import get_app_container
from inboxrag.core.config import get_settings
from inboxrag.core.errors import InfrastructureFailure
from inboxrag.persistence.db import pool_stats
from inboxrag.services.container import Container
from inboxrag.services.telemetry import counters_snapshot, external_call_stats, gauges_snapshot
from inboxrag.workers.pipeline_worker import get_worker_heartbeat


logger = logging.getLogger(__name__)
router = APIRouter(tags=["ops"])


@router.get("/health")
async def health(container: Container = Depends(get_app_container)) -> dict:
    settings = get_settings()
    storage_ok = True
    try:
        await container.storage.tenants.ping()
    except InfrastructureFailure:
        storage_ok = False
    heartbeat = await get_worker_heartbeat(container)
    worker_alive: bool | None = None
    if container.redis is not None:
        worker_alive = (
            heartbeat is not None
            and (datetime.now(timezone.utc) - heartbeat).total_seconds() <= settings.worker_heartbeat_stale_after_s
        )
    return {
        "status": "ok" if storage_ok else "degraded",
        "storage": "ok" if storage_ok else "unavailable",
        "queue_backend": container.queue_backend,
        "execution_mode": settings.execution_mode,
        "worker_heartbeat": heartbeat.isoformat() if heartbeat else None,
        "worker_alive": worker_alive,
    }


@router.get("/ops/queue")
async def queue_stats(container: Container = Depends(get_app_container)) -> dict:
    depth = await container.queue.depth()
    return {
        "pending": depth.pending,
        "leased": depth.leased,
        "dead": depth.dead,
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "db_pool": pool_stats(),
        "external_calls": {
            integration: external_call_stats(integration)
            for integration in ("embeddings.http", "generation.http")
        },
    }


@router.get("/ops/dead-letters")
async def list_dead_letters(
    limit: int = Query(default=100, ge=1, le=1000),
    container: Container = Depends(get_app_container),
) -> dict:
    letters = await container.queue.dead_letters(limit)
    return {
        "items": [
            {
                "key": letter.key,
                "kind": letter.kind,
                "attempts": letter.attempts,
                "last_error": letter.last_error,
                "payload": letter.payload,
            }
            for letter in letters
        ]
    }


@router.post("/ops/dead-letters/{key:path}/requeue")
async def requeue_dead_letter(key: str, container: Container = Depends(get_app_container)) -> dict:
    if not await container.queue.requeue_dead_letter(key):
        raise HTTPException(status_code=404, detail="dead letter not found")
    logger.info("dead_letter_requeued key=%s", key)
    return {"key": key, "status": "requeued"}
