from __future__ import annotations

import pytest

from inboxrag.core.errors import GenerationError
from inboxrag.domain.events import MessageJobPayload, message_job_key
from inboxrag.persistence.memory import build_memory_storage
from inboxrag.providers.embeddings.hashing import HashEmbeddingProvider
from inboxrag.providers.generation.base import GenerationRequest, GenerationResult
from inboxrag.providers.generation.fake import FakeGenerationProvider
from inboxrag.services.container import build_container
from inboxrag.services.queue.memory import MemoryJobQueue
from inboxrag.services.telemetry import counters_snapshot
from inboxrag.tests.utils.seed import TENANT_A, make_event
from inboxrag.workers.pipeline_worker import get_worker_heartbeat, handle_job, run_until_empty


class _BrokenGenerator:
    name = "broken"

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        raise GenerationError("upstream 503")


class _CrashingEmbedder:
    name = "crashing"

    async def embed(self, texts: list[str]) -> list[list[float]]:
        raise RuntimeError("bug in embedder")


class _Ticker:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _wire(memory_state, queue, *, generator=None, embedder=None):
    storage, _ = build_memory_storage(memory_state)
    return build_container(
        storage=storage,
        memory_state=memory_state,
        queue=queue,
        embedder=embedder or HashEmbeddingProvider(),
        generator=generator or FakeGenerationProvider("ok"),
    )


async def _enqueue_message(queue, message_id: str = "wamid.1") -> str:
    key = message_job_key(message_id)
    job = MessageJobPayload(event=make_event(message_id))
    await queue.enqueue(key, job.kind, job.model_dump(mode="json"))
    return key


@pytest.mark.asyncio
async def test_message_job_is_processed_and_acked(container, memory_state, queue) -> None:
    key = await _enqueue_message(queue)

    assert await run_until_empty(container) == 1

    assert await queue.is_completed(key)
    assert "wamid.1" in memory_state.outbound
    assert counters_snapshot()["jobs_completed_total"] == 1
    assert counters_snapshot()["pipeline_outcomes_total.logged"] == 1


@pytest.mark.asyncio
async def test_redelivered_webhook_is_collapsed_by_queue(container, memory_state, queue) -> None:
    await _enqueue_message(queue)
    await run_until_empty(container)
    await _enqueue_message(queue)

    assert await run_until_empty(container) == 0
    assert memory_state.counters[(TENANT_A, container.ledger.today())]["messages"] == 1


@pytest.mark.asyncio
async def test_dropped_message_is_acked_not_retried(container, memory_state, queue) -> None:
    memory_state.counters[(TENANT_A, container.ledger.today())] = {"messages": 500}
    key = await _enqueue_message(queue)

    assert await run_until_empty(container) == 1

    assert await queue.is_completed(key)
    assert await queue.dead_letters() == []


@pytest.mark.asyncio
async def test_failing_generation_dead_letters_after_max_attempts(memory_state, queue) -> None:
    wired = _wire(memory_state, queue, generator=_BrokenGenerator())
    key = await _enqueue_message(queue)

    assert await run_until_empty(wired) == 3

    dead = await queue.dead_letters()
    assert [(item.key, item.attempts) for item in dead] == [(key, 3)]
    assert dead[0].last_error == "GenerationError: upstream 503"
    assert counters_snapshot()["jobs_retried_total"] == 2
    assert counters_snapshot()["jobs_dead_lettered_total"] == 1
    # Each attempt replays the same inbound receipt.
    assert memory_state.counters[(TENANT_A, wired.ledger.today())]["messages"] == 1


@pytest.mark.asyncio
async def test_requeued_dead_letter_completes(memory_state, queue) -> None:
    broken = _wire(memory_state, queue, generator=_BrokenGenerator())
    key = await _enqueue_message(queue)
    await run_until_empty(broken)

    assert await queue.requeue_dead_letter(key)
    healthy = _wire(memory_state, queue)
    assert await run_until_empty(healthy) == 1

    assert await queue.is_completed(key)
    assert memory_state.outbound["wamid.1"].reply_text == "ok"
    assert memory_state.counters[(TENANT_A, healthy.ledger.today())]["messages"] == 1


@pytest.mark.asyncio
async def test_unexpected_errors_are_retried(memory_state, queue) -> None:
    wired = _wire(memory_state, queue, embedder=_CrashingEmbedder())
    await _enqueue_message(queue)

    await run_until_empty(wired)

    dead = await queue.dead_letters()
    assert dead[0].last_error == "RuntimeError: bug in embedder"


@pytest.mark.asyncio
async def test_invalid_payload_is_settled(container, queue) -> None:
    await queue.enqueue("message:bad", "message", {"event": {"text": "missing fields"}})
    job = await queue.dequeue(lease_s=30)

    assert await handle_job(container, job) == "invalid"
    assert await queue.is_completed("message:bad")
    assert counters_snapshot()["jobs_invalid_total"] == 1


@pytest.mark.asyncio
async def test_stale_consumer_does_not_write(memory_state) -> None:
    ticker = _Ticker()
    queue = MemoryJobQueue(
        max_attempts=3, backoff_base_ms=0, backoff_max_ms=0, completed_ttl_s=3600, time_source=ticker
    )
    wired = _wire(memory_state, queue)
    await _enqueue_message(queue)
    stale = await queue.dequeue(lease_s=30)
    ticker.now += 31
    fresh = await queue.dequeue(lease_s=30)

    assert await handle_job(wired, stale) == "lease_lost"
    assert memory_state.outbound == {}

    assert await handle_job(wired, fresh) == "acked"
    assert "wamid.1" in memory_state.outbound


@pytest.mark.asyncio
async def test_stale_index_consumer_does_not_publish(memory_state) -> None:
    ticker = _Ticker()
    queue = MemoryJobQueue(
        max_attempts=3, backoff_base_ms=0, backoff_max_ms=0, completed_ttl_s=3600, time_source=ticker
    )
    wired = _wire(memory_state, queue)
    result = await wired.indexer.ingest(TENANT_A, b"Parking is free after 6pm.", filename="parking.txt")
    stale = await queue.dequeue(lease_s=30)
    ticker.now += 31
    fresh = await queue.dequeue(lease_s=30)

    assert await handle_job(wired, stale) == "lease_lost"
    assert memory_state.documents[result.document.id].status == "uploaded"
    assert memory_state.chunks.get(result.document.id) is None

    assert await handle_job(wired, fresh) == "acked"
    assert memory_state.documents[result.document.id].status == "indexed"
    # Both consumers charged under the same receipt.
    assert memory_state.counters[(TENANT_A, wired.ledger.today())]["docs_indexed"] == 1


@pytest.mark.asyncio
async def test_index_job_runs_through_worker(container, memory_state) -> None:
    result = await container.indexer.ingest(TENANT_A, b"Parking is free after 6pm.", filename="parking.txt")

    assert await run_until_empty(container) == 1

    assert memory_state.documents[result.document.id].status == "indexed"


@pytest.mark.asyncio
async def test_memory_worker_has_no_heartbeat(container) -> None:
    assert await get_worker_heartbeat(container) is None
