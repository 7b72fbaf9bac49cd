from __future__ import annotations

from dataclasses import replace

import pytest

from inboxrag.core.errors import (
    DocumentNotFound,
    EmbeddingError,
    InvalidDocument,
    ProviderConfigError,
    QuotaExceeded,
)
from inboxrag.persistence.memory import build_memory_storage
from inboxrag.providers.generation.fake import FakeGenerationProvider
from inboxrag.services.container import build_container
from inboxrag.tests.utils.seed import TENANT_A, TENANT_B
from inboxrag.workers.pipeline_worker import run_until_empty


FAQ = (
    b"Opening hours\n\nWe are open from 9am to 6pm, Monday to Saturday.\n\n"
    b"Refunds\n\nRefunds are accepted within thirty days with a receipt."
)


class _FailingEmbedder:
    name = "failing"

    async def embed(self, texts: list[str]) -> list[list[float]]:
        raise EmbeddingError("embedding service unavailable")


@pytest.mark.asyncio
async def test_upload_returns_before_indexing(container) -> None:
    result = await container.indexer.ingest(TENANT_A, FAQ, filename="faq.txt", content_type="text/plain")

    assert result.document.status == "uploaded"
    assert result.deduplicated is False
    assert result.enqueued is True
    assert (await container.queue.depth()).pending == 1


@pytest.mark.asyncio
async def test_duplicate_upload_returns_existing_document(container, memory_state) -> None:
    first = await container.indexer.ingest(TENANT_A, FAQ, filename="faq.txt")
    second = await container.indexer.ingest(TENANT_A, FAQ, filename="faq-copy.txt")

    assert second.document.id == first.document.id
    assert second.deduplicated is True
    assert memory_state.tenants[TENANT_A].documents_count == 1
    assert memory_state.tenants[TENANT_A].documents_storage_bytes == len(FAQ)


@pytest.mark.asyncio
async def test_same_bytes_for_another_tenant_is_a_new_document(container) -> None:
    first = await container.indexer.ingest(TENANT_A, FAQ, filename="faq.txt")
    second = await container.indexer.ingest(TENANT_B, FAQ, filename="faq.txt")

    assert second.document.id != first.document.id
    assert second.deduplicated is False


@pytest.mark.asyncio
async def test_indexing_job_publishes_chunks(container, memory_state) -> None:
    result = await container.indexer.ingest(TENANT_A, FAQ, filename="faq.txt")

    assert await run_until_empty(container) == 1

    document = await container.indexer.get(TENANT_A, result.document.id)
    assert document.status == "indexed"
    assert document.chunk_count >= 1
    assert document.chunk_count == len(memory_state.chunks[document.id])
    day = container.ledger.today()
    assert memory_state.counters[(TENANT_A, day)]["docs_indexed"] == 1
    assert memory_state.counters[(TENANT_A, day)]["storage_bytes"] == len(FAQ)


@pytest.mark.asyncio
async def test_daily_indexing_quota_marks_document_failed(container, memory_state) -> None:
    memory_state.counters[(TENANT_A, container.ledger.today())] = {"docs_indexed": 5}
    result = await container.indexer.ingest(TENANT_A, FAQ, filename="faq.txt")

    await run_until_empty(container)

    document = await container.indexer.get(TENANT_A, result.document.id)
    assert document.status == "failed"
    assert document.error_reason == "quota_exceeded:docs_indexed"
    assert memory_state.chunks.get(document.id) is None


@pytest.mark.asyncio
async def test_embedding_outage_retries_then_fails(memory_state, queue) -> None:
    storage, _ = build_memory_storage(memory_state)
    wired = build_container(
        storage=storage,
        memory_state=memory_state,
        queue=queue,
        embedder=_FailingEmbedder(),
        generator=FakeGenerationProvider(),
    )
    result = await wired.indexer.ingest(TENANT_A, FAQ, filename="faq.txt")

    handled = await run_until_empty(wired)

    assert handled == 3
    document = await wired.indexer.get(TENANT_A, result.document.id)
    assert document.status == "failed"
    assert document.error_reason.startswith("EmbeddingError")
    dead = await queue.dead_letters()
    assert [item.key for item in dead] == [f"index:{TENANT_A}:{result.document.id}"]
    # Retries reuse the same usage receipt.
    assert memory_state.counters[(TENANT_A, wired.ledger.today())]["docs_indexed"] == 1


class _RejectingEmbedder:
    name = "rejecting"

    async def embed(self, texts: list[str]) -> list[list[float]]:
        raise ProviderConfigError("embedding provider rejected credentials")


class _MalformedEmbedder:
    name = "malformed"

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [{}["embedding"] for _ in texts]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("embedder", "reason_prefix"),
    [(_RejectingEmbedder(), "ProviderConfigError"), (_MalformedEmbedder(), "KeyError")],
)
async def test_unexpected_indexing_error_marks_document_failed(
    memory_state, queue, embedder, reason_prefix: str
) -> None:
    storage, _ = build_memory_storage(memory_state)
    wired = build_container(
        storage=storage,
        memory_state=memory_state,
        queue=queue,
        embedder=embedder,
        generator=FakeGenerationProvider(),
    )
    result = await wired.indexer.ingest(TENANT_A, FAQ, filename="faq.txt")

    assert await run_until_empty(wired) == 3

    document = await wired.indexer.get(TENANT_A, result.document.id)
    assert document.status == "failed"
    assert document.error_reason.startswith(reason_prefix)
    dead = await queue.dead_letters()
    assert [item.key for item in dead] == [f"index:{TENANT_A}:{result.document.id}"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("content", "content_type"),
    [
        (b"", "text/plain"),
        (b"\x89PNG\r\n", "image/png"),
        (b"\xff\xfe\xfa", "text/plain"),
    ],
)
async def test_invalid_uploads_are_rejected(container, content: bytes, content_type: str) -> None:
    with pytest.raises(InvalidDocument):
        await container.indexer.ingest(TENANT_A, content, filename="bad", content_type=content_type)


@pytest.mark.asyncio
async def test_oversized_upload_is_a_quota_error(container, memory_state) -> None:
    too_big = b"a" * (5 * 1024 * 1024 + 1)

    with pytest.raises(QuotaExceeded) as exc_info:
        await container.indexer.ingest(TENANT_A, too_big, filename="big.txt")

    assert exc_info.value.kind == "doc_size"
    assert memory_state.documents == {}


@pytest.mark.asyncio
async def test_document_count_limit_fails_indexing(container, memory_state) -> None:
    memory_state.tenants[TENANT_A] = replace(memory_state.tenants[TENANT_A], documents_count=10)
    result = await container.indexer.ingest(TENANT_A, FAQ, filename="faq.txt")

    await run_until_empty(container)

    document = await container.indexer.get(TENANT_A, result.document.id)
    assert document.status == "failed"
    assert document.error_reason == "quota_exceeded:documents"
    assert memory_state.counters.get((TENANT_A, container.ledger.today())) is None


@pytest.mark.asyncio
async def test_delete_removes_chunks_and_aggregates(container, memory_state) -> None:
    result = await container.indexer.ingest(TENANT_A, FAQ, filename="faq.txt")
    await run_until_empty(container)

    deleted = await container.indexer.delete(TENANT_A, result.document.id)

    assert deleted.id == result.document.id
    assert memory_state.chunks.get(result.document.id) is None
    assert memory_state.tenants[TENANT_A].documents_count == 0
    assert memory_state.tenants[TENANT_A].documents_storage_bytes == 0
    with pytest.raises(DocumentNotFound):
        await container.indexer.get(TENANT_A, result.document.id)


@pytest.mark.asyncio
async def test_documents_are_tenant_scoped(container) -> None:
    result = await container.indexer.ingest(TENANT_A, FAQ, filename="faq.txt")

    with pytest.raises(DocumentNotFound):
        await container.indexer.get(TENANT_B, result.document.id)
    with pytest.raises(DocumentNotFound):
        await container.indexer.delete(TENANT_B, result.document.id)


@pytest.mark.asyncio
async def test_index_job_for_deleted_document_is_skipped(container) -> None:
    result = await container.indexer.ingest(TENANT_A, FAQ, filename="faq.txt")
    await container.indexer.delete(TENANT_A, result.document.id)

    assert await run_until_empty(container) == 1
    assert (await container.queue.depth()).pending == 0
