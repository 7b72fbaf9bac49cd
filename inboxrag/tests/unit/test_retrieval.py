from __future__ import annotations

from datetime import date

import pytest

from inboxrag.core.config import EMBED_DIM
from inboxrag.core.errors import QuotaExceeded, RetrievalError
from inboxrag.domain.records import ChunkInput, NewDocument, ScoredChunk
from inboxrag.persistence.base import Storage
from inboxrag.persistence.memory import build_memory_storage
from inboxrag.providers.embeddings.hashing import embed_text
from inboxrag.services.plans import PlanCatalog
from inboxrag.services.retrieval import RetrievalEngine, build_context, format_context
from inboxrag.services.usage import UsageLedger
from inboxrag.tests.utils.seed import TENANT_A, TENANT_B


DAY = date(2026, 3, 2)


def _engine(memory_state) -> tuple[RetrievalEngine, Storage]:
    storage, _ = build_memory_storage(memory_state)
    ledger = UsageLedger(storage.usage, PlanCatalog(storage.tenants))
    return RetrievalEngine(store=storage.knowledge, ledger=ledger), storage


async def _seed_document(storage: Storage, tenant_id: str, document_id: str, chunks: list[tuple[int, str]]) -> None:
    await storage.knowledge.create_document(
        NewDocument(
            id=document_id,
            tenant_id=tenant_id,
            name=f"{document_id}.txt",
            content_type="text/plain",
            size_bytes=100,
            hash=f"hash-{tenant_id}-{document_id}",
            content="\n\n".join(text for _, text in chunks),
        )
    )
    await storage.knowledge.replace_chunks(
        document_id,
        tenant_id,
        [
            ChunkInput(chunk_index=index, content=text, token_count=10, embedding=embed_text(text))
            for index, text in chunks
        ],
    )


@pytest.mark.asyncio
async def test_search_never_crosses_tenants(memory_state) -> None:
    engine, storage = _engine(memory_state)
    await _seed_document(storage, TENANT_A, "doc-a", [(0, "We open at 9am every weekday")])
    await _seed_document(storage, TENANT_B, "doc-b", [(0, "We open at 9am every weekday")])

    results = await engine.search(TENANT_A, embed_text("when do you open"), 5, day=DAY)

    assert [item.document_id for item in results] == ["doc-a"]
    assert all(item.tenant_id == TENANT_A for item in results)


@pytest.mark.asyncio
async def test_results_rank_by_similarity(memory_state) -> None:
    engine, storage = _engine(memory_state)
    await _seed_document(
        storage,
        TENANT_A,
        "doc-a",
        [(0, "Shipping takes three business weeks"), (1, "Refunds are accepted within thirty days of purchase")],
    )

    results = await engine.search(TENANT_A, embed_text("refunds within thirty days"), 2, day=DAY)

    assert results[0].chunk_index == 1
    assert results[0].score >= results[1].score
    assert 0.0 <= results[1].score <= 1.0


@pytest.mark.asyncio
async def test_ties_break_on_chunk_index(memory_state) -> None:
    engine, storage = _engine(memory_state)
    await _seed_document(storage, TENANT_A, "doc-a", [(1, "same words here"), (0, "same words here")])

    results = await engine.search(TENANT_A, embed_text("same words here"), 2, day=DAY)

    assert [item.chunk_index for item in results] == [0, 1]


@pytest.mark.asyncio
async def test_k_is_clamped(memory_state) -> None:
    engine, storage = _engine(memory_state)
    await _seed_document(storage, TENANT_A, "doc-a", [(i, f"policy clause {i}") for i in range(25)])
    query = embed_text("policy clause")

    assert len(await engine.search(TENANT_A, query, 0, day=DAY)) == 1
    assert len(await engine.search(TENANT_A, query, 100, day=DAY)) == 20


@pytest.mark.asyncio
async def test_search_consumes_rag_quota(memory_state) -> None:
    engine, storage = _engine(memory_state)
    await _seed_document(storage, TENANT_A, "doc-a", [(0, "hello there")])

    await engine.search(TENANT_A, embed_text("hello"), day=DAY, receipt_key="message:m1:rag")
    await engine.search(TENANT_A, embed_text("hello"), day=DAY, receipt_key="message:m1:rag")

    assert memory_state.counters[(TENANT_A, DAY)]["rag_queries"] == 1


@pytest.mark.asyncio
async def test_exhausted_rag_quota_raises(memory_state) -> None:
    engine, _ = _engine(memory_state)
    memory_state.counters[(TENANT_A, DAY)] = {"rag_queries": 100}

    with pytest.raises(QuotaExceeded) as exc_info:
        await engine.search(TENANT_A, embed_text("hello"), day=DAY)

    assert exc_info.value.kind == "rag_queries"
    assert memory_state.counters[(TENANT_A, DAY)]["rag_queries"] == 100


@pytest.mark.asyncio
async def test_dimension_mismatch_fails_fast(memory_state) -> None:
    engine, _ = _engine(memory_state)

    with pytest.raises(RetrievalError):
        await engine.search(TENANT_A, [0.1, 0.2], day=DAY)
    assert (TENANT_A, DAY) not in memory_state.counters


@pytest.mark.asyncio
async def test_zero_vector_returns_nothing(memory_state) -> None:
    engine, storage = _engine(memory_state)
    await _seed_document(storage, TENANT_A, "doc-a", [(0, "hello there")])

    assert await engine.search(TENANT_A, [0.0] * EMBED_DIM, day=DAY) == []


@pytest.mark.asyncio
async def test_min_score_filters_weak_matches(memory_state) -> None:
    engine, storage = _engine(memory_state)
    await _seed_document(storage, TENANT_A, "doc-a", [(0, "opening hours"), (1, "parking garage location")])

    results = await engine.search(TENANT_A, embed_text("opening hours"), 5, day=DAY, min_score=0.99)

    assert [item.chunk_index for item in results] == [0]


def _scored(index: int, tokens: int) -> ScoredChunk:
    return ScoredChunk(
        chunk_id=f"c{index}",
        document_id="doc-a",
        tenant_id=TENANT_A,
        chunk_index=index,
        content=f"chunk {index} ",
        token_count=tokens,
        score=1.0 - index / 10,
    )


def test_build_context_respects_budget_in_rank_order() -> None:
    context = build_context([_scored(0, 40), _scored(1, 40), _scored(2, 40)], max_tokens=100)

    assert [chunk.chunk_id for chunk in context.chunks] == ["c0", "c1"]
    assert context.total_tokens == 80
    assert context.truncated is True


def test_build_context_keeps_oversized_best_chunk() -> None:
    context = build_context([_scored(0, 500)], max_tokens=100)

    assert [chunk.chunk_id for chunk in context.chunks] == ["c0"]
    assert context.truncated is False


def test_format_context() -> None:
    assert format_context(build_context([], max_tokens=100)) == ""
    rendered = format_context(build_context([_scored(0, 5), _scored(1, 5)], max_tokens=100))

    assert rendered == "Relevant knowledge:\n\n[1] chunk 0\n\n[2] chunk 1"
