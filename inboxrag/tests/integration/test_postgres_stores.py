from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date
import hashlib
import random
from uuid import uuid4

import pytest
from sqlalchemy import delete

from inboxrag.core.errors import AmbiguousChannel
from inboxrag.domain.models import (
    Channel,
    KnowledgeChunk,
    KnowledgeDocument,
    OutboundMessage,
    PipelineEvent,
    Tenant,
    UsageCounterDaily,
    UsageReceipt,
)
from inboxrag.domain.plans import DEFAULT_PLANS, PLAN_NAMES, PlanLimits
from inboxrag.domain.records import ChunkInput, NewDocument, OutboundRecord
from inboxrag.persistence.base import Storage
from inboxrag.persistence.db import dispose_engine, get_session, get_session_factory
from inboxrag.persistence.sql import build_sql_storage
from inboxrag.providers.embeddings.hashing import embed_text
from inboxrag.services.channels import ChannelResolver
from inboxrag.services.plans import PlanCatalog
from inboxrag.services.retrieval import RetrievalEngine
from inboxrag.services.usage import UsageLedger


DAY = date(2026, 3, 2)


@dataclass
class PgSeed:
    storage: Storage
    tenant_a: str
    tenant_b: str
    phone_a: str


def _random_phone() -> str:
    return "+2129" + "".join(random.choice("0123456789") for _ in range(8))


@pytest.fixture
async def pg() -> PgSeed:
    storage = build_sql_storage(get_session_factory())
    try:
        await storage.tenants.ping()
        for code, limits in DEFAULT_PLANS.items():
            await storage.tenants.upsert_plan(code, PLAN_NAMES[code], limits.to_json())
    except Exception as exc:  # noqa: BLE001
        await dispose_engine()
        pytest.skip(f"postgres with migrations unavailable: {exc}")

    suffix = uuid4().hex[:8]
    seed = PgSeed(storage=storage, tenant_a=f"t-a-{suffix}", tenant_b=f"t-b-{suffix}", phone_a=_random_phone())
    async with get_session() as session:
        session.add_all(
            [
                Tenant(id=seed.tenant_a, name="Tenant A", plan_code="starter"),
                Tenant(id=seed.tenant_b, name="Tenant B", plan_code="pro"),
            ]
        )
        await session.flush()
        session.add(
            Channel(
                id=f"{seed.tenant_a}-whatsapp",
                tenant_id=seed.tenant_a,
                name="A WhatsApp",
                config_json={"phone_number": seed.phone_a},
            )
        )
        await session.commit()
    yield seed

    tenant_ids = [seed.tenant_a, seed.tenant_b]
    async with get_session() as session:
        # Children first; tenants are referenced by channels and documents.
        for model in (
            KnowledgeChunk,
            KnowledgeDocument,
            UsageCounterDaily,
            UsageReceipt,
            OutboundMessage,
            PipelineEvent,
            Channel,
        ):
            await session.execute(delete(model).where(model.tenant_id.in_(tenant_ids)))
        await session.execute(delete(Tenant).where(Tenant.id.in_(tenant_ids)))
        await session.commit()
    await dispose_engine()


def _ledger(storage: Storage) -> UsageLedger:
    return UsageLedger(storage.usage, PlanCatalog(storage.tenants))


@pytest.mark.asyncio
async def test_concurrent_consume_never_overshoots(pg: PgSeed) -> None:
    ledger = _ledger(pg.storage)
    limits = PlanLimits(code="tight", max_daily_messages=5)

    decisions = await asyncio.gather(
        *[ledger.try_consume(pg.tenant_a, DAY, {"messages": 1}, limits=limits) for _ in range(20)]
    )

    assert sum(1 for decision in decisions if decision.allowed) == 5
    counters = await pg.storage.usage.get_counters(pg.tenant_a, DAY)
    assert counters["messages"] == 5


@pytest.mark.asyncio
async def test_receipt_replay_and_rollback(pg: PgSeed) -> None:
    ledger = _ledger(pg.storage)
    tight = PlanLimits(code="tight", max_daily_messages=0)

    blocked = await ledger.try_consume(pg.tenant_a, DAY, {"messages": 1}, receipt_key="r1", limits=tight)
    first = await ledger.try_consume(pg.tenant_a, DAY, {"messages": 1}, receipt_key="r1")
    replay = await ledger.try_consume(pg.tenant_a, DAY, {"messages": 1}, receipt_key="r1")

    # The blocked attempt left no receipt behind, so the next attempt applies.
    assert not blocked.allowed and blocked.kind == "messages"
    assert first.allowed and not first.replayed
    assert replay.replayed
    assert (await pg.storage.usage.get_counters(pg.tenant_a, DAY))["messages"] == 1


@pytest.mark.asyncio
async def test_concurrent_identical_uploads_converge(pg: PgSeed) -> None:
    content = "Opening hours are 9am to 6pm."
    digest = hashlib.sha256(content.encode()).hexdigest()

    results = await asyncio.gather(
        *[
            pg.storage.knowledge.create_document(
                NewDocument(
                    id=str(uuid4()),
                    tenant_id=pg.tenant_a,
                    name="hours.txt",
                    content_type="text/plain",
                    size_bytes=len(content),
                    hash=digest,
                    content=content,
                )
            )
            for _ in range(5)
        ]
    )

    assert len({document.id for document, _ in results}) == 1
    assert sum(1 for _, created in results if created) == 1
    tenant = await pg.storage.tenants.get_tenant(pg.tenant_a)
    assert tenant.documents_count == 1
    assert tenant.documents_storage_bytes == len(content)


async def _index(storage: Storage, tenant_id: str, texts: list[str]) -> str:
    document, _ = await storage.knowledge.create_document(
        NewDocument(
            id=str(uuid4()),
            tenant_id=tenant_id,
            name="kb.txt",
            content_type="text/plain",
            size_bytes=10,
            hash=uuid4().hex,
            content="\n\n".join(texts),
        )
    )
    await storage.knowledge.replace_chunks(
        document.id,
        tenant_id,
        [
            ChunkInput(chunk_index=index, content=text, token_count=5, embedding=embed_text(text))
            for index, text in enumerate(texts)
        ],
    )
    return document.id


@pytest.mark.asyncio
async def test_vector_search_is_tenant_scoped_and_ordered(pg: PgSeed) -> None:
    own = await _index(pg.storage, pg.tenant_a, ["same words here", "same words here", "unrelated parking"])
    await _index(pg.storage, pg.tenant_b, ["same words here"])
    engine = RetrievalEngine(store=pg.storage.knowledge, ledger=_ledger(pg.storage))

    results = await engine.search(pg.tenant_a, embed_text("same words here"), 3, day=DAY)

    assert {item.tenant_id for item in results} == {pg.tenant_a}
    assert [item.document_id for item in results] == [own, own, own]
    assert [item.chunk_index for item in results[:2]] == [0, 1]
    assert results[0].score == pytest.approx(1.0, abs=1e-5)


@pytest.mark.asyncio
async def test_delete_cascades_chunks(pg: PgSeed) -> None:
    document_id = await _index(pg.storage, pg.tenant_a, ["to be removed"])

    deleted = await pg.storage.knowledge.delete_document(pg.tenant_a, document_id)

    assert deleted is not None
    assert await pg.storage.knowledge.search(pg.tenant_a, embed_text("to be removed"), 5) == []
    tenant = await pg.storage.tenants.get_tenant(pg.tenant_a)
    assert tenant.documents_count == 0


@pytest.mark.asyncio
async def test_channel_resolution_and_collisions(pg: PgSeed) -> None:
    resolver = ChannelResolver(pg.storage.channels)

    channel = await resolver.resolve(pg.phone_a)
    assert channel.tenant_id == pg.tenant_a

    async with get_session() as session:
        session.add(
            Channel(
                id=f"{pg.tenant_b}-whatsapp",
                tenant_id=pg.tenant_b,
                name="Collision",
                config_json={"business_phone_number": pg.phone_a.lstrip("+")},
            )
        )
        await session.commit()
    with pytest.raises(AmbiguousChannel):
        await resolver.resolve(pg.phone_a)


@pytest.mark.asyncio
async def test_outbound_record_is_written_once(pg: PgSeed) -> None:
    message_id = f"wamid.{uuid4().hex}"
    record = OutboundRecord(
        id=str(uuid4()),
        provider_message_id=message_id,
        tenant_id=pg.tenant_a,
        channel_id=f"{pg.tenant_a}-whatsapp",
        from_phone="+212611111111",
        to_phone=pg.phone_a,
        inbound_text="hi",
        reply_text="hello",
        retrieved_chunk_ids=[],
        tokens_in=1,
        tokens_out=1,
    )

    assert await pg.storage.conversations.record_outbound(record) is True
    assert await pg.storage.conversations.record_outbound(record) is False
    stored = await pg.storage.conversations.get_outbound(message_id)
    assert stored.reply_text == "hello"
