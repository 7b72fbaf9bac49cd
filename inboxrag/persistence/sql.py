from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date
from typing import Any, AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inboxrag.core.errors import StorageError
from inboxrag.domain.records import (
    ChannelRecord,
    ChunkInput,
    ConsumeResult,
    DocumentRecord,
    NewDocument,
    OutboundRecord,
    PipelineEventRecord,
    ScoredChunk,
    TenantRecord,
)
from inboxrag.persistence.base import Storage, first_exceeded
from inboxrag.persistence.repos import channels as channels_repo
from inboxrag.persistence.repos import chunks as chunks_repo
from inboxrag.persistence.repos import conversations as conversations_repo
from inboxrag.persistence.repos import documents as documents_repo
from inboxrag.persistence.repos import tenants as tenants_repo
from inboxrag.persistence.repos import usage as usage_repo


class _SqlStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        # Convert DB errors into a retryable storage failure at the store boundary.
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise StorageError(f"{operation} failed") from exc


class SqlTenantStore(_SqlStore):
    async def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        async with self._transaction("get_tenant") as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id)
            return tenants_repo.to_record(tenant) if tenant is not None else None

    async def get_plan_limits(self, plan_code: str) -> dict[str, Any] | None:
        async with self._transaction("get_plan") as session:
            plan = await tenants_repo.get_plan(session, plan_code)
            return dict(plan.limits_json or {}) if plan is not None else None

    async def upsert_plan(self, code: str, name: str, limits: dict[str, Any]) -> None:
        async with self._transaction("upsert_plan") as session:
            await tenants_repo.upsert_plan(session, code=code, name=name, limits=limits)

    async def ping(self) -> None:
        async with self._transaction("ping") as session:
            await session.execute(text("SELECT 1"))


class SqlChannelStore(_SqlStore):
    async def list_active_channels(self, channel_type: str) -> list[ChannelRecord]:
        async with self._transaction("list_channels") as session:
            rows = await channels_repo.list_active_channels(session, channel_type)
            return [channels_repo.to_record(row) for row in rows]


class SqlUsageStore(_SqlStore):
    async def consume(
        self,
        *,
        tenant_id: str,
        day: date,
        deltas: dict[str, int],
        limits: dict[str, int],
        headroom: dict[str, int],
        receipt_key: str | None,
    ) -> ConsumeResult:
        try:
            async with self._session_factory() as session:
                async with session.begin() as tx:
                    if receipt_key is not None:
                        inserted = await usage_repo.insert_receipt(
                            session, tenant_id=tenant_id, receipt_key=receipt_key, day=day
                        )
                        if not inserted:
                            counters = await usage_repo.get_counters(session, tenant_id, day)
                            return ConsumeResult(applied=True, replayed=True, counters=counters)
                    counters = await usage_repo.conditional_increment(
                        session,
                        tenant_id=tenant_id,
                        day=day,
                        deltas=deltas,
                        limits=limits,
                        headroom=headroom,
                    )
                    if counters is not None:
                        return ConsumeResult(applied=True, counters=counters)
                    # Nothing may persist on exceedance, including the receipt.
                    current = await usage_repo.get_counters(session, tenant_id, day)
                    await tx.rollback()
        except SQLAlchemyError as exc:
            raise StorageError("usage consume failed") from exc
        return ConsumeResult(
            applied=False,
            exceeded_kind=first_exceeded(current, deltas, limits, headroom),
            counters=current,
        )

    async def get_counters(self, tenant_id: str, day: date) -> dict[str, int]:
        async with self._transaction("get_counters") as session:
            return await usage_repo.get_counters(session, tenant_id, day)


class SqlKnowledgeStore(_SqlStore):
    async def create_document(self, document: NewDocument) -> tuple[DocumentRecord, bool]:
        async with self._transaction("create_document") as session:
            created = await documents_repo.insert_if_absent(session, document)
            if created:
                await tenants_repo.adjust_document_stats(
                    session, document.tenant_id, count_delta=1, bytes_delta=document.size_bytes
                )
            row = await documents_repo.get_by_hash(session, document.tenant_id, document.hash)
            if row is None:
                raise StorageError("document vanished after insert")
            return documents_repo.to_record(row), created

    async def get_document(self, tenant_id: str, document_id: str) -> DocumentRecord | None:
        async with self._transaction("get_document") as session:
            row = await documents_repo.get_document(session, tenant_id, document_id)
            return documents_repo.to_record(row) if row is not None else None

    async def get_document_content(self, tenant_id: str, document_id: str) -> str | None:
        async with self._transaction("get_document_content") as session:
            row = await documents_repo.get_document(session, tenant_id, document_id)
            return row.content if row is not None else None

    async def set_document_status(
        self,
        document_id: str,
        status: str,
        *,
        error_reason: str | None = None,
        job_id: str | None = None,
    ) -> None:
        async with self._transaction("set_document_status") as session:
            await documents_repo.update_status(
                session, document_id, status=status, error_reason=error_reason, job_id=job_id
            )

    async def replace_chunks(self, document_id: str, tenant_id: str, chunks: list[ChunkInput]) -> None:
        async with self._transaction("replace_chunks") as session:
            await chunks_repo.replace_chunks(
                session, document_id=document_id, tenant_id=tenant_id, chunks=chunks
            )
            await documents_repo.mark_indexed(
                session,
                document_id,
                chunk_count=len(chunks),
                total_tokens=sum(chunk.token_count for chunk in chunks),
            )

    async def delete_document(self, tenant_id: str, document_id: str) -> DocumentRecord | None:
        async with self._transaction("delete_document") as session:
            row = await documents_repo.delete_document(session, tenant_id, document_id)
            if row is None:
                return None
            await tenants_repo.adjust_document_stats(
                session, tenant_id, count_delta=-1, bytes_delta=-int(row.size_bytes)
            )
            return documents_repo.to_record(row)

    async def search(self, tenant_id: str, embedding: list[float], k: int) -> list[ScoredChunk]:
        async with self._transaction("vector_search") as session:
            return await chunks_repo.search(session, tenant_id=tenant_id, embedding=embedding, k=k)


class SqlConversationStore(_SqlStore):
    async def record_outbound(self, record: OutboundRecord) -> bool:
        async with self._transaction("record_outbound") as session:
            return await conversations_repo.insert_outbound(session, record)

    async def get_outbound(self, provider_message_id: str) -> OutboundRecord | None:
        async with self._transaction("get_outbound") as session:
            row = await conversations_repo.get_outbound(session, provider_message_id)
            return conversations_repo.outbound_to_record(row) if row is not None else None

    async def recent_history(self, tenant_id: str, from_phone: str, limit: int) -> list[OutboundRecord]:
        async with self._transaction("recent_history") as session:
            rows = await conversations_repo.recent_history(
                session, tenant_id=tenant_id, from_phone=from_phone, limit=limit
            )
            return [conversations_repo.outbound_to_record(row) for row in rows]

    async def record_event(self, event: PipelineEventRecord) -> None:
        async with self._transaction("record_event") as session:
            await conversations_repo.insert_event(session, event)

    async def list_events(self, tenant_id: str, day: date | None = None) -> list[PipelineEventRecord]:
        async with self._transaction("list_events") as session:
            rows = await conversations_repo.list_events(session, tenant_id=tenant_id, day=day)
            return [conversations_repo.event_to_record(row) for row in rows]


def build_sql_storage(session_factory: async_sessionmaker[AsyncSession]) -> Storage:
    return Storage(
        tenants=SqlTenantStore(session_factory),
        channels=SqlChannelStore(session_factory),
        usage=SqlUsageStore(session_factory),
        knowledge=SqlKnowledgeStore(session_factory),
        conversations=SqlConversationStore(session_factory),
    )
