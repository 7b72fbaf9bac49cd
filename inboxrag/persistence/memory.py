from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import date, datetime, timezone
import math
from typing import Any

from inboxrag.core.config import EMBED_DIM
from inboxrag.domain.plans import USAGE_COLUMNS
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


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class MemoryState:
    """Shared tables for the in-memory stores; one lock serializes every mutation."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.plans: dict[str, tuple[str, dict[str, Any]]] = {}
        self.tenants: dict[str, TenantRecord] = {}
        self.channels: dict[str, ChannelRecord] = {}
        self.counters: dict[tuple[str, date], dict[str, int]] = {}
        self.receipts: set[tuple[str, str]] = set()
        self.documents: dict[str, DocumentRecord] = {}
        self.contents: dict[str, str] = {}
        self.chunks: dict[str, list[tuple[str, ChunkInput]]] = {}
        self.outbound: dict[str, OutboundRecord] = {}
        self.events: list[PipelineEventRecord] = []
        self._chunk_seq = 0

    def next_chunk_id(self) -> str:
        self._chunk_seq += 1
        return f"chunk-{self._chunk_seq}"

    # Seeding helpers used by tests and the inline demo.

    def add_plan(self, code: str, limits: dict[str, Any], name: str | None = None) -> None:
        self.plans[code] = (name or code, dict(limits))

    def add_tenant(self, tenant: TenantRecord) -> None:
        self.tenants[tenant.id] = tenant

    def add_channel(self, channel: ChannelRecord) -> None:
        self.channels[channel.id] = channel


class MemoryTenantStore:
    def __init__(self, state: MemoryState) -> None:
        self._state = state

    async def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        return self._state.tenants.get(tenant_id)

    async def get_plan_limits(self, plan_code: str) -> dict[str, Any] | None:
        entry = self._state.plans.get(plan_code)
        return dict(entry[1]) if entry is not None else None

    async def upsert_plan(self, code: str, name: str, limits: dict[str, Any]) -> None:
        async with self._state.lock:
            self._state.add_plan(code, limits, name)

    async def ping(self) -> None:
        return None


class MemoryChannelStore:
    def __init__(self, state: MemoryState) -> None:
        self._state = state

    async def list_active_channels(self, channel_type: str) -> list[ChannelRecord]:
        active: list[ChannelRecord] = []
        for channel in sorted(self._state.channels.values(), key=lambda c: c.id):
            tenant = self._state.tenants.get(channel.tenant_id)
            if channel.type != channel_type or not channel.is_active:
                continue
            if tenant is None or not tenant.is_active:
                continue
            active.append(channel)
        return active


class MemoryUsageStore:
    def __init__(self, state: MemoryState) -> None:
        self._state = state

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
        async with self._state.lock:
            current = dict(self._state.counters.get((tenant_id, day)) or _zero_counters())
            if receipt_key is not None and (tenant_id, receipt_key) in self._state.receipts:
                return ConsumeResult(applied=True, replayed=True, counters=current)
            exceeded = first_exceeded(current, deltas, limits, headroom)
            if exceeded is not None:
                return ConsumeResult(applied=False, exceeded_kind=exceeded, counters=current)
            for kind, delta in deltas.items():
                current[kind] = current.get(kind, 0) + delta
            self._state.counters[(tenant_id, day)] = current
            if receipt_key is not None:
                self._state.receipts.add((tenant_id, receipt_key))
            return ConsumeResult(applied=True, counters=dict(current))

    async def get_counters(self, tenant_id: str, day: date) -> dict[str, int]:
        return dict(self._state.counters.get((tenant_id, day)) or _zero_counters())


def _zero_counters() -> dict[str, int]:
    return {kind: 0 for kind in USAGE_COLUMNS}


class MemoryKnowledgeStore:
    def __init__(self, state: MemoryState) -> None:
        self._state = state

    async def create_document(self, document: NewDocument) -> tuple[DocumentRecord, bool]:
        async with self._state.lock:
            for existing in self._state.documents.values():
                if existing.tenant_id == document.tenant_id and existing.hash == document.hash:
                    return existing, False
            record = DocumentRecord(
                id=document.id,
                tenant_id=document.tenant_id,
                name=document.name,
                content_type=document.content_type,
                size_bytes=document.size_bytes,
                hash=document.hash,
                status="uploaded",
                created_at=_utc_now(),
            )
            self._state.documents[record.id] = record
            self._state.contents[record.id] = document.content
            tenant = self._state.tenants.get(document.tenant_id)
            if tenant is not None:
                self._state.tenants[tenant.id] = replace(
                    tenant,
                    documents_count=tenant.documents_count + 1,
                    documents_storage_bytes=tenant.documents_storage_bytes + document.size_bytes,
                )
            return record, True

    async def get_document(self, tenant_id: str, document_id: str) -> DocumentRecord | None:
        record = self._state.documents.get(document_id)
        if record is None or record.tenant_id != tenant_id:
            return None
        return record

    async def get_document_content(self, tenant_id: str, document_id: str) -> str | None:
        if await self.get_document(tenant_id, document_id) is None:
            return None
        return self._state.contents.get(document_id)

    async def set_document_status(
        self,
        document_id: str,
        status: str,
        *,
        error_reason: str | None = None,
        job_id: str | None = None,
    ) -> None:
        async with self._state.lock:
            record = self._state.documents.get(document_id)
            if record is None:
                return
            self._state.documents[document_id] = replace(
                record,
                status=status,
                error_reason=error_reason,
                last_job_id=job_id if job_id is not None else record.last_job_id,
            )

    async def replace_chunks(self, document_id: str, tenant_id: str, chunks: list[ChunkInput]) -> None:
        for chunk in chunks:
            if len(chunk.embedding) != EMBED_DIM:
                raise ValueError(f"embedding dimension mismatch for chunk {chunk.chunk_index}")
        async with self._state.lock:
            record = self._state.documents.get(document_id)
            if record is None:
                return
            self._state.chunks[document_id] = [(self._state.next_chunk_id(), chunk) for chunk in chunks]
            self._state.documents[document_id] = replace(
                record,
                status="indexed",
                chunk_count=len(chunks),
                total_tokens=sum(chunk.token_count for chunk in chunks),
                error_reason=None,
                indexed_at=_utc_now(),
            )

    async def delete_document(self, tenant_id: str, document_id: str) -> DocumentRecord | None:
        async with self._state.lock:
            record = self._state.documents.get(document_id)
            if record is None or record.tenant_id != tenant_id:
                return None
            del self._state.documents[document_id]
            self._state.contents.pop(document_id, None)
            self._state.chunks.pop(document_id, None)
            tenant = self._state.tenants.get(tenant_id)
            if tenant is not None:
                self._state.tenants[tenant_id] = replace(
                    tenant,
                    documents_count=max(0, tenant.documents_count - 1),
                    documents_storage_bytes=max(0, tenant.documents_storage_bytes - record.size_bytes),
                )
            return record

    async def search(self, tenant_id: str, embedding: list[float], k: int) -> list[ScoredChunk]:
        candidates: list[tuple[float, int, str, ScoredChunk]] = []
        for document_id, stored in self._state.chunks.items():
            document = self._state.documents.get(document_id)
            if document is None or document.tenant_id != tenant_id or document.status != "indexed":
                continue
            for chunk_id, chunk in stored:
                similarity = _cosine_similarity(embedding, chunk.embedding)
                scored = ScoredChunk(
                    chunk_id=chunk_id,
                    document_id=document_id,
                    tenant_id=tenant_id,
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                    token_count=chunk.token_count,
                    score=max(0.0, min(1.0, similarity)),
                )
                candidates.append((-similarity, chunk.chunk_index, document_id, scored))
        candidates.sort(key=lambda item: item[:3])
        return [item[3] for item in candidates[:k]]


class MemoryConversationStore:
    def __init__(self, state: MemoryState) -> None:
        self._state = state

    async def record_outbound(self, record: OutboundRecord) -> bool:
        async with self._state.lock:
            if record.provider_message_id in self._state.outbound:
                return False
            self._state.outbound[record.provider_message_id] = replace(record, created_at=_utc_now())
            return True

    async def get_outbound(self, provider_message_id: str) -> OutboundRecord | None:
        return self._state.outbound.get(provider_message_id)

    async def recent_history(self, tenant_id: str, from_phone: str, limit: int) -> list[OutboundRecord]:
        matching = [
            record
            for record in self._state.outbound.values()
            if record.tenant_id == tenant_id and record.from_phone == from_phone
        ]
        # Dict order is insertion order, so the tail holds the latest turns.
        return matching[-limit:] if limit > 0 else []

    async def record_event(self, event: PipelineEventRecord) -> None:
        async with self._state.lock:
            self._state.events.append(replace(event, created_at=event.created_at or _utc_now()))

    async def list_events(self, tenant_id: str, day: date | None = None) -> list[PipelineEventRecord]:
        return [
            event
            for event in self._state.events
            if event.tenant_id == tenant_id
            and (day is None or (event.created_at is not None and event.created_at.date() == day))
        ]


def build_memory_storage(state: MemoryState | None = None) -> tuple[Storage, MemoryState]:
    state = state or MemoryState()
    storage = Storage(
        tenants=MemoryTenantStore(state),
        channels=MemoryChannelStore(state),
        usage=MemoryUsageStore(state),
        knowledge=MemoryKnowledgeStore(state),
        conversations=MemoryConversationStore(state),
    )
    return storage, state
