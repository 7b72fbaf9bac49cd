from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Protocol

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


class TenantStore(Protocol):
    async def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        ...

    async def get_plan_limits(self, plan_code: str) -> dict[str, Any] | None:
        ...

    async def upsert_plan(self, code: str, name: str, limits: dict[str, Any]) -> None:
        ...

    async def ping(self) -> None:
        ...


class ChannelStore(Protocol):
    async def list_active_channels(self, channel_type: str) -> list[ChannelRecord]:
        ...


class UsageStore(Protocol):
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
        """Atomically apply ``deltas`` unless any limited counter would pass its limit.

        ``limits`` maps kind to the maximum value allowed after the increment,
        ``headroom`` maps kind to a limit the current value must be strictly below.
        A known ``receipt_key`` returns a replayed result without touching counters.
        """
        ...

    async def get_counters(self, tenant_id: str, day: date) -> dict[str, int]:
        ...


class KnowledgeStore(Protocol):
    async def create_document(self, document: NewDocument) -> tuple[DocumentRecord, bool]:
        """Insert unless ``(tenant_id, hash)`` exists; bumps tenant aggregates only on insert."""
        ...

    async def get_document(self, tenant_id: str, document_id: str) -> DocumentRecord | None:
        ...

    async def get_document_content(self, tenant_id: str, document_id: str) -> str | None:
        ...

    async def set_document_status(
        self,
        document_id: str,
        status: str,
        *,
        error_reason: str | None = None,
        job_id: str | None = None,
    ) -> None:
        ...

    async def replace_chunks(self, document_id: str, tenant_id: str, chunks: list[ChunkInput]) -> None:
        """Swap the chunk set and mark the document indexed in one transaction."""
        ...

    async def delete_document(self, tenant_id: str, document_id: str) -> DocumentRecord | None:
        ...

    async def search(self, tenant_id: str, embedding: list[float], k: int) -> list[ScoredChunk]:
        ...


class ConversationStore(Protocol):
    async def record_outbound(self, record: OutboundRecord) -> bool:
        """Return False when a reply for the same provider message already exists."""
        ...

    async def get_outbound(self, provider_message_id: str) -> OutboundRecord | None:
        ...

    async def recent_history(self, tenant_id: str, from_phone: str, limit: int) -> list[OutboundRecord]:
        ...

    async def record_event(self, event: PipelineEventRecord) -> None:
        ...

    async def list_events(self, tenant_id: str, day: date | None = None) -> list[PipelineEventRecord]:
        ...


@dataclass
class Storage:
    tenants: TenantStore
    channels: ChannelStore
    usage: UsageStore
    knowledge: KnowledgeStore
    conversations: ConversationStore


def first_exceeded(
    counters: dict[str, int],
    deltas: dict[str, int],
    limits: dict[str, int],
    headroom: dict[str, int],
) -> str | None:
    # Report the first offending kind in a stable order for drop reasons.
    for kind, limit in limits.items():
        if counters.get(kind, 0) + deltas.get(kind, 0) > limit:
            return kind
    for kind, limit in headroom.items():
        if counters.get(kind, 0) >= limit:
            return kind
    return None
