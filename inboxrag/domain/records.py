from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any


# Plain records cross the storage boundary so services never hold live ORM sessions.


@dataclass(frozen=True)
class TenantRecord:
    id: str
    name: str
    plan_code: str
    is_active: bool = True
    documents_count: int = 0
    documents_storage_bytes: int = 0

    @property
    def documents_storage_mb(self) -> float:
        return self.documents_storage_bytes / (1024 * 1024)


@dataclass(frozen=True)
class ChannelRecord:
    id: str
    tenant_id: str
    name: str
    type: str = "whatsapp"
    is_active: bool = True
    config: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DocumentRecord:
    id: str
    tenant_id: str
    name: str
    content_type: str
    size_bytes: int
    hash: str
    status: str
    chunk_count: int = 0
    total_tokens: int = 0
    error_reason: str | None = None
    last_job_id: str | None = None
    created_at: datetime | None = None
    indexed_at: datetime | None = None


@dataclass(frozen=True)
class NewDocument:
    id: str
    tenant_id: str
    name: str
    content_type: str
    size_bytes: int
    hash: str
    content: str


@dataclass(frozen=True)
class ChunkInput:
    chunk_index: int
    content: str
    token_count: int
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScoredChunk:
    chunk_id: str
    document_id: str
    tenant_id: str
    chunk_index: int
    content: str
    token_count: int
    score: float


@dataclass(frozen=True)
class ConsumeResult:
    # Storage-level outcome of an atomic check-and-increment.
    applied: bool
    replayed: bool = False
    exceeded_kind: str | None = None
    counters: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class OutboundRecord:
    id: str
    provider_message_id: str
    tenant_id: str
    channel_id: str
    from_phone: str
    to_phone: str
    inbound_text: str
    reply_text: str
    retrieved_chunk_ids: list[str] = field(default_factory=list)
    tokens_in: int = 0
    tokens_out: int = 0
    created_at: datetime | None = None


@dataclass(frozen=True)
class PipelineEventRecord:
    provider_message_id: str
    reason: str
    tenant_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class UsageDay:
    tenant_id: str
    day: date
    counters: dict[str, int]
