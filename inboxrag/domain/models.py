from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from inboxrag.core.config import EMBED_DIM


class Base(DeclarativeBase):
    pass


class Plan(Base):
    __tablename__ = "plans"

    code: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Named limits; a null value means unlimited.
    limits_json: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    plan_code: Mapped[str] = mapped_column(String, ForeignKey("plans.code"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Aggregates maintained on upload/delete for capacity checks.
    documents_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    documents_storage_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Channel(Base):
    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    type: Mapped[str] = mapped_column(String, default="whatsapp")
    name: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Holds phone_number and/or business_phone_number.
    config_json: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class KnowledgeDocument(Base):
    __tablename__ = "knowledge_documents"
    __table_args__ = (UniqueConstraint("tenant_id", "hash", name="uq_knowledge_documents_tenant_hash"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    content_type: Mapped[str] = mapped_column(String)
    size_bytes: Mapped[int] = mapped_column(BigInteger)
    # sha256 of the uploaded bytes.
    hash: Mapped[str] = mapped_column(String(64))
    content: Mapped[str] = mapped_column(Text)
    # uploaded -> processing -> indexed | failed
    status: Mapped[str] = mapped_column(String, index=True, default="uploaded")
    chunk_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Store the last indexing job key for tracing.
    last_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    indexed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class KnowledgeChunk(Base):
    __tablename__ = "knowledge_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_knowledge_chunks_document_index"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    document_id: Mapped[str] = mapped_column(
        String, ForeignKey("knowledge_documents.id", ondelete="CASCADE")
    )
    # Denormalized so vector search can filter by tenant before ranking.
    tenant_id: Mapped[str] = mapped_column(String)
    chunk_index: Mapped[int] = mapped_column(Integer)
    content: Mapped[str] = mapped_column(Text)
    # Keep vector dimension aligned with embedding generation and retrieval.
    embedding: Mapped[list[float]] = mapped_column(Vector(EMBED_DIM))
    token_count: Mapped[int] = mapped_column(Integer, default=0)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UsageCounterDaily(Base):
    __tablename__ = "usage_counters_daily"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    messages_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    messages_inbound: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    messages_outbound: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tokens_in: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    tokens_out: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    rag_queries_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    docs_indexed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ai_requests_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    storage_bytes_added: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageReceipt(Base):
    __tablename__ = "usage_receipts"

    # One row per consumed unit of work so redelivered jobs never double count.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    receipt_key: Mapped[str] = mapped_column(String, primary_key=True)
    day: Mapped[date] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutboundMessage(Base):
    __tablename__ = "outbound_messages"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # The inbound provider id doubles as the idempotency key for replies.
    provider_message_id: Mapped[str] = mapped_column(String, unique=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    channel_id: Mapped[str] = mapped_column(String)
    from_phone: Mapped[str] = mapped_column(String)
    to_phone: Mapped[str] = mapped_column(String)
    inbound_text: Mapped[str] = mapped_column(Text)
    reply_text: Mapped[str] = mapped_column(Text)
    retrieved_chunk_ids: Mapped[list[str]] = mapped_column(JSONB, default=list)
    tokens_in: Mapped[int] = mapped_column(Integer, default=0)
    tokens_out: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PipelineEvent(Base):
    __tablename__ = "pipeline_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Null when the message could not be attributed to a tenant.
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_message_id: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    detail_json: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


Index("ix_channels_type_active", Channel.type, Channel.is_active)
Index("ix_knowledge_chunks_tenant_document", KnowledgeChunk.tenant_id, KnowledgeChunk.document_id)
Index(
    "ix_knowledge_chunks_embedding_hnsw",
    KnowledgeChunk.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)
Index("ix_usage_receipts_day", UsageReceipt.day)
Index(
    "ix_outbound_messages_conversation",
    OutboundMessage.tenant_id,
    OutboundMessage.from_phone,
    OutboundMessage.created_at.desc(),
)
Index("ix_pipeline_events_tenant_created_at", PipelineEvent.tenant_id, PipelineEvent.created_at.desc())
