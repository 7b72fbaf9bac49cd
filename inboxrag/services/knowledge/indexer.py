from __future__ import annotations

from dataclasses import dataclass
import hashlib
import logging
from uuid import uuid4

from inboxrag.core.config import get_settings
from inboxrag.core.errors import (
    DocumentNotFound,
    EmbeddingError,
    InvalidDocument,
    LeaseLost,
    QuotaExceeded,
    TenantNotFound,
)
from inboxrag.domain.events import IndexJobPayload, index_job_key
from inboxrag.domain.records import ChunkInput, DocumentRecord, NewDocument
from inboxrag.persistence.base import KnowledgeStore
from inboxrag.providers.embeddings.base import EmbeddingProvider
from inboxrag.services.knowledge.chunking import chunk_stats, chunk_text
from inboxrag.services.plans import PlanCatalog
from inboxrag.services.queue.base import JobQueue, LeaseGuard, NoLease
from inboxrag.services.resilience import with_timeout
from inboxrag.services.telemetry import increment_counter
from inboxrag.services.usage import UsageLedger


logger = logging.getLogger(__name__)

_BYTES_PER_MB = 1024 * 1024

SUPPORTED_CONTENT_TYPES = ("text/plain", "text/markdown", "text/csv", "application/json")


@dataclass(frozen=True)
class IngestResult:
    document: DocumentRecord
    # True when the same bytes were already uploaded by this tenant.
    deduplicated: bool
    enqueued: bool


@dataclass(frozen=True)
class IndexOutcome:
    document_id: str
    status: str
    chunk_count: int = 0
    reason: str | None = None


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class KnowledgeIndexer:
    def __init__(
        self,
        *,
        store: KnowledgeStore,
        catalog: PlanCatalog,
        ledger: UsageLedger,
        queue: JobQueue,
        embedder: EmbeddingProvider,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._ledger = ledger
        self._queue = queue
        self._embedder = embedder

    async def ingest(
        self,
        tenant_id: str,
        content: bytes,
        *,
        filename: str,
        content_type: str = "text/plain",
    ) -> IngestResult:
        """Register an upload and schedule indexing; returns before any chunking happens."""
        tenant, limits = await self._catalog.tenant_with_limits(tenant_id)
        if not content:
            raise InvalidDocument("document is empty")
        base_type = (content_type or "text/plain").split(";")[0].strip().lower()
        if base_type not in SUPPORTED_CONTENT_TYPES:
            raise InvalidDocument(f"unsupported content type: {base_type}")
        if limits.max_doc_size_mb is not None and len(content) > limits.max_doc_size_mb * _BYTES_PER_MB:
            raise QuotaExceeded("doc_size", limit=limits.max_doc_size_mb, used=len(content) // _BYTES_PER_MB)
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidDocument("document is not valid UTF-8 text") from exc

        digest = content_hash(content)
        document, created = await self._store.create_document(
            NewDocument(
                id=str(uuid4()),
                tenant_id=tenant.id,
                name=filename or "document.txt",
                content_type=base_type,
                size_bytes=len(content),
                hash=digest,
                content=text,
            )
        )
        enqueued = False
        if created or document.status == "uploaded":
            # Re-enqueueing an uploaded document is safe: the queue collapses duplicate keys.
            enqueued = await self._enqueue(document)
        if created:
            increment_counter("documents_uploaded_total")
            logger.info("document_uploaded tenant=%s document_id=%s bytes=%s", tenant.id, document.id, len(content))
        else:
            logger.info("document_deduplicated tenant=%s document_id=%s", tenant.id, document.id)
        return IngestResult(document=document, deduplicated=not created, enqueued=enqueued)

    async def _enqueue(self, document: DocumentRecord) -> bool:
        key = index_job_key(document.tenant_id, document.id)
        payload = IndexJobPayload(tenant_id=document.tenant_id, document_id=document.id)
        return await self._queue.enqueue(key, payload.kind, payload.model_dump())

    async def run_indexing_job(
        self,
        payload: IndexJobPayload,
        *,
        job_id: str,
        attempt: int,
        max_attempts: int,
        lease: LeaseGuard | None = None,
    ) -> IndexOutcome:
        """Chunk, embed and atomically publish one document.

        Quota exceedances and unreadable content mark the document failed and return
        normally. Any other error propagates so the queue retries it; on the final
        attempt the document is marked failed first, so a dead-lettered job never
        leaves its document in ``processing``. A lost lease stops all writes.
        """
        lease = lease or NoLease()
        document = await self._store.get_document(payload.tenant_id, payload.document_id)
        if document is None:
            # Deleted between upload and indexing; nothing left to do.
            logger.info("index_skipped_missing document_id=%s", payload.document_id)
            return IndexOutcome(document_id=payload.document_id, status="missing")
        if document.status == "indexed":
            return IndexOutcome(document_id=document.id, status="indexed", chunk_count=document.chunk_count)

        try:
            try:
                tenant, limits = await self._catalog.tenant_with_limits(payload.tenant_id)
            except TenantNotFound:
                return await self._fail(document, "tenant_inactive", job_id=job_id)
            if not limits.rag_enabled:
                return await self._fail(document, "rag_disabled", job_id=job_id)
            capacity = self._ledger.check_capacity(tenant, limits)
            if not capacity.allowed:
                return await self._fail(document, f"quota_exceeded:{capacity.kind}", job_id=job_id)
            decision = await self._ledger.try_consume(
                tenant.id,
                None,
                {"docs_indexed": 1, "storage_bytes": document.size_bytes},
                receipt_key=f"index:{document.id}",
                limits=limits,
            )
            if not decision.allowed:
                return await self._fail(document, f"quota_exceeded:{decision.kind}", job_id=job_id)

            await lease.check()
            await self._store.set_document_status(document.id, "processing", job_id=job_id)
            content = await self._store.get_document_content(document.tenant_id, document.id)
            if content is None:
                return IndexOutcome(document_id=document.id, status="missing")
            chunks = await self._build_chunks(content)
            if not chunks:
                return await self._fail(document, "empty_document", job_id=job_id)
            await lease.check()
            await self._store.replace_chunks(document.id, document.tenant_id, chunks)
        except LeaseLost:
            # The new owner decides the document's status.
            raise
        except ValueError as exc:
            return await self._fail(document, _failure_reason(exc), job_id=job_id)
        except Exception as exc:
            reason = _failure_reason(exc)
            if attempt >= max_attempts:
                await self._fail(document, reason, job_id=job_id)
                raise
            # Leave the document visible as uploaded so a retry can pick it up.
            await self._store.set_document_status(document.id, "uploaded", error_reason=reason, job_id=job_id)
            raise

        increment_counter("documents_indexed_total")
        logger.info("document_indexed document_id=%s chunks=%s", document.id, len(chunks))
        return IndexOutcome(document_id=document.id, status="indexed", chunk_count=len(chunks))

    async def _build_chunks(self, content: str) -> list[ChunkInput]:
        settings = get_settings()
        pieces = chunk_text(
            content,
            chunk_size=settings.chunk_size_tokens,
            overlap=settings.chunk_overlap_tokens,
            min_chunk_size=settings.chunk_min_tokens,
        )
        stats = chunk_stats(pieces)
        logger.debug(
            "document_chunked chunks=%s total_tokens=%s max_tokens=%s",
            stats["total_chunks"],
            stats["total_tokens"],
            stats["max_tokens"],
        )
        embeddings: list[list[float]] = []
        batch_size = max(1, settings.embedding_batch_size)
        for start in range(0, len(pieces), batch_size):
            batch = [piece.content for piece in pieces[start : start + batch_size]]
            embeddings.extend(
                await with_timeout(
                    self._embedder.embed(batch),
                    timeout_ms=settings.embedding_timeout_ms,
                    error=EmbeddingError,
                    operation="embedding",
                )
            )
        if len(embeddings) != len(pieces):
            raise EmbeddingError("embedding count does not match chunk count")
        return [
            ChunkInput(
                chunk_index=piece.index,
                content=piece.content,
                token_count=piece.token_count,
                embedding=vector,
                metadata=piece.metadata,
            )
            for piece, vector in zip(pieces, embeddings)
        ]

    async def _fail(self, document: DocumentRecord, reason: str, *, job_id: str) -> IndexOutcome:
        await self._store.set_document_status(document.id, "failed", error_reason=reason, job_id=job_id)
        increment_counter("documents_failed_total")
        logger.warning("document_index_failed document_id=%s reason=%s", document.id, reason)
        return IndexOutcome(document_id=document.id, status="failed", reason=reason)

    async def get(self, tenant_id: str, document_id: str) -> DocumentRecord:
        document = await self._store.get_document(tenant_id, document_id)
        if document is None:
            raise DocumentNotFound(document_id)
        return document

    async def delete(self, tenant_id: str, document_id: str) -> DocumentRecord:
        # Chunks cascade with the document; tenant aggregates shrink in the same transaction.
        document = await self._store.delete_document(tenant_id, document_id)
        if document is None:
            raise DocumentNotFound(document_id)
        logger.info("document_deleted tenant=%s document_id=%s", tenant_id, document_id)
        return document


def _failure_reason(exc: Exception) -> str:
    # Keep stored reasons short and free of stack traces.
    message = str(exc) or exc.__class__.__name__
    return f"{exc.__class__.__name__}: {message}"[:500]
