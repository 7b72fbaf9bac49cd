from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from inboxrag.domain.models import KnowledgeDocument
from inboxrag.domain.records import DocumentRecord, NewDocument


def to_record(doc: KnowledgeDocument) -> DocumentRecord:
    return DocumentRecord(
        id=doc.id,
        tenant_id=doc.tenant_id,
        name=doc.name,
        content_type=doc.content_type,
        size_bytes=int(doc.size_bytes),
        hash=doc.hash,
        status=doc.status,
        chunk_count=int(doc.chunk_count or 0),
        total_tokens=int(doc.total_tokens or 0),
        error_reason=doc.error_reason,
        last_job_id=doc.last_job_id,
        created_at=doc.created_at,
        indexed_at=doc.indexed_at,
    )


async def insert_if_absent(session: AsyncSession, document: NewDocument) -> bool:
    # Concurrent identical uploads race on the (tenant_id, hash) constraint; exactly one wins.
    stmt = (
        pg_insert(KnowledgeDocument)
        .values(
            id=document.id,
            tenant_id=document.tenant_id,
            name=document.name,
            content_type=document.content_type,
            size_bytes=document.size_bytes,
            hash=document.hash,
            content=document.content,
            status="uploaded",
            chunk_count=0,
            total_tokens=0,
        )
        .on_conflict_do_nothing(index_elements=[KnowledgeDocument.tenant_id, KnowledgeDocument.hash])
        .returning(KnowledgeDocument.id)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def get_by_hash(session: AsyncSession, tenant_id: str, content_hash: str) -> KnowledgeDocument | None:
    result = await session.execute(
        select(KnowledgeDocument).where(
            KnowledgeDocument.tenant_id == tenant_id,
            KnowledgeDocument.hash == content_hash,
        )
    )
    return result.scalar_one_or_none()


async def get_document(session: AsyncSession, tenant_id: str, document_id: str) -> KnowledgeDocument | None:
    # Return None for tenant mismatch to keep 404 semantics.
    result = await session.execute(
        select(KnowledgeDocument).where(
            KnowledgeDocument.id == document_id,
            KnowledgeDocument.tenant_id == tenant_id,
        )
    )
    return result.scalar_one_or_none()


async def update_status(
    session: AsyncSession,
    document_id: str,
    *,
    status: str,
    error_reason: str | None = None,
    job_id: str | None = None,
) -> None:
    values: dict = {"status": status, "error_reason": error_reason}
    if job_id is not None:
        values["last_job_id"] = job_id
    await session.execute(update(KnowledgeDocument).where(KnowledgeDocument.id == document_id).values(**values))


async def mark_indexed(session: AsyncSession, document_id: str, *, chunk_count: int, total_tokens: int) -> None:
    await session.execute(
        update(KnowledgeDocument)
        .where(KnowledgeDocument.id == document_id)
        .values(
            status="indexed",
            chunk_count=chunk_count,
            total_tokens=total_tokens,
            error_reason=None,
            indexed_at=datetime.now(timezone.utc),
        )
    )


async def delete_document(session: AsyncSession, tenant_id: str, document_id: str) -> KnowledgeDocument | None:
    doc = await get_document(session, tenant_id, document_id)
    if doc is None:
        return None
    await session.execute(
        delete(KnowledgeDocument).where(
            KnowledgeDocument.id == document_id,
            KnowledgeDocument.tenant_id == tenant_id,
        )
    )
    return doc
