from __future__ import annotations

from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from inboxrag.core.config import EMBED_DIM
from inboxrag.domain.models import KnowledgeChunk, KnowledgeDocument
from inboxrag.domain.records import ChunkInput, ScoredChunk


async def replace_chunks(
    session: AsyncSession,
    *,
    document_id: str,
    tenant_id: str,
    chunks: list[ChunkInput],
) -> None:
    # Caller owns the transaction so the swap and the status flip commit together.
    await session.execute(delete(KnowledgeChunk).where(KnowledgeChunk.document_id == document_id))
    for chunk in chunks:
        if len(chunk.embedding) != EMBED_DIM:
            raise ValueError(f"embedding dimension mismatch for chunk {chunk.chunk_index}")
        session.add(
            KnowledgeChunk(
                id=str(uuid4()),
                document_id=document_id,
                tenant_id=tenant_id,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                embedding=chunk.embedding,
                token_count=chunk.token_count,
                metadata_json=chunk.metadata,
            )
        )
    await session.flush()


async def search(
    session: AsyncSession,
    *,
    tenant_id: str,
    embedding: list[float],
    k: int,
) -> list[ScoredChunk]:
    # Use cosine distance from pgvector; lower is more similar.
    distance_expr = KnowledgeChunk.embedding.cosine_distance(embedding)
    stmt = (
        select(KnowledgeChunk, distance_expr.label("distance"))
        .join(KnowledgeDocument, KnowledgeDocument.id == KnowledgeChunk.document_id)
        # Tenant predicate is applied before ranking; only fully indexed documents are visible.
        .where(
            KnowledgeChunk.tenant_id == tenant_id,
            KnowledgeDocument.tenant_id == tenant_id,
            KnowledgeDocument.status == "indexed",
        )
        # Secondary ordering keeps tie-breaking deterministic.
        .order_by(distance_expr.asc(), KnowledgeChunk.chunk_index.asc(), KnowledgeChunk.document_id.asc())
        .limit(k)
    )
    result = await session.execute(stmt)
    items: list[ScoredChunk] = []
    for chunk, distance in result.all():
        # Convert cosine distance to similarity and clamp to a sane [0, 1] range.
        score = 1.0 - float(distance)
        score = max(0.0, min(1.0, score))
        items.append(
            ScoredChunk(
                chunk_id=chunk.id,
                document_id=chunk.document_id,
                tenant_id=chunk.tenant_id,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                token_count=int(chunk.token_count or 0),
                score=score,
            )
        )
    return items
