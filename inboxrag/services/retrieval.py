from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging

from inboxrag.core.config import EMBED_DIM, get_settings
from inboxrag.core.errors import InfrastructureFailure, RetrievalError
from inboxrag.domain.plans import PlanLimits
from inboxrag.domain.records import ScoredChunk
from inboxrag.persistence.base import KnowledgeStore
from inboxrag.services.resilience import with_timeout
from inboxrag.services.usage import UsageLedger


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RagContext:
    chunks: list[ScoredChunk]
    total_tokens: int
    truncated: bool


class RetrievalEngine:
    def __init__(self, *, store: KnowledgeStore, ledger: UsageLedger) -> None:
        self._store = store
        self._ledger = ledger

    async def search(
        self,
        tenant_id: str,
        query_embedding: list[float],
        k: int | None = None,
        *,
        day: date | None = None,
        receipt_key: str | None = None,
        limits: PlanLimits | None = None,
        min_score: float | None = None,
    ) -> list[ScoredChunk]:
        """Return at most ``k`` of the tenant's chunks ranked by cosine similarity.

        One ``rag_queries`` unit is consumed before searching; an exhausted quota raises
        ``QuotaExceeded`` and no search runs. Ties rank by ``chunk_index`` ascending.
        """
        settings = get_settings()
        if len(query_embedding) != EMBED_DIM:
            # Retrieval must fail fast if the embedding dimension doesn't match the schema.
            raise RetrievalError("query embedding dimension mismatch")
        top_k = settings.retrieval_top_k if k is None else int(k)
        # Clamp to a small, deterministic range to avoid unbounded queries.
        top_k = max(1, min(top_k, settings.retrieval_max_k))

        decision = await self._ledger.try_consume(
            tenant_id, day, {"rag_queries": 1}, receipt_key=receipt_key, limits=limits
        )
        decision.raise_for_exceeded()

        if not any(query_embedding):
            # A zero vector has no direction; nothing can be similar to it.
            return []
        try:
            results = await with_timeout(
                self._store.search(tenant_id, query_embedding, top_k),
                timeout_ms=settings.retrieval_timeout_ms,
                error=RetrievalError,
                operation="vector_search",
            )
        except InfrastructureFailure as exc:
            if isinstance(exc, RetrievalError):
                raise
            raise RetrievalError("vector search failed") from exc

        threshold = settings.retrieval_min_score if min_score is None else min_score
        if threshold > 0:
            results = [item for item in results if item.score >= threshold]
        logger.debug("retrieval_done tenant=%s k=%s results=%s", tenant_id, top_k, len(results))
        return results


def build_context(chunks: list[ScoredChunk], max_tokens: int) -> RagContext:
    # Keep ranked order; the best chunk is always included even if it alone exceeds the budget.
    selected: list[ScoredChunk] = []
    total = 0
    truncated = False
    for chunk in chunks:
        if selected and total + chunk.token_count > max_tokens:
            truncated = True
            break
        selected.append(chunk)
        total += chunk.token_count
    return RagContext(chunks=selected, total_tokens=total, truncated=truncated)


def format_context(context: RagContext) -> str:
    if not context.chunks:
        return ""
    parts = ["Relevant knowledge:"]
    for position, chunk in enumerate(context.chunks, start=1):
        parts.append(f"[{position}] {chunk.content.strip()}")
    return "\n\n".join(parts)
