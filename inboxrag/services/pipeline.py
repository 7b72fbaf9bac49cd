from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
import logging
from uuid import uuid4

from inboxrag.core.config import get_settings
from inboxrag.core.errors import (
    AmbiguousChannel,
    ChannelNotFound,
    EmbeddingError,
    GenerationError,
    InfrastructureFailure,
    QuotaExceeded,
    TenantNotFound,
)
from inboxrag.core.logging import mask_phone_number, tenant_id_var
from inboxrag.domain.events import InboundMessageEvent
from inboxrag.domain.plans import PlanLimits
from inboxrag.domain.records import OutboundRecord, PipelineEventRecord, ScoredChunk
from inboxrag.persistence.base import ConversationStore
from inboxrag.providers.embeddings.base import EmbeddingProvider
from inboxrag.providers.generation.base import (
    ConversationTurn,
    GenerationProvider,
    GenerationRequest,
    GenerationResult,
)
from inboxrag.services.channels import ChannelResolver
from inboxrag.services.knowledge.chunking import estimate_tokens
from inboxrag.services.plans import PlanCatalog
from inboxrag.services.queue.base import LeaseGuard, NoLease
from inboxrag.services.resilience import with_timeout
from inboxrag.services.retrieval import RetrievalEngine, build_context, format_context
from inboxrag.services.telemetry import increment_counter
from inboxrag.services.usage import UsageLedger


logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    RECEIVED = "received"
    RESOLVING = "resolving"
    QUOTA_CHECK = "quota_check"
    RETRIEVING = "retrieving"
    GENERATED = "generated"
    LOGGED = "logged"
    DROPPED = "dropped"
    FAILED = "failed"


@dataclass
class PipelineOutcome:
    provider_message_id: str
    state: PipelineState = PipelineState.RECEIVED
    tenant_id: str | None = None
    channel_id: str | None = None
    reason: str | None = None
    error: str | None = None
    reply_text: str | None = None
    retrieved_chunk_ids: list[str] = field(default_factory=list)
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.RECEIVED])

    def advance(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state)

    @property
    def retryable(self) -> bool:
        return self.state is PipelineState.FAILED


class PipelineWorker:
    """Drives one inbound message from resolution to a recorded reply.

    Channel and quota problems end in ``dropped`` and are recorded for reporting.
    Infrastructure problems end in ``failed`` so the queue can retry the job; every
    counter consumed on the way carries a receipt, so a retry never double counts.
    """

    def __init__(
        self,
        *,
        resolver: ChannelResolver,
        catalog: PlanCatalog,
        ledger: UsageLedger,
        retrieval: RetrievalEngine,
        embedder: EmbeddingProvider,
        generator: GenerationProvider,
        conversations: ConversationStore,
    ) -> None:
        self._resolver = resolver
        self._catalog = catalog
        self._ledger = ledger
        self._retrieval = retrieval
        self._embedder = embedder
        self._generator = generator
        self._conversations = conversations

    async def process(self, event: InboundMessageEvent, *, lease: LeaseGuard | None = None) -> PipelineOutcome:
        lease = lease or NoLease()
        outcome = PipelineOutcome(provider_message_id=event.provider_message_id)
        day = self._ledger.today()
        try:
            await self._run(event, outcome, lease=lease, day=day)
        except InfrastructureFailure as exc:
            outcome.error = f"{exc.__class__.__name__}: {exc}"
            outcome.advance(PipelineState.FAILED)
            logger.warning(
                "pipeline_failed message_id=%s error=%s", event.provider_message_id, outcome.error
            )
        finally:
            tenant_id_var.set(None)
        increment_counter(f"pipeline_outcomes_total.{outcome.state.value}")
        return outcome

    async def _run(
        self,
        event: InboundMessageEvent,
        outcome: PipelineOutcome,
        *,
        lease: LeaseGuard,
        day: date,
    ) -> None:
        settings = get_settings()
        message_id = event.provider_message_id

        outcome.advance(PipelineState.RESOLVING)
        try:
            channel = await self._resolver.resolve(event.channel_phone_number)
        except ChannelNotFound:
            await self._drop(outcome, "channel_not_found", detail={"phone": mask_phone_number(event.channel_phone_number)})
            return
        except AmbiguousChannel as exc:
            await self._drop(
                outcome,
                "channel_ambiguous",
                detail={"phone": mask_phone_number(event.channel_phone_number), "channels": exc.channel_ids},
            )
            return
        outcome.channel_id = channel.id
        outcome.tenant_id = channel.tenant_id
        tenant_id_var.set(channel.tenant_id)
        try:
            tenant, limits = await self._catalog.tenant_with_limits(channel.tenant_id)
        except TenantNotFound:
            await self._drop(outcome, "tenant_inactive")
            return

        outcome.advance(PipelineState.QUOTA_CHECK)
        decision = await self._ledger.try_consume(
            tenant.id,
            day,
            {"messages": 1, "messages_inbound": 1, "tokens_in": estimate_tokens(event.text)},
            # New conversations stop once generation budget is gone.
            headroom=("tokens_out",),
            receipt_key=f"message:{message_id}:in",
            limits=limits,
        )
        if not decision.allowed:
            await self._drop(
                outcome,
                f"quota_exceeded:{decision.kind}",
                detail={"limit": decision.limit, "used": decision.used},
            )
            return

        outcome.advance(PipelineState.RETRIEVING)
        try:
            chunks = await self._retrieve(event, tenant.id, limits, day=day)
        except QuotaExceeded as exc:
            await self._drop(outcome, f"quota_exceeded:{exc.kind}", detail={"limit": exc.limit})
            return
        outcome.retrieved_chunk_ids = [chunk.chunk_id for chunk in chunks]

        existing = await self._conversations.get_outbound(message_id)
        if existing is not None:
            # An earlier delivery already produced the reply; reuse it instead of generating twice.
            result = GenerationResult(text=existing.reply_text, tokens_in=existing.tokens_in, tokens_out=existing.tokens_out)
            outcome.retrieved_chunk_ids = list(existing.retrieved_chunk_ids)
        else:
            context = build_context(chunks, settings.rag_max_context_tokens)
            history = await self._conversations.recent_history(
                tenant.id, event.from_phone, settings.conversation_history_limit
            )
            result = await with_timeout(
                self._generator.generate(
                    GenerationRequest(
                        tenant_id=tenant.id,
                        text=event.text,
                        context=format_context(context),
                        history=[ConversationTurn(h.inbound_text, h.reply_text) for h in history],
                    )
                ),
                timeout_ms=settings.generation_timeout_ms,
                error=GenerationError,
                operation="generation",
            )
        outcome.reply_text = result.text
        outcome.advance(PipelineState.GENERATED)

        # Final write only happens while this consumer still owns the job.
        await lease.check()
        await self._conversations.record_outbound(
            OutboundRecord(
                id=str(uuid4()),
                provider_message_id=message_id,
                tenant_id=tenant.id,
                channel_id=channel.id,
                from_phone=event.from_phone,
                to_phone=event.channel_phone_number,
                inbound_text=event.text,
                reply_text=result.text,
                retrieved_chunk_ids=outcome.retrieved_chunk_ids,
                tokens_in=result.tokens_in,
                tokens_out=result.tokens_out,
            )
        )
        await self._ledger.record(
            tenant.id,
            day,
            {"messages_outbound": 1, "tokens_out": result.tokens_out, "ai_requests": 1},
            receipt_key=f"message:{message_id}:out",
        )
        # Outbound delivery is out of scope; the reply is logged for operators.
        logger.info(
            "reply_logged message_id=%s to=%s chunks=%s tokens_out=%s text=%r",
            message_id,
            mask_phone_number(event.from_phone),
            len(outcome.retrieved_chunk_ids),
            result.tokens_out,
            result.text,
        )
        outcome.advance(PipelineState.LOGGED)

    async def _retrieve(
        self,
        event: InboundMessageEvent,
        tenant_id: str,
        limits: PlanLimits,
        *,
        day: date,
    ) -> list[ScoredChunk]:
        if not event.text.strip() or not limits.rag_enabled:
            return []
        settings = get_settings()
        vectors = await with_timeout(
            self._embedder.embed([event.text]),
            timeout_ms=settings.embedding_timeout_ms,
            error=EmbeddingError,
            operation="query_embedding",
        )
        return await self._retrieval.search(
            tenant_id,
            vectors[0],
            settings.retrieval_top_k,
            day=day,
            receipt_key=f"message:{event.provider_message_id}:rag",
            limits=limits,
        )

    async def _drop(self, outcome: PipelineOutcome, reason: str, *, detail: dict | None = None) -> None:
        outcome.reason = reason
        outcome.advance(PipelineState.DROPPED)
        await self._conversations.record_event(
            PipelineEventRecord(
                provider_message_id=outcome.provider_message_id,
                reason=reason,
                tenant_id=outcome.tenant_id,
                detail=detail or {},
            )
        )
        logger.info(
            "pipeline_dropped message_id=%s tenant=%s reason=%s",
            outcome.provider_message_id,
            outcome.tenant_id,
            reason,
        )
