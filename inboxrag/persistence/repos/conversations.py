from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from inboxrag.domain.models import OutboundMessage, PipelineEvent
from inboxrag.domain.records import OutboundRecord, PipelineEventRecord


def outbound_to_record(row: OutboundMessage) -> OutboundRecord:
    return OutboundRecord(
        id=row.id,
        provider_message_id=row.provider_message_id,
        tenant_id=row.tenant_id,
        channel_id=row.channel_id,
        from_phone=row.from_phone,
        to_phone=row.to_phone,
        inbound_text=row.inbound_text,
        reply_text=row.reply_text,
        retrieved_chunk_ids=list(row.retrieved_chunk_ids or []),
        tokens_in=int(row.tokens_in or 0),
        tokens_out=int(row.tokens_out or 0),
        created_at=row.created_at,
    )


async def insert_outbound(session: AsyncSession, record: OutboundRecord) -> bool:
    # provider_message_id is unique, so a redelivered job cannot produce a second reply.
    stmt = (
        pg_insert(OutboundMessage)
        .values(
            id=record.id,
            provider_message_id=record.provider_message_id,
            tenant_id=record.tenant_id,
            channel_id=record.channel_id,
            from_phone=record.from_phone,
            to_phone=record.to_phone,
            inbound_text=record.inbound_text,
            reply_text=record.reply_text,
            retrieved_chunk_ids=record.retrieved_chunk_ids,
            tokens_in=record.tokens_in,
            tokens_out=record.tokens_out,
        )
        .on_conflict_do_nothing(index_elements=[OutboundMessage.provider_message_id])
        .returning(OutboundMessage.id)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def get_outbound(session: AsyncSession, provider_message_id: str) -> OutboundMessage | None:
    result = await session.execute(
        select(OutboundMessage).where(OutboundMessage.provider_message_id == provider_message_id)
    )
    return result.scalar_one_or_none()


async def recent_history(
    session: AsyncSession, *, tenant_id: str, from_phone: str, limit: int
) -> list[OutboundMessage]:
    result = await session.execute(
        select(OutboundMessage)
        .where(OutboundMessage.tenant_id == tenant_id, OutboundMessage.from_phone == from_phone)
        .order_by(OutboundMessage.created_at.desc(), OutboundMessage.id.desc())
        .limit(limit)
    )
    # Oldest first so generators read the conversation in order.
    return list(reversed(result.scalars().all()))


async def insert_event(session: AsyncSession, event: PipelineEventRecord) -> None:
    session.add(
        PipelineEvent(
            tenant_id=event.tenant_id,
            provider_message_id=event.provider_message_id,
            reason=event.reason,
            detail_json=event.detail,
        )
    )


async def list_events(session: AsyncSession, *, tenant_id: str, day: date | None) -> list[PipelineEvent]:
    stmt = select(PipelineEvent).where(PipelineEvent.tenant_id == tenant_id)
    if day is not None:
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        stmt = stmt.where(PipelineEvent.created_at >= start, PipelineEvent.created_at < start + timedelta(days=1))
    result = await session.execute(stmt.order_by(PipelineEvent.created_at.asc(), PipelineEvent.id.asc()))
    return list(result.scalars().all())


def event_to_record(row: PipelineEvent) -> PipelineEventRecord:
    return PipelineEventRecord(
        provider_message_id=row.provider_message_id,
        reason=row.reason,
        tenant_id=row.tenant_id,
        detail=dict(row.detail_json or {}),
        created_at=row.created_at,
    )
