from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from inboxrag.domain.models import Channel, Tenant
from inboxrag.domain.records import ChannelRecord


def to_record(channel: Channel) -> ChannelRecord:
    return ChannelRecord(
        id=channel.id,
        tenant_id=channel.tenant_id,
        name=channel.name,
        type=channel.type,
        is_active=bool(channel.is_active),
        config=dict(channel.config_json or {}),
    )


async def list_active_channels(session: AsyncSession, channel_type: str) -> list[Channel]:
    # Resolution spans every tenant; channels of inactive tenants are excluded up front.
    result = await session.execute(
        select(Channel)
        .join(Tenant, Tenant.id == Channel.tenant_id)
        .where(
            Channel.type == channel_type,
            Channel.is_active.is_(True),
            Tenant.is_active.is_(True),
        )
        .order_by(Channel.id)
    )
    return list(result.scalars().all())
