from __future__ import annotations

import logging

from inboxrag.core.errors import AmbiguousChannel, ChannelNotFound
from inboxrag.core.logging import mask_phone_number
from inboxrag.domain.records import ChannelRecord
from inboxrag.persistence.base import ChannelStore
from inboxrag.providers.webhook.base import normalize_phone_number


logger = logging.getLogger(__name__)

# Channel config keys that may carry the destination number.
_PHONE_FIELDS = ("phone_number", "business_phone_number")


def channel_numbers(channel: ChannelRecord) -> set[str]:
    numbers: set[str] = set()
    for field in _PHONE_FIELDS:
        normalized = normalize_phone_number(channel.config.get(field))
        if normalized:
            numbers.add(normalized)
    return numbers


class ChannelResolver:
    def __init__(self, store: ChannelStore, *, channel_type: str = "whatsapp") -> None:
        self._store = store
        self._channel_type = channel_type

    async def resolve(self, channel_phone_number: str) -> ChannelRecord:
        """Return the single active channel owning ``channel_phone_number``.

        Raises ``ChannelNotFound`` when nothing matches and ``AmbiguousChannel`` when
        more than one channel claims the number, regardless of which tenants own them.
        """
        target = normalize_phone_number(channel_phone_number)
        if not target:
            raise ChannelNotFound(channel_phone_number)
        channels = await self._store.list_active_channels(self._channel_type)
        matches = [channel for channel in channels if target in channel_numbers(channel)]
        if not matches:
            logger.info("channel_not_found phone=%s", mask_phone_number(target))
            raise ChannelNotFound(target)
        if len(matches) > 1:
            ids = [channel.id for channel in matches]
            logger.error(
                "channel_ambiguous phone=%s channels=%s", mask_phone_number(target), ",".join(ids)
            )
            raise AmbiguousChannel(target, ids)
        return matches[0]
