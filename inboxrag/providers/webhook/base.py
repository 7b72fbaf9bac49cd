from __future__ import annotations

from typing import Any, Callable, Protocol
import logging
import re

from inboxrag.core.errors import InvalidPayload
from inboxrag.domain.events import InboundMessageEvent


logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")
# E.164 allows at most 15 digits after the plus sign.
_E164_MAX_DIGITS = 15


class WebhookNormalizer(Protocol):
    provider: str

    def normalize(self, payload: dict[str, Any]) -> InboundMessageEvent:
        ...

    def normalize_batch(self, payload: dict[str, Any]) -> list[InboundMessageEvent]:
        ...


def normalize_phone_number(raw: str | None) -> str:
    """Return the E.164 form of ``raw`` or an empty string when it has no usable digits.

    Formatting characters are ignored, so ``"(123) 456-7890"`` and ``"+1 234 567 890"``
    both collapse to ``"+1234567890"``.
    """
    if not raw:
        return ""
    digits = _NON_DIGITS.sub("", str(raw))
    if not digits or len(digits) > _E164_MAX_DIGITS:
        return ""
    return f"+{digits}"


def require_phone(raw: Any, *, field: str) -> str:
    # Raise with the field name so webhook logs point at the broken attribute.
    normalized = normalize_phone_number(raw if isinstance(raw, str) else None)
    if not normalized:
        raise InvalidPayload(f"cannot normalize {field} phone number")
    return normalized


def first_message(raw_messages: list[Any]) -> Any:
    if not raw_messages:
        raise InvalidPayload("payload carries no messages")
    return raw_messages[0]


def collect_events(
    provider: str,
    raw_messages: list[Any],
    build: Callable[[Any], InboundMessageEvent],
) -> list[InboundMessageEvent]:
    # A broken message is skipped on its own; the rest of the delivery still goes through.
    events: list[InboundMessageEvent] = []
    for index, raw in enumerate(raw_messages):
        try:
            events.append(build(raw))
        except InvalidPayload as exc:
            logger.warning("webhook_message_skipped provider=%s index=%s reason=%s", provider, index, exc)
    return events
