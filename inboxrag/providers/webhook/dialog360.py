from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from inboxrag.core.errors import InvalidPayload
from inboxrag.domain.events import InboundMessageEvent
from inboxrag.providers.webhook.base import collect_events, first_message, require_phone


class _TextBody(BaseModel):
    body: str | None = None


class _Media(BaseModel):
    model_config = ConfigDict(extra="allow")

    caption: str | None = None


class _Context(BaseModel):
    id: str | None = None


class Dialog360Message(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    # Sender and destination arrive as bare digits, sometimes with formatting.
    to: str | None = None
    timestamp: str | int | None = None
    type: str = "text"
    text: _TextBody | None = None
    image: _Media | None = None
    document: _Media | None = None
    video: _Media | None = None
    context: _Context | None = None

    # "from" is a Python keyword.
    sender: str | None = None

    @classmethod
    def parse(cls, raw: dict[str, Any]) -> "Dialog360Message":
        data = dict(raw)
        data["sender"] = data.pop("from", None)
        return cls.model_validate(data)


class Dialog360Webhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    # Items stay raw so one malformed message does not fail the envelope.
    messages: list[Any] = []


def message_text(message: Dialog360Message) -> str:
    # Non-text messages keep their caption so the assistant still sees context.
    if message.text is not None and message.text.body is not None:
        return message.text.body
    for media in (message.image, message.document, message.video):
        if media is not None and media.caption:
            return media.caption
    return ""


def parse_unix_timestamp(value: str | int | None) -> datetime:
    if value is None or value == "":
        raise InvalidPayload("message timestamp is missing")
    try:
        seconds = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidPayload("message timestamp is not numeric") from exc
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def build_event(
    provider: str,
    message: Dialog360Message,
    *,
    channel_phone: str | None,
) -> InboundMessageEvent:
    # Shared by both WhatsApp formats; the Cloud API supplies the channel number out of band.
    if not message.id:
        raise InvalidPayload("provider message id is missing")
    from_phone = require_phone(message.sender, field="from")
    to_phone = require_phone(channel_phone if channel_phone is not None else message.to, field="to")
    return InboundMessageEvent(
        provider=provider,
        provider_message_id=message.id,
        channel_phone_number=to_phone,
        from_phone=from_phone,
        text=message_text(message),
        received_at=parse_unix_timestamp(message.timestamp),
        reply_to_message_id=message.context.id if message.context is not None else None,
    )


def parse_message_event(provider: str, raw: Any, *, channel_phone: str | None) -> InboundMessageEvent:
    try:
        message = Dialog360Message.parse(raw)
        return build_event(provider, message, channel_phone=channel_phone)
    except (ValidationError, TypeError, ValueError) as exc:
        raise InvalidPayload(f"malformed {provider} message") from exc


class Dialog360Normalizer:
    provider = "360dialog"

    def _raw_messages(self, payload: dict[str, Any]) -> list[Any]:
        if not isinstance(payload, dict):
            raise InvalidPayload("payload body must be an object")
        try:
            return Dialog360Webhook.model_validate(payload).messages
        except ValidationError as exc:
            raise InvalidPayload("malformed 360dialog payload") from exc

    def _event(self, raw: Any) -> InboundMessageEvent:
        return parse_message_event(self.provider, raw, channel_phone=None)

    def normalize_batch(self, payload: dict[str, Any]) -> list[InboundMessageEvent]:
        return collect_events(self.provider, self._raw_messages(payload), self._event)

    def normalize(self, payload: dict[str, Any]) -> InboundMessageEvent:
        return self._event(first_message(self._raw_messages(payload)))
