from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from inboxrag.core.errors import InvalidPayload
from inboxrag.domain.events import InboundMessageEvent
from inboxrag.providers.webhook.base import collect_events, first_message
from inboxrag.providers.webhook.dialog360 import parse_message_event


class _Metadata(BaseModel):
    display_phone_number: str | None = None
    phone_number_id: str | None = None


class _ChangeValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    metadata: _Metadata | None = None
    messages: list[Any] = []
    # Delivery receipts share the envelope; they carry no inbound messages.
    statuses: list[dict[str, Any]] = []


class _Change(BaseModel):
    field: str | None = None
    value: _ChangeValue


class _Entry(BaseModel):
    id: str | None = None
    changes: list[_Change] = []


class CloudApiWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: str | None = None
    entry: list[_Entry] = []


class CloudApiNormalizer:
    provider = "cloud_api"

    def _raw_messages(self, payload: dict[str, Any]) -> list[tuple[Any, str | None]]:
        # Pairs each message with the business number of the change that carried it.
        if not isinstance(payload, dict):
            raise InvalidPayload("payload body must be an object")
        try:
            webhook = CloudApiWebhook.model_validate(payload)
        except ValidationError as exc:
            raise InvalidPayload("malformed cloud api payload") from exc
        return [
            (raw, change.value.metadata.display_phone_number if change.value.metadata else None)
            for entry in webhook.entry
            for change in entry.changes
            for raw in change.value.messages
        ]

    def _event(self, item: tuple[Any, str | None]) -> InboundMessageEvent:
        raw, channel_phone = item
        if channel_phone is None:
            raise InvalidPayload("cloud api change has messages but no metadata")
        return parse_message_event(self.provider, raw, channel_phone=channel_phone)

    def normalize_batch(self, payload: dict[str, Any]) -> list[InboundMessageEvent]:
        return collect_events(self.provider, self._raw_messages(payload), self._event)

    def normalize(self, payload: dict[str, Any]) -> InboundMessageEvent:
        return self._event(first_message(self._raw_messages(payload)))
