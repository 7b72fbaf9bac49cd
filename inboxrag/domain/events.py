from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class InboundMessageEvent(BaseModel):
    # Provider-agnostic inbound message; the only shape the pipeline ever sees.
    provider: str
    provider_message_id: str
    channel_phone_number: str
    from_phone: str
    text: str = ""
    received_at: datetime
    reply_to_message_id: str | None = None


class MessageJobPayload(BaseModel):
    kind: Literal["message"] = "message"
    event: InboundMessageEvent


class IndexJobPayload(BaseModel):
    kind: Literal["index"] = "index"
    tenant_id: str
    document_id: str


JobPayload = Annotated[Union[MessageJobPayload, IndexJobPayload], Field(discriminator="kind")]


def message_job_key(provider_message_id: str) -> str:
    return f"message:{provider_message_id}"


def index_job_key(tenant_id: str, document_id: str) -> str:
    return f"index:{tenant_id}:{document_id}"
