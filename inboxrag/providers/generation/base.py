from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class ConversationTurn:
    inbound_text: str
    reply_text: str


@dataclass(frozen=True)
class GenerationRequest:
    tenant_id: str
    text: str
    # Rendered knowledge block; empty when retrieval found nothing or was skipped.
    context: str = ""
    history: list[ConversationTurn] = field(default_factory=list)


@dataclass(frozen=True)
class GenerationResult:
    text: str
    tokens_in: int
    tokens_out: int


class GenerationProvider(Protocol):
    name: str

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        ...
