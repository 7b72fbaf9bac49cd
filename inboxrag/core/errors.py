from __future__ import annotations


class InboxError(Exception):
    """Base error for InboxRAG."""


class ProviderConfigError(InboxError):
    """Missing or invalid provider configuration."""


class InvalidPayload(InboxError):
    """Provider payload cannot be turned into an inbound message event."""


class ChannelNotFound(InboxError):
    """No active channel owns the destination phone number."""

    def __init__(self, phone_number: str) -> None:
        super().__init__(f"no active channel for {phone_number}")
        self.phone_number = phone_number


class AmbiguousChannel(InboxError):
    """More than one active channel claims the destination phone number."""

    def __init__(self, phone_number: str, channel_ids: list[str]) -> None:
        super().__init__(f"{len(channel_ids)} channels claim {phone_number}")
        self.phone_number = phone_number
        self.channel_ids = channel_ids


class TenantNotFound(InboxError):
    """Tenant does not exist or is inactive."""


class DocumentNotFound(InboxError):
    """Knowledge document does not exist for the tenant."""


class InvalidDocument(InboxError):
    """Uploaded document cannot be indexed."""


class QuotaExceeded(InboxError):
    """A usage counter would exceed the tenant's plan limit."""

    def __init__(self, kind: str, limit: int | None = None, used: int | None = None) -> None:
        super().__init__(f"quota exceeded: {kind}")
        self.kind = kind
        self.limit = limit
        self.used = used


class InfrastructureFailure(InboxError):
    """Transient storage, embedding or generation failure; safe to retry."""


class StorageError(InfrastructureFailure):
    """Storage backend failure."""


class RetrievalError(InfrastructureFailure):
    """Vector search failure or timeout."""


class EmbeddingError(InfrastructureFailure):
    """Embedding provider failure or timeout."""


class GenerationError(InfrastructureFailure):
    """Generation provider failure or timeout."""


class LeaseLost(InboxError):
    """The job lease expired or was taken over by another consumer."""
