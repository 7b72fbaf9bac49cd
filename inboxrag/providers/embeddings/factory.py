from __future__ import annotations

from inboxrag.core.config import get_settings
from inboxrag.core.errors import ProviderConfigError
from inboxrag.providers.embeddings.base import EmbeddingProvider
from inboxrag.providers.embeddings.hashing import HashEmbeddingProvider
from inboxrag.providers.embeddings.http import HttpEmbeddingProvider


def get_embedding_provider() -> EmbeddingProvider:
    settings = get_settings()
    provider = (settings.embedding_provider or "hash").lower()

    if provider == "hash":
        return HashEmbeddingProvider()
    if provider == "http":
        return HttpEmbeddingProvider()

    raise ProviderConfigError(f"Unsupported embedding provider: {provider}")
