from __future__ import annotations

from inboxrag.core.config import get_settings
from inboxrag.core.errors import ProviderConfigError
from inboxrag.providers.generation.base import GenerationProvider
from inboxrag.providers.generation.fake import FakeGenerationProvider
from inboxrag.providers.generation.http import HttpGenerationProvider


def get_generation_provider() -> GenerationProvider:
    settings = get_settings()
    provider = (settings.generation_provider or "fake").lower()

    if provider == "fake":
        return FakeGenerationProvider()
    if provider == "http":
        return HttpGenerationProvider()

    raise ProviderConfigError(f"Unsupported generation provider: {provider}")
