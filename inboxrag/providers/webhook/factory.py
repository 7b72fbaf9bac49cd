from __future__ import annotations

from inboxrag.core.errors import InvalidPayload
from inboxrag.domain.events import InboundMessageEvent
from inboxrag.providers.webhook.base import WebhookNormalizer
from inboxrag.providers.webhook.cloud_api import CloudApiNormalizer
from inboxrag.providers.webhook.dialog360 import Dialog360Normalizer


# Each provider tag maps to exactly one payload format and its normalizer.
_NORMALIZERS: dict[str, WebhookNormalizer] = {
    Dialog360Normalizer.provider: Dialog360Normalizer(),
    CloudApiNormalizer.provider: CloudApiNormalizer(),
}


def supported_providers() -> list[str]:
    return sorted(_NORMALIZERS)


def get_normalizer(provider: str) -> WebhookNormalizer:
    normalizer = _NORMALIZERS.get((provider or "").lower())
    if normalizer is None:
        raise InvalidPayload(f"unsupported provider: {provider}")
    return normalizer


def normalize(provider: str, payload: dict) -> InboundMessageEvent:
    # Pure transform: no storage, no side effects beyond validation.
    return get_normalizer(provider).normalize(payload)


def normalize_batch(provider: str, payload: dict) -> list[InboundMessageEvent]:
    return get_normalizer(provider).normalize_batch(payload)
