from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from inboxrag.apps.api.deps import get_app_container
from inboxrag.core.config import get_settings
from inboxrag.core.errors import InvalidPayload, StorageError
from inboxrag.domain.events import MessageJobPayload, message_job_key
from inboxrag.providers.webhook.factory import normalize_batch
from inboxrag.services.container import Container
from inboxrag.services.telemetry import increment_counter
from inboxrag.workers.pipeline_worker import run_until_empty


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class WebhookAck(BaseModel):
    status: str
    accepted: int


@router.post("/whatsapp/{provider}", response_model=WebhookAck)
async def receive_whatsapp_webhook(
    provider: str,
    request: Request,
    container: Container = Depends(get_app_container),
) -> WebhookAck:
    """Accept a provider delivery and enqueue one job per message.

    Providers redeliver on anything but a 2xx, so every outcome answers 200; malformed
    payloads and enqueue failures are logged and counted instead.
    """
    try:
        payload = await request.json()
    except ValueError:
        increment_counter("webhook_ignored_total")
        logger.warning("webhook_body_invalid provider=%s", provider)
        return WebhookAck(status="ignored", accepted=0)
    try:
        events = normalize_batch(provider, payload)
    except InvalidPayload as exc:
        increment_counter("webhook_ignored_total")
        logger.warning("webhook_payload_invalid provider=%s error=%s", provider, exc)
        return WebhookAck(status="ignored", accepted=0)
    if not events:
        # Status callbacks and other non-message deliveries carry nothing to process.
        return WebhookAck(status="ignored", accepted=0)

    accepted = 0
    for event in events:
        job = MessageJobPayload(event=event)
        try:
            added = await container.queue.enqueue(
                message_job_key(event.provider_message_id),
                job.kind,
                job.model_dump(mode="json"),
            )
        except StorageError as exc:
            increment_counter("webhook_enqueue_failed_total")
            logger.error(
                "webhook_enqueue_failed provider=%s message_id=%s error=%s",
                provider,
                event.provider_message_id,
                exc,
            )
            continue
        if added:
            accepted += 1
        else:
            increment_counter("webhook_duplicates_total")
            logger.info("webhook_duplicate message_id=%s", event.provider_message_id)

    if get_settings().execution_mode == "inline":
        await run_until_empty(container)
    logger.info("webhook_accepted provider=%s messages=%s accepted=%s", provider, len(events), accepted)
    return WebhookAck(status="accepted", accepted=accepted)
