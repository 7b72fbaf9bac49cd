from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query, Request

from inboxrag.apps.api.deps import get_app_container
from inboxrag.apps.api.response import envelope
from inboxrag.services.container import Container


router = APIRouter(prefix="/tenants", tags=["tenants"])


@router.get("/{tenant_id}/usage")
async def get_usage(
    tenant_id: str,
    request: Request,
    day: date | None = Query(default=None),
    container: Container = Depends(get_app_container),
) -> dict:
    # Counters and limits for one day, plus the drops recorded against the tenant that day.
    report = await container.ledger.usage_report(tenant_id, day)
    target_day = date.fromisoformat(report["day"])
    events = await container.storage.conversations.list_events(tenant_id, target_day)
    report["drops"] = [
        {
            "provider_message_id": event.provider_message_id,
            "reason": event.reason,
            "detail": event.detail,
            "created_at": event.created_at.isoformat() if event.created_at else None,
        }
        for event in events
    ]
    return envelope(request, report)
