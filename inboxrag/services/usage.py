from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
import logging
from typing import Any, Callable, Iterable, Mapping

from inboxrag.core.errors import QuotaExceeded
from inboxrag.domain.plans import USAGE_COLUMNS, PlanLimits
from inboxrag.domain.records import TenantRecord
from inboxrag.persistence.base import UsageStore
from inboxrag.services.plans import PlanCatalog
from inboxrag.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_BYTES_PER_MB = 1024 * 1024


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QuotaDecision:
    # Outcome of one atomic check-and-increment against the daily counters.
    allowed: bool
    kind: str | None = None
    limit: int | None = None
    used: int | None = None
    replayed: bool = False
    counters: dict[str, int] = field(default_factory=dict)

    def raise_for_exceeded(self) -> None:
        if not self.allowed:
            raise QuotaExceeded(self.kind or "unknown", limit=self.limit, used=self.used)


class UsageLedger:
    def __init__(
        self,
        store: UsageStore,
        catalog: PlanCatalog,
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        # Allow time injection for deterministic day-rollover tests.
        self._time_provider = time_provider or _utc_now

    def today(self) -> date:
        # Quota days follow the UTC processing date, not the provider timestamp.
        return self._time_provider().astimezone(timezone.utc).date()

    async def try_consume(
        self,
        tenant_id: str,
        day: date | None,
        delta: Mapping[str, int],
        *,
        headroom: Iterable[str] = (),
        receipt_key: str | None = None,
        limits: PlanLimits | None = None,
    ) -> QuotaDecision:
        """Increment ``delta`` for the tenant's day unless any plan limit would be crossed.

        Either every counter in ``delta`` moves or none does. ``headroom`` names kinds
        that are not incremented but must still be below their limit. Replaying the
        same ``receipt_key`` is a no-op that reports ``allowed=True, replayed=True``.
        """
        deltas = _validate_delta(delta)
        if limits is None:
            _, limits = await self._catalog.tenant_with_limits(tenant_id)
        enforced = {kind: limit for kind in deltas if (limit := limits.limit_for(kind)) is not None}
        headroom_limits = {
            kind: limit for kind in headroom if (limit := limits.limit_for(kind)) is not None
        }
        target_day = day or self.today()
        result = await self._store.consume(
            tenant_id=tenant_id,
            day=target_day,
            deltas=deltas,
            limits=enforced,
            headroom=headroom_limits,
            receipt_key=receipt_key,
        )
        if result.replayed:
            increment_counter("usage_replays_total")
            logger.info("usage_replayed tenant=%s receipt=%s", tenant_id, receipt_key)
            return QuotaDecision(allowed=True, replayed=True, counters=result.counters)
        if not result.applied:
            kind = result.exceeded_kind
            increment_counter(f"quota_exceeded_total.{kind}")
            logger.info(
                "quota_exceeded tenant=%s kind=%s used=%s limit=%s",
                tenant_id,
                kind,
                result.counters.get(kind or "", 0),
                limits.limit_for(kind or ""),
            )
            return QuotaDecision(
                allowed=False,
                kind=kind,
                limit=limits.limit_for(kind or ""),
                used=result.counters.get(kind or "", 0),
                counters=result.counters,
            )
        return QuotaDecision(allowed=True, counters=result.counters)

    async def record(
        self,
        tenant_id: str,
        day: date | None,
        delta: Mapping[str, int],
        *,
        receipt_key: str | None = None,
    ) -> QuotaDecision:
        # Usage that already happened is recorded through the same primitive without limits.
        deltas = _validate_delta(delta)
        result = await self._store.consume(
            tenant_id=tenant_id,
            day=day or self.today(),
            deltas=deltas,
            limits={},
            headroom={},
            receipt_key=receipt_key,
        )
        return QuotaDecision(allowed=True, replayed=result.replayed, counters=result.counters)

    def check_capacity(self, tenant: TenantRecord, limits: PlanLimits) -> QuotaDecision:
        # Aggregates already include the document being indexed.
        if limits.max_documents is not None and tenant.documents_count > limits.max_documents:
            return QuotaDecision(
                allowed=False,
                kind="documents",
                limit=limits.max_documents,
                used=tenant.documents_count,
            )
        if (
            limits.max_storage_mb is not None
            and tenant.documents_storage_bytes > limits.max_storage_mb * _BYTES_PER_MB
        ):
            return QuotaDecision(
                allowed=False,
                kind="storage",
                limit=limits.max_storage_mb,
                used=int(tenant.documents_storage_mb),
            )
        return QuotaDecision(allowed=True)

    async def usage_report(self, tenant_id: str, day: date | None = None) -> dict[str, Any]:
        tenant, limits = await self._catalog.tenant_with_limits(tenant_id)
        target_day = day or self.today()
        counters = await self._store.get_counters(tenant_id, target_day)
        return {
            "tenant_id": tenant_id,
            "day": target_day.isoformat(),
            "plan_code": tenant.plan_code,
            "counters": counters,
            "limits": limits.to_json(),
            "documents_count": tenant.documents_count,
            "documents_storage_bytes": tenant.documents_storage_bytes,
        }


def _validate_delta(delta: Mapping[str, int]) -> dict[str, int]:
    if not delta:
        raise ValueError("usage delta must name at least one counter")
    deltas: dict[str, int] = {}
    for kind, value in delta.items():
        if kind not in USAGE_COLUMNS:
            raise ValueError(f"unknown usage counter: {kind}")
        if int(value) < 0:
            raise ValueError(f"usage delta for {kind} must be non-negative")
        deltas[kind] = int(value)
    return deltas
