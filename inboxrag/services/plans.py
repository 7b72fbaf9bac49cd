from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Callable

from inboxrag.core.config import get_settings
from inboxrag.core.errors import TenantNotFound
from inboxrag.domain.plans import DEFAULT_PLANS, PlanLimits
from inboxrag.domain.records import TenantRecord
from inboxrag.persistence.base import TenantStore


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PlanCatalog:
    """Read-through cache of plan limits keyed by plan code."""

    def __init__(
        self,
        store: TenantStore,
        *,
        ttl_s: int | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._ttl_s = get_settings().plan_cache_ttl_s if ttl_s is None else ttl_s
        # Allow time injection for deterministic expiry tests.
        self._time_provider = time_provider or _utc_now
        self._cache: dict[str, tuple[datetime, PlanLimits]] = {}

    async def limits_for_plan(self, plan_code: str) -> PlanLimits:
        now = self._time_provider()
        cached = self._cache.get(plan_code)
        if cached is not None and (now - cached[0]).total_seconds() < self._ttl_s:
            return cached[1]
        raw = await self._store.get_plan_limits(plan_code)
        if raw is not None:
            limits = PlanLimits.from_json(plan_code, raw)
        else:
            limits = _fallback_plan(plan_code)
        self._cache[plan_code] = (now, limits)
        return limits

    async def tenant_with_limits(self, tenant_id: str) -> tuple[TenantRecord, PlanLimits]:
        tenant = await self._store.get_tenant(tenant_id)
        if tenant is None or not tenant.is_active:
            raise TenantNotFound(tenant_id)
        return tenant, await self.limits_for_plan(tenant.plan_code)

    def refresh(self, plan_code: str | None = None) -> None:
        # Drop cached entries so plan changes apply before the TTL runs out.
        if plan_code is None:
            self._cache.clear()
        else:
            self._cache.pop(plan_code, None)


def _fallback_plan(plan_code: str) -> PlanLimits:
    if plan_code in DEFAULT_PLANS:
        return DEFAULT_PLANS[plan_code]
    default_code = get_settings().default_plan_code
    logger.warning("plan_unknown plan=%s fallback=%s", plan_code, default_code)
    return DEFAULT_PLANS.get(default_code, DEFAULT_PLANS["starter"])
