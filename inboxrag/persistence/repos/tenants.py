from __future__ import annotations

from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from inboxrag.domain.models import Plan, Tenant
from inboxrag.domain.records import TenantRecord


def to_record(tenant: Tenant) -> TenantRecord:
    return TenantRecord(
        id=tenant.id,
        name=tenant.name,
        plan_code=tenant.plan_code,
        is_active=bool(tenant.is_active),
        documents_count=int(tenant.documents_count or 0),
        documents_storage_bytes=int(tenant.documents_storage_bytes or 0),
    )


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_plan(session: AsyncSession, code: str) -> Plan | None:
    result = await session.execute(select(Plan).where(Plan.code == code, Plan.is_active.is_(True)))
    return result.scalar_one_or_none()


async def upsert_plan(session: AsyncSession, *, code: str, name: str, limits: dict[str, Any]) -> None:
    stmt = pg_insert(Plan).values(code=code, name=name, limits_json=limits, is_active=True)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Plan.code],
        set_={"name": stmt.excluded.name, "limits_json": stmt.excluded.limits_json, "is_active": True},
    )
    await session.execute(stmt)


async def adjust_document_stats(
    session: AsyncSession,
    tenant_id: str,
    *,
    count_delta: int,
    bytes_delta: int,
) -> None:
    # Relative update so concurrent uploads never lose an increment; floors at zero on delete.
    await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(
            documents_count=func.greatest(Tenant.documents_count + count_delta, 0),
            documents_storage_bytes=func.greatest(Tenant.documents_storage_bytes + bytes_delta, 0),
        )
    )
