from __future__ import annotations

from datetime import date

from sqlalchemy import and_, select, true
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from inboxrag.domain.models import UsageCounterDaily, UsageReceipt
from inboxrag.domain.plans import USAGE_COLUMNS


def _column(kind: str):
    return getattr(UsageCounterDaily, USAGE_COLUMNS[kind])


def counters_from_row(row: UsageCounterDaily | None) -> dict[str, int]:
    return {kind: int(getattr(row, column) or 0) if row is not None else 0 for kind, column in USAGE_COLUMNS.items()}


async def get_counters(session: AsyncSession, tenant_id: str, day: date) -> dict[str, int]:
    result = await session.execute(
        select(UsageCounterDaily).where(
            UsageCounterDaily.tenant_id == tenant_id,
            UsageCounterDaily.day == day,
        )
    )
    return counters_from_row(result.scalar_one_or_none())


async def insert_receipt(session: AsyncSession, *, tenant_id: str, receipt_key: str, day: date) -> bool:
    # Returns False when the receipt already exists, meaning this unit was already consumed.
    stmt = (
        pg_insert(UsageReceipt)
        .values(tenant_id=tenant_id, receipt_key=receipt_key, day=day)
        .on_conflict_do_nothing(index_elements=[UsageReceipt.tenant_id, UsageReceipt.receipt_key])
        .returning(UsageReceipt.receipt_key)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def conditional_increment(
    session: AsyncSession,
    *,
    tenant_id: str,
    day: date,
    deltas: dict[str, int],
    limits: dict[str, int],
    headroom: dict[str, int],
) -> dict[str, int] | None:
    """Increment counters in one statement, guarded by the limit predicates.

    The row lock taken by ``ON CONFLICT DO UPDATE`` serializes concurrent writers, and
    the ``WHERE`` clause is evaluated against the latest committed row. A ``None``
    result means a predicate failed and nothing was written.
    """
    # A brand-new row takes the INSERT path, where the WHERE clause never runs.
    for kind, limit in limits.items():
        if deltas.get(kind, 0) > limit:
            return None
    for kind, limit in headroom.items():
        if limit <= 0:
            return None

    values = {"tenant_id": tenant_id, "day": day}
    for kind, delta in deltas.items():
        values[USAGE_COLUMNS[kind]] = delta

    stmt = pg_insert(UsageCounterDaily).values(**values)
    set_ = {
        USAGE_COLUMNS[kind]: _column(kind) + stmt.excluded[USAGE_COLUMNS[kind]]
        for kind in deltas
    }
    predicates = [_column(kind) + deltas.get(kind, 0) <= limit for kind, limit in limits.items()]
    predicates.extend(_column(kind) < limit for kind, limit in headroom.items())
    stmt = stmt.on_conflict_do_update(
        index_elements=[UsageCounterDaily.tenant_id, UsageCounterDaily.day],
        set_=set_,
        where=and_(*predicates) if predicates else true(),
    ).returning(UsageCounterDaily)
    result = await session.execute(stmt)
    row = result.scalar_one_or_none()
    if row is None:
        return None
    return counters_from_row(row)
