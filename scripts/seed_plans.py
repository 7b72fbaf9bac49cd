from __future__ import annotations

import argparse
import asyncio
import sys

from sqlalchemy.dialects.postgresql import insert as pg_insert

from inboxrag.domain.models import Channel, Tenant
from inboxrag.domain.plans import DEFAULT_PLANS, PLAN_NAMES
from inboxrag.persistence.db import dispose_engine, get_session_factory
from inboxrag.persistence.sql import build_sql_storage
from inboxrag.providers.webhook.base import normalize_phone_number


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Upsert the default plan catalog and an optional demo tenant")
    parser.add_argument("--tenant", default=None, help="Tenant id to create when missing")
    parser.add_argument("--plan", default="starter", choices=sorted(DEFAULT_PLANS), help="Plan for the demo tenant")
    parser.add_argument("--channel-phone", default=None, help="WhatsApp number to attach to the demo tenant")
    return parser


async def seed(args: argparse.Namespace) -> int:
    session_factory = get_session_factory()
    storage = build_sql_storage(session_factory)
    for code, limits in DEFAULT_PLANS.items():
        await storage.tenants.upsert_plan(code, PLAN_NAMES.get(code, code), limits.to_json())
        print(f"plan_upserted code={code}")

    if args.tenant:
        phone = normalize_phone_number(args.channel_phone) if args.channel_phone else ""
        if args.channel_phone and not phone:
            raise ValueError(f"cannot normalize channel phone {args.channel_phone!r}")
        async with session_factory() as session:
            # Existing tenants and channels are left untouched so reseeding is safe.
            await session.execute(
                pg_insert(Tenant)
                .values(id=args.tenant, name=args.tenant, plan_code=args.plan, is_active=True)
                .on_conflict_do_nothing(index_elements=[Tenant.id])
            )
            if phone:
                await session.execute(
                    pg_insert(Channel)
                    .values(
                        id=f"{args.tenant}-whatsapp",
                        tenant_id=args.tenant,
                        type="whatsapp",
                        name=f"{args.tenant} WhatsApp",
                        is_active=True,
                        config_json={"phone_number": phone},
                    )
                    .on_conflict_do_nothing(index_elements=[Channel.id])
                )
            await session.commit()
        print(f"tenant_seeded id={args.tenant} plan={args.plan} channel_phone={phone or '-'}")
    await dispose_engine()
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    # Surface clear failures and exit non-zero so CI/dev scripts can detect issues.
    try:
        return asyncio.run(seed(args))
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_plans failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
