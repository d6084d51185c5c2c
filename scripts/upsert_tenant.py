from __future__ import annotations

import argparse
import asyncio
import json
import sys

from skillmesh.domain.tenancy import SUBSCRIPTION_TIERS, TenantUpsert
from skillmesh.services.runtime import build_runtime


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create or update a tenant registry record")
    parser.add_argument("--id", required=True, help="Tenant identifier")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--slug", required=True, help="Subdomain slug")
    parser.add_argument("--tier", required=True, choices=["shared", "schema", "dedicated"])
    parser.add_argument(
        "--connection",
        default=None,
        help="Descriptor shorthand: shared | schema:<name> | dedicated:<dsn>",
    )
    parser.add_argument("--subscription", default="starter", choices=list(SUBSCRIPTION_TIERS))
    parser.add_argument("--status", default="active", choices=["active", "suspended", "decommissioned"])
    parser.add_argument("--max-users", type=int, default=None)
    parser.add_argument("--max-storage-gb", type=int, default=None)
    parser.add_argument("--flag", action="append", default=[], help="Compliance flag; repeatable")
    return parser


async def _upsert(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    try:
        record = await runtime.registry.upsert(
            TenantUpsert(
                id=args.id,
                name=args.name,
                slug=args.slug,
                isolation_tier=args.tier,
                connection=args.connection,
                subscription_tier=args.subscription,
                status=args.status,
                max_users=args.max_users,
                max_storage_gb=args.max_storage_gb,
                compliance_flags=tuple(args.flag),
            )
        )
    finally:
        await runtime.close()
    print(
        json.dumps(
            {
                "id": record.id,
                "slug": record.slug,
                "isolation_tier": record.isolation_tier,
                "status": record.status,
                "version": record.version,
            },
            indent=2,
        )
    )
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_upsert(args))
    except Exception as exc:  # noqa: BLE001 - surface registry failures clearly
        print(f"upsert_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
