from __future__ import annotations

import argparse
import asyncio
import json
import sys

from skillmesh.services.migrations.queue import MigrationJobPayload, enqueue_migration_job
from skillmesh.services.runtime import build_runtime


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Move a tenant to another isolation tier")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument(
        "--target",
        required=True,
        help="Target descriptor: shared | schema | schema:<name> | dedicated:<dsn>",
    )
    parser.add_argument("--requested-by", default="cli", help="Actor recorded on the job")
    parser.add_argument(
        "--wait",
        action="store_true",
        help="Run the job in this process instead of handing it to the worker",
    )
    return parser


async def _start(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    try:
        view = await runtime.coordinator.start(args.tenant, args.target, requested_by=args.requested_by)
        if args.wait:
            view = await runtime.coordinator.run(view.id)
        else:
            await enqueue_migration_job(
                MigrationJobPayload(job_id=view.id, tenant_id=view.tenant_id),
                coordinator=runtime.coordinator,
            )
            view = await runtime.coordinator.get(view.id)
    finally:
        await runtime.close()
    print(json.dumps(view.as_json(), indent=2))
    return 0 if view.status != "failed" else 2


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_start(args))
    except Exception as exc:  # noqa: BLE001 - surface migration failures clearly
        print(f"start_migration failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
