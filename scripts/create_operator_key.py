from __future__ import annotations

import argparse
import asyncio
import sys

from skillmesh.persistence.db import SessionLocal
from skillmesh.services.audit import record_event
from skillmesh.services.auth.operator_keys import create_operator_key


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an operator key for admin and ops endpoints")
    parser.add_argument("--role", required=True, help="Role: viewer|operator")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        row, raw_key = await create_operator_key(session, role=args.role, name=args.name)
        # Record key creation for security investigations.
        await record_event(
            session=session,
            tenant_id=None,
            actor_type="system",
            actor_id="create_operator_key",
            actor_role=row.role,
            event_type="auth.operator_key.created",
            outcome="success",
            resource_type="operator_key",
            resource_id=row.id,
            metadata={"key_prefix": row.key_prefix, "key_name": args.name},
            commit=True,
            best_effort=False,
        )

    print("Operator key created:")
    print(f"  key_id: {row.id}")
    print(f"  key_prefix: {row.key_prefix}")
    print(f"  role: {row.role}")
    print("  operator_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_operator_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
