from __future__ import annotations

import argparse
import asyncio
import sys

from skillmesh.services.runtime import build_runtime


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Purge migration sources whose grace period has ended")
    parser.add_argument(
        "--dispose-idle",
        action="store_true",
        help="Also dispose tenant pools idle past the configured threshold",
    )
    return parser


async def _reclaim(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    try:
        reclaimed = await runtime.coordinator.reclaim_expired_sources()
        disposed = await runtime.pools.dispose_idle() if args.dispose_idle else []
    finally:
        await runtime.close()
    print(f"reclaimed_jobs={len(reclaimed)} disposed_pools={len(disposed)}")
    for job_id in reclaimed:
        print(f"  {job_id}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_reclaim(args))
    except Exception as exc:  # noqa: BLE001 - surface reclaim failures clearly
        print(f"reclaim_sources failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
