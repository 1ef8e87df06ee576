from __future__ import annotations

import argparse
import asyncio
import json
import sys

from capaudit.core.logging import configure_logging
from capaudit.persistence.db import SessionLocal
from capaudit.providers.rbac.sql import SqlRbacProvider
from capaudit.services.scan import ScanConfiguration, ScanOrchestrator


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scan role assignments for capability overlaps and conflicts")
    parser.add_argument(
        "--mode",
        choices=("full", "users", "overlap"),
        default="full",
        help="full scan, user-scoped scan, or overlap-only scan",
    )
    parser.add_argument("--context", type=int, default=None, help="Root context id limiting the scan subtree")
    parser.add_argument("--users", default="", help="Comma separated user ids (users and overlap modes)")
    parser.add_argument("--levels", default=None, help="Context levels override, e.g. 'course,module' or '50,70'")
    parser.add_argument("--include-parents", action="store_true", default=None, help="Analyze ancestor contexts too")
    parser.add_argument("--initiated-by", type=int, default=None, help="Operator user id")
    return parser


async def _run(args: argparse.Namespace) -> int:
    config = ScanConfiguration.from_settings(include_parents=args.include_parents, levels=args.levels)
    async with SessionLocal() as session:
        orchestrator = ScanOrchestrator(session, SqlRbacProvider(session), config)
        if args.mode == "users":
            result = await orchestrator.run_scan_for_users(args.users, args.context, initiated_by=args.initiated_by)
            if result is None:
                print("No valid user ids supplied; nothing scanned")
                return 0
        elif args.mode == "overlap":
            result = await orchestrator.run_overlap_only_scan(args.context, args.users, initiated_by=args.initiated_by)
        else:
            result = await orchestrator.run_full_scan(args.context, initiated_by=args.initiated_by)
    print(f"Scan {result.scan_id} status={result.status} mode={result.mode}")
    print(json.dumps(result.meta, sort_keys=True))
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - the run is already marked failed; surface the reason.
        print(f"run_scan failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
