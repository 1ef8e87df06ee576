from __future__ import annotations

import argparse
import asyncio
import json
import sys

from capaudit.persistence.db import SessionLocal
from capaudit.providers.rbac.sql import SqlRbacProvider
from capaudit.services.scan import get_issue_report


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print a user's overlap/conflict report without persisting findings")
    parser.add_argument("--user", type=int, required=True, help="User id")
    parser.add_argument("--context", type=int, default=None, help="Context id (defaults to the system context)")
    parser.add_argument("--include-parents", action="store_true", help="Include ancestor contexts")
    return parser


async def _run(user_id: int, context_id: int | None, include_parents: bool) -> int:
    async with SessionLocal() as session:
        report = await get_issue_report(SqlRbacProvider(session), user_id, context_id, include_parents)
    print(json.dumps(report.as_dict(), indent=2, sort_keys=True))
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args.user, args.context, args.include_parents))
    except Exception as exc:  # noqa: BLE001 - surface failure for operators.
        print(f"issue_report failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
