from __future__ import annotations

import argparse
import asyncio
import sys

from capaudit.core.logging import configure_logging
from capaudit.persistence.db import SessionLocal
from capaudit.providers.rbac.sql import SqlRbacProvider
from capaudit.services.scan import resolve_finding


def _parse_override(raw: str) -> tuple[int, str]:
    # role_id=permission, e.g. 5=prevent or 5=-1
    role_part, sep, permission = raw.partition("=")
    if not sep or not role_part.strip().isdigit() or not permission.strip():
        raise argparse.ArgumentTypeError(f"expected ROLE_ID=PERMISSION, got {raw!r}")
    return int(role_part), permission.strip()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Set a finding's state and optionally rewrite role overrides")
    parser.add_argument("--finding", type=int, required=True, help="Finding id")
    parser.add_argument("--state", required=True, choices=("pending", "resolved", "ignored"))
    parser.add_argument(
        "--override",
        action="append",
        type=_parse_override,
        default=[],
        help="ROLE_ID=PERMISSION (inherit, allow, prevent, prohibit); repeatable",
    )
    parser.add_argument("--actor", type=int, default=None, help="Operator user id")
    parser.add_argument("--no-rescan", action="store_true", help="Skip the follow-up user scan")
    return parser


async def _run(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        result = await resolve_finding(
            session,
            SqlRbacProvider(session),
            args.finding,
            args.state,
            actor_id=args.actor,
            overrides=dict(args.override),
            rescan=not args.no_rescan,
        )
    print(
        f"Finding {result.finding_id} state={result.issue_state} overrides={len(result.overrides_applied)} "
        f"scan_id={result.scan_id} removed={result.removed}"
    )
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface failure for operators.
        print(f"resolve_finding failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
