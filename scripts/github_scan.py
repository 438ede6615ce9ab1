from __future__ import annotations

import argparse
import asyncio
import json
import sys

from postureledger.core.logging import configure_logging
from postureledger.persistence.db import engine
from postureledger.services.scans import ScanJobPayload, execute_scan, run_all_active_scans


def _build_parser() -> argparse.ArgumentParser:
    # Entry point for external schedulers (cron, CI) that drive reconciliation runs.
    parser = argparse.ArgumentParser(description="Run a GitHub compliance scan")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--org", help="Organization id")
    target.add_argument("--all", action="store_true", help="Every organization with an active integration")
    parser.add_argument(
        "--kind",
        choices=["repository_scan", "automated_tests"],
        default="repository_scan",
        help="Which run to perform",
    )
    parser.add_argument("--actor", default=None, help="Actor id recorded on audit events")
    return parser


async def _run(args: argparse.Namespace) -> int:
    try:
        if args.all:
            summaries = await run_all_active_scans(args.kind)
        else:
            payload = ScanJobPayload(organization_id=args.org, kind=args.kind, actor_id=args.actor)
            summaries = [await execute_scan(payload)]
    finally:
        await engine.dispose()
    for summary in summaries:
        print(json.dumps(summary.as_dict(), sort_keys=True))
    return 1 if any(summary.status == "failed" for summary in summaries) else 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface failure for scheduler diagnostics.
        print(f"github_scan failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
