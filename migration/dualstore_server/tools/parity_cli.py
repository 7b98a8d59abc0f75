"""
Operator CLI for DualStore.

Commands:
    check        Compare tables across the primary and secondary store
    flush        Drain the outbox once
    requeue      Return a failed outbox entry to pending
    conflicts    List open conflicts
    failed       List failed outbox entries
    purge-cache  Drop cached reads, optionally for one scope

Usage:
    python -m migration.dualstore_server.tools.parity_cli check --table expenses --table groups
    python -m migration.dualstore_server.tools.parity_cli flush --limit 200

Configuration comes from the same environment variables as the server;
--data-dir overrides DATA_DIR.

Invariants:
    - check is read-only unless --record-conflicts or --repair is given
    - Exit status is 1 when any checked table is out of parity
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any

from ..config import ServerConfig
from ..errors import DualStoreError
from ..outbox.models import OutboxStatus
from ..reconcile import MISSING_IN_PRIMARY, MISSING_IN_SECONDARY, PAYLOAD_MISMATCH, ParityReport
from ..service import DualStoreService

logger = logging.getLogger(__name__)


async def run_check(
    service: DualStoreService,
    tables: list[str],
    record_conflicts: bool = False,
    repair: bool = False,
) -> list[ParityReport]:
    """Check every table and return one report per table."""
    reports = []
    for table in tables:
        reports.append(
            await service.parity.check_table(  # type: ignore[union-attr]
                table, record_conflicts=record_conflicts, repair=repair
            )
        )
    return reports


def format_report(report: ParityReport) -> str:
    lines = [
        f"{report.table}: {'OK' if report.in_parity else 'DIVERGED'}",
        f"  primary={report.primary_count} secondary={report.secondary_count} "
        f"delta={report.count_delta}",
    ]
    if not report.in_parity:
        lines.append(
            f"  missing_in_secondary={report.count(MISSING_IN_SECONDARY)} "
            f"missing_in_primary={report.count(MISSING_IN_PRIMARY)} "
            f"payload_mismatch={report.count(PAYLOAD_MISMATCH)}"
        )
        for diff in report.diffs[:10]:
            fields = f" [{', '.join(diff.fields)}]" if diff.fields else ""
            lines.append(f"    {diff.kind}: {diff.record_id}{fields}")
    if report.conflicts_recorded:
        lines.append(f"  conflicts recorded: {report.conflicts_recorded}")
    if report.repairs_queued:
        lines.append(f"  repairs queued: {report.repairs_queued}")
    return "\n".join(lines)


async def _run(args: argparse.Namespace, config: ServerConfig) -> tuple[int, Any]:
    async with DualStoreService(config) as service:
        if args.command == "check":
            reports = await run_check(service, args.table, args.record_conflicts, args.repair)
            status = 0 if all(r.in_parity for r in reports) else 1
            return status, reports

        if args.command == "flush":
            result = await service.flush(args.limit)
            return (1 if result.dead_lettered else 0), result.to_dict()

        if args.command == "requeue":
            entry = await service.outbox.requeue(args.key)  # type: ignore[union-attr]
            return 0, entry.to_dict()

        if args.command == "conflicts":
            conflicts = await service.ledger.list_open(  # type: ignore[union-attr]
                entity_type=args.entity_type, limit=args.limit
            )
            return 0, [c.to_dict() for c in conflicts]

        if args.command == "purge-cache":
            deleted = await service.cache.purge(args.scope)  # type: ignore[union-attr]
            return 0, {"scope": args.scope or "*", "deleted": deleted}

        failed = await service.outbox.list_by_status(OutboxStatus.FAILED, limit=args.limit)  # type: ignore[union-attr]
        return 0, [e.to_dict() for e in failed]


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for operator tools."""
    parser = argparse.ArgumentParser(description="DualStore migration operator tool")
    parser.add_argument("--data-dir", help="Directory for SQLite databases (overrides DATA_DIR)")
    parser.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    check_parser = subparsers.add_parser("check", help="Compare tables across both stores")
    check_parser.add_argument("--table", action="append", required=True, help="Table to check (repeatable)")
    check_parser.add_argument(
        "--record-conflicts", action="store_true", help="Record payload mismatches as conflicts"
    )
    check_parser.add_argument(
        "--repair", action="store_true", help="Queue mirrors for missing or stale secondary records"
    )

    flush_parser = subparsers.add_parser("flush", help="Drain the outbox once")
    flush_parser.add_argument("--limit", type=int, default=100, help="Entries to drain")

    requeue_parser = subparsers.add_parser("requeue", help="Requeue a failed outbox entry")
    requeue_parser.add_argument("--key", required=True, help="Idempotency key of the entry")

    conflicts_parser = subparsers.add_parser("conflicts", help="List open conflicts")
    conflicts_parser.add_argument("--entity-type", help="Filter by entity type")
    conflicts_parser.add_argument("--limit", type=int, default=100, help="Maximum conflicts")

    failed_parser = subparsers.add_parser("failed", help="List failed outbox entries")
    failed_parser.add_argument("--limit", type=int, default=100, help="Maximum entries")

    purge_parser = subparsers.add_parser("purge-cache", help="Drop cached reads")
    purge_parser.add_argument("--scope", help="Only this scope (default: every scope)")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)
    if args.data_dir:
        config.storage = dataclasses.replace(config.storage, data_dir=args.data_dir)

    try:
        status, output = asyncio.run(_run(args, config))
    except DualStoreError as e:
        print(f"{args.command} failed: {e.message}", file=sys.stderr)
        sys.exit(1)

    if args.command == "check":
        if args.format == "json":
            print(json.dumps([r.to_dict() for r in output], indent=2))
        else:
            print("\n".join(format_report(r) for r in output))
    else:
        print(json.dumps(output, indent=2, default=str))

    sys.exit(status)


if __name__ == "__main__":
    main()
