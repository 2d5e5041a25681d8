#!/usr/bin/env python3
"""
Impact Ledger Management CLI

Commands for managing the credit store:
- verify-credits: Check that no claim or metric pool is over-credited
- available: Show remaining creditable value for a metric or claim
- summary: Totals per metric over a window, with chart ceiling
- export: Export the whole store to a JSON snapshot
- import: Import a JSON snapshot (credits are re-validated)
- health-check: Run health checks

Read commands accept --snapshot FILE to work on a snapshot instead of
the configured store.

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage verify-credits
    python -m tools.manage available --metric 3f1c... --claim 9a2e...
    python -m tools.manage summary --lookback 6M --snapshot credits.json
"""

import argparse
import sys
from pathlib import Path
from uuid import UUID

from pydantic import ValidationError

from impactledger.config import EngineConfig
from impactledger.core import AggregationFilters, CreditLedger, axis_bounds, downsample, format_tick
from impactledger.db.factory import get_credit_store
from impactledger.db.snapshot import export_snapshot, import_snapshot, read_snapshot, write_snapshot
from impactledger.db.store import CreditStore, InMemoryCreditStore
from impactledger.errors import EngineError, StoreError
from impactledger.observability import check_health, setup_logging
from impactledger.schemas import TemporalWindow


def _load_store(args) -> CreditStore:
    """The configured store, or an in-memory store loaded from --snapshot."""
    snapshot_path = getattr(args, "snapshot", None)
    if snapshot_path:
        store = InMemoryCreditStore()
        import_snapshot(store, read_snapshot(Path(snapshot_path)))
        return store
    return get_credit_store()


def cmd_verify_credits(args):
    """Verify conservation across every metric."""
    store = _load_store(args)
    ledger = CreditLedger(store)
    metric_id = UUID(args.metric) if args.metric else None

    violations = ledger.verify_conservation(metric_id)
    if not violations:
        print("[OK] No claim or pool is over-credited")
        return 0

    print(f"[FAIL] {len(violations)} over-credited scope(s):")
    for v in violations:
        scope = f"claim {v.claim_id}" if v.claim_id else "pool"
        print(f"  metric {v.metric_id} {scope}: claimed {v.claimed}, credited {v.credited}")
    return 1


def cmd_available(args):
    """Print remaining creditable value."""
    store = _load_store(args)
    ledger = CreditLedger(store)
    claim_id = UUID(args.claim) if args.claim else None
    available = ledger.available_to_credit(UUID(args.metric), claim_id)
    print(available)
    return 0


def cmd_summary(args):
    """Totals per metric over a window."""
    store = _load_store(args)
    config = EngineConfig.from_env()
    aggregator = config.aggregator()

    if args.start or args.end:
        window = TemporalWindow.from_parts(start=args.start, end=args.end, day=args.start)
        filters = AggregationFilters(window=window)
    else:
        filters = AggregationFilters(lookback=args.lookback)

    metrics = store.list_metrics()
    filters.metric_ids = {m.id for m in metrics}
    result = aggregator.aggregate(store.list_claims(metric_ids=filters.metric_ids), filters)
    bounds = axis_bounds(result.series, tick_count=config.tick_count)

    print(f"Window: {result.window}")
    for metric in metrics:
        total = result.total_for(metric.id)
        print(f"  {metric.title}: {total} {metric.unit}".rstrip())
        if args.series:
            points = downsample(
                result.series.get(metric.id, []),
                max_points=config.max_series_points,
                stride=config.downsample_stride,
            )
            for point in points:
                print(f"    {point.day.isoformat()}  {format_tick(point.value)}")
    print(f"Axis ceiling: {format_tick(bounds.ceiling)}")
    if result.rejected:
        print(f"Excluded records: {len(result.rejected)}")
    return 0


def cmd_export(args):
    """Export the store to a JSON snapshot."""
    store = _load_store(args)
    snapshot = export_snapshot(store)
    output_file = Path(args.output or "credits_export.json")
    write_snapshot(snapshot, output_file)
    print(
        f"[OK] Exported {len(snapshot.metrics)} metrics, {len(snapshot.claims)} claims, "
        f"{len(snapshot.allocations)} credits to {output_file}"
    )
    return 0


def cmd_import(args):
    """Import a JSON snapshot into the configured store."""
    store = get_credit_store()
    result = import_snapshot(store, read_snapshot(Path(args.input)))
    print(
        f"[OK] Imported {result.metrics} metrics, {result.claims} claims, "
        f"{result.evidence} evidence items, {result.donors} donors, "
        f"{result.allocations} credits"
    )
    return 0


def cmd_health_check(args):
    """Run health checks."""
    store = _load_store(args)
    status = check_health(store=store, ledger=CreditLedger(store))
    for name, check in status.checks.items():
        print(f"  {name}: {check}")
    print("[OK] Healthy" if status.healthy else "[FAIL] Unhealthy")
    return 0 if status.healthy else 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Impact Ledger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # verify-credits
    p_verify = subparsers.add_parser(
        "verify-credits",
        help="Check that no claim or pool is over-credited"
    )
    p_verify.add_argument("--metric", help="Only this metric id")
    p_verify.add_argument("--snapshot", help="Read from a JSON snapshot")

    # available
    p_available = subparsers.add_parser(
        "available",
        help="Remaining creditable value"
    )
    p_available.add_argument("--metric", required=True, help="Metric id")
    p_available.add_argument("--claim", help="Claim id (omit for the metric pool)")
    p_available.add_argument("--snapshot", help="Read from a JSON snapshot")

    # summary
    p_summary = subparsers.add_parser(
        "summary",
        help="Totals per metric over a window"
    )
    p_summary.add_argument("--lookback", default=None, help="1M, 6M, 1Y, 5Y, 10Y, MAX or days")
    p_summary.add_argument("--start", help="Window start (YYYY-MM-DD)")
    p_summary.add_argument("--end", help="Window end (YYYY-MM-DD)")
    p_summary.add_argument("--series", action="store_true", help="Also print each metric's daily series")
    p_summary.add_argument("--snapshot", help="Read from a JSON snapshot")

    # export
    p_export = subparsers.add_parser(
        "export",
        help="Export the store to JSON"
    )
    p_export.add_argument("--output", "-o", help="Output file (default: credits_export.json)")
    p_export.add_argument("--snapshot", help="Read from a JSON snapshot")

    # import
    p_import = subparsers.add_parser(
        "import",
        help="Import a JSON snapshot"
    )
    p_import.add_argument("--input", "-i", required=True, help="Snapshot file")

    # health-check
    p_health = subparsers.add_parser(
        "health-check",
        help="Run health checks"
    )
    p_health.add_argument("--snapshot", help="Read from a JSON snapshot")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging()

    commands = {
        "verify-credits": cmd_verify_credits,
        "available": cmd_available,
        "summary": cmd_summary,
        "export": cmd_export,
        "import": cmd_import,
        "health-check": cmd_health_check,
    }

    try:
        return commands[args.command](args) or 0
    except (EngineError, StoreError, ValidationError, ValueError, OSError) as e:
        print(f"[FAIL] {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
