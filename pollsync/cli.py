"""
Pollsync Runner
===============

Command line entry point.

Usage:
    pollsync run                    # Poll all entities until interrupted
    pollsync run --entity leads     # Poll selected entities
    pollsync once                   # One cycle per entity, then exit
    pollsync status                 # Show stored cursors
    pollsync reset leads --yes      # Drop a cursor (entity re-syncs from scratch)
    pollsync test                   # Test source connection
"""

import argparse
import asyncio
import json
import os
import signal
import sys
from typing import List, Optional

import pandas as pd

from .config import (
    build_cursor_store, build_entities, build_orchestrator,
    build_source_connector, load_settings, setup_logging
)
from .errors import PollSyncError


def _print_header(title: str):
    print("=" * 60)
    print(title)
    print("=" * 60)


def _save_results(results: List[dict], results_path: str):
    directory = os.path.dirname(results_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(results_path, "w") as f:
        json.dump(results, f, indent=2, default=str)
    print(f"\nResults saved to: {results_path}")


# =========================================
# COMMANDS
# =========================================

def test_connections(args) -> bool:
    """Test the source connection and count rows per entity."""
    _print_header("TESTING CONNECTIONS")

    settings = load_settings(args.config)
    connector = build_source_connector(settings)

    if not connector.check_connection():
        print("\n✗ Source connection failed")
        return False

    print("\n✓ Source:")
    ok = True
    for entity in build_entities(settings):
        try:
            count = connector.get_row_count(entity)
            print(f"    - {entity.name}: {count:,} rows")
        except PollSyncError as e:
            print(f"    ✗ {entity.name}: {e}")
            ok = False
    connector.disconnect()

    if ok:
        print("\n✓ All connections successful!")
    return ok


def run_once(args) -> bool:
    """One cycle per entity."""
    _print_header("POLLSYNC: SINGLE PASS")

    settings = load_settings(args.config)
    setup_logging(settings)
    orchestrator = build_orchestrator(settings)

    try:
        results = asyncio.run(orchestrator.run_once(args.entity or None))
    finally:
        orchestrator.close()

    _print_header("RESULTS SUMMARY")
    for result in results.values():
        status_icon = "✓" if result.succeeded else "✗"
        print(f"\n{status_icon} {result.entity_name}")
        print(f"    Status: {result.status.value}")
        print(f"    Rows fetched: {result.fetched:,}")
        print(f"    Rows applied: {result.applied:,}")
        print(f"    Previous watermark: {result.previous_watermark}")
        print(f"    New watermark: {result.new_watermark}")
        if result.error:
            print(f"    Error: {result.error}")

    _save_results([r.to_dict() for r in results.values()], args.results)
    if orchestrator.metrics is not None and orchestrator.metrics.pushgateway_url:
        orchestrator.metrics.push_to_prometheus()

    return all(r.succeeded for r in results.values())


def run_daemon(args) -> bool:
    """Poll until SIGINT/SIGTERM."""
    _print_header("POLLSYNC: CONTINUOUS POLLING")

    settings = load_settings(args.config)
    setup_logging(settings)
    orchestrator = build_orchestrator(settings)

    async def _main():
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, orchestrator.stop)
        await orchestrator.run(args.entity or None)

    try:
        asyncio.run(_main())
    finally:
        orchestrator.close()
        if orchestrator.metrics is not None and orchestrator.metrics.pushgateway_url:
            orchestrator.metrics.push_to_prometheus()

    disabled = [e.name for e in orchestrator.entities if orchestrator.is_disabled(e.name)]
    if disabled:
        print(f"\n✗ Disabled entities: {', '.join(disabled)}")
    return not disabled


def show_status(args) -> bool:
    """Print every stored cursor."""
    _print_header("CURSOR STATUS")

    settings = load_settings(args.config)
    store = build_cursor_store(settings)
    cursors = store.list_all()
    store.close()

    if not cursors:
        print("\nNo cursors stored yet")
        return True

    df = pd.DataFrame([
        {
            "entity": c.entity_name,
            "watermark_ts": c.watermark.timestamp.isoformat(),
            "tiebreak_id": c.watermark.tiebreak_id,
            "errors": c.consecutive_error_count,
            "version": c.version,
            "updated_at": c.updated_at.isoformat() if c.updated_at else None
        }
        for c in cursors
    ]).sort_values("entity")
    print()
    print(df.to_string(index=False))
    return True


def reset_cursor(args) -> bool:
    """Delete one cursor so the entity re-syncs from the epoch."""
    if not args.yes:
        print(f"✗ Refusing to reset '{args.name}' without --yes (it will re-sync from scratch)")
        return False

    settings = load_settings(args.config)
    store = build_cursor_store(settings)
    existed = store.reset(args.name)
    store.close()

    if existed:
        print(f"✓ Cursor for '{args.name}' removed")
    else:
        print(f"No cursor stored for '{args.name}'")
    return True


# =========================================
# ENTRY POINT
# =========================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pollsync", description="Incremental change polling engine")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Directory with task_settings.json and table_mappings.json"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Poll continuously")
    run_parser.add_argument("--entity", action="append", help="Entity to poll (repeatable)")
    run_parser.set_defaults(handler=run_daemon)

    once_parser = subparsers.add_parser("once", help="Run one cycle per entity")
    once_parser.add_argument("--entity", action="append", help="Entity to poll (repeatable)")
    once_parser.add_argument(
        "--results",
        type=str,
        default="logs/pollsync_results.json",
        help="Where to write the cycle results"
    )
    once_parser.set_defaults(handler=run_once)

    status_parser = subparsers.add_parser("status", help="Show stored cursors")
    status_parser.set_defaults(handler=show_status)

    reset_parser = subparsers.add_parser("reset", help="Delete an entity cursor")
    reset_parser.add_argument("name", help="Entity name")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm the reset")
    reset_parser.set_defaults(handler=reset_cursor)

    test_parser = subparsers.add_parser("test", help="Test source connection")
    test_parser.set_defaults(handler=test_connections)

    return parser


def main(argv: Optional[List[str]] = None):
    args = build_parser().parse_args(argv)

    try:
        success = args.handler(args)
    except PollSyncError as e:
        print(f"\n✗ {type(e).__name__}: {e}")
        success = False

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
