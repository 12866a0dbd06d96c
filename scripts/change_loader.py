#!/usr/bin/env python3
"""
Change Loader
=============

Pushes test changes into a SQL source table for manual polling tests.
Simulates inserts, updates, soft deletes and same-timestamp bursts (the
case the (updated_at, id) tiebreak exists for).

Usage:
    python scripts/change_loader.py setup
    python scripts/change_loader.py insert --name "Lead A"
    python scripts/change_loader.py update --id 3
    python scripts/change_loader.py delete --id 3
    python scripts/change_loader.py burst --count 25
    python scripts/change_loader.py show
    python scripts/change_loader.py cleanup

Then point table_mappings.json at ``change_demo`` and run ``pollsync once``.
"""

import argparse
import sys
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Integer, MetaData, String, Table,
    create_engine, delete, insert, select, update
)
from sqlalchemy.exc import SQLAlchemyError

DEFAULT_URL = "sqlite:///pollsync_demo.db"

metadata = MetaData()

change_demo = Table(
    "change_demo",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100)),
    Column("status", String(50)),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("updated_at", DateTime, nullable=False, index=True)
)


def utc_now() -> datetime:
    """Naive UTC wall-clock time, as stored in the source table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def setup_table(engine):
    """Create the demo table."""
    metadata.create_all(engine)
    print(f"✓ Table '{change_demo.name}' ready")


def insert_row(engine, name: str = None) -> int:
    """Insert a new row."""
    now = utc_now()
    name = name or f"CHANGE_TEST_{now.strftime('%H%M%S')}"

    with engine.begin() as conn:
        result = conn.execute(
            insert(change_demo).values(name=name, status="New", is_deleted=False, updated_at=now)
        )
        row_id = result.inserted_primary_key[0]

    print(f"✓ INSERT: row {row_id} '{name}' created")
    return row_id


def update_row(engine, row_id: int) -> int:
    """Update an existing row, bumping updated_at."""
    with engine.begin() as conn:
        result = conn.execute(
            update(change_demo)
            .where(change_demo.c.id == row_id)
            .values(status="Updated", updated_at=utc_now())
        )

    if result.rowcount > 0:
        print(f"✓ UPDATE: row {row_id} updated (status='Updated')")
    else:
        print(f"✗ UPDATE: row {row_id} not found")
    return result.rowcount


def delete_row(engine, row_id: int) -> int:
    """Soft delete: flag the row so delete_detection marks it as a delete."""
    with engine.begin() as conn:
        result = conn.execute(
            update(change_demo)
            .where(change_demo.c.id == row_id)
            .values(status="DELETED", is_deleted=True, updated_at=utc_now())
        )

    if result.rowcount > 0:
        print(f"✓ DELETE (soft): row {row_id} marked as deleted")
    else:
        print(f"✗ DELETE: row {row_id} not found")
    return result.rowcount


def insert_burst(engine, count: int) -> datetime:
    """Insert ``count`` rows sharing one updated_at value."""
    now = utc_now()
    rows = [
        {"name": f"BURST_{now.strftime('%H%M%S')}_{i}", "status": "New", "is_deleted": False, "updated_at": now}
        for i in range(count)
    ]
    with engine.begin() as conn:
        conn.execute(insert(change_demo), rows)

    print(f"✓ BURST: {count} rows inserted with updated_at={now.isoformat()}")
    return now


def show_rows(engine, limit: int = 20):
    """Show the most recently changed rows."""
    stmt = select(change_demo).order_by(change_demo.c.updated_at.desc(), change_demo.c.id.desc()).limit(limit)

    print("\n" + "=" * 60)
    print("RECENT CHANGES")
    print("=" * 60)

    with engine.connect() as conn:
        rows = conn.execute(stmt).fetchall()

    if not rows:
        print("No rows found")
        return

    print(f"{'ID':<6} {'Name':<28} {'Status':<10} {'Deleted':<8} {'Updated at'}")
    print("-" * 80)
    for row in rows:
        print(f"{row.id:<6} {row.name:<28} {row.status:<10} {str(row.is_deleted):<8} {row.updated_at.isoformat()}")


def cleanup_rows(engine):
    """Remove every row."""
    with engine.begin() as conn:
        result = conn.execute(delete(change_demo))
    print(f"✓ Cleaned up {result.rowcount} rows")


def main():
    parser = argparse.ArgumentParser(description="Change Loader")
    parser.add_argument(
        "command",
        choices=["setup", "insert", "update", "delete", "burst", "show", "cleanup"],
        help="Command to run"
    )
    parser.add_argument("--url", type=str, default=DEFAULT_URL, help="SQLAlchemy database URL")
    parser.add_argument("--id", type=int, help="Row id for update/delete")
    parser.add_argument("--name", type=str, help="Name for insert")
    parser.add_argument("--count", type=int, default=10, help="Rows per burst")

    args = parser.parse_args()
    engine = create_engine(args.url)

    try:
        if args.command == "setup":
            setup_table(engine)
        elif args.command == "insert":
            insert_row(engine, args.name)
        elif args.command in ("update", "delete"):
            if args.id is None:
                print(f"Error: --id required for {args.command}")
                sys.exit(1)
            if args.command == "update":
                update_row(engine, args.id)
            else:
                delete_row(engine, args.id)
        elif args.command == "burst":
            insert_burst(engine, args.count)
        elif args.command == "show":
            show_rows(engine)
        elif args.command == "cleanup":
            cleanup_rows(engine)
    except SQLAlchemyError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()
