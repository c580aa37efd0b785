"""
Card Sync - Operator Status Report

Prints row counts for cards, expansions and selected prices, followed by
every sync_status row.

Usage:
    python scripts/sync_status.py
    python scripts/sync_status.py --kind comprehensive
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Resolve project root so this script can be run from any working directory
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cardsync.config import SyncKind, settings
from cardsync.pipeline.status import SyncStatusRecorder


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Show Card Sync table counts and sync_status rows.",
    )
    parser.add_argument(
        "--kind",
        type=str,
        default=None,
        choices=[k.value for k in SyncKind],
        help="Only show the status row for this sync kind.",
    )
    return parser.parse_args()


async def main() -> None:
    args = parse_args()

    if not settings.DATABASE_URL:
        print("DATABASE_URL is not set.", file=sys.stderr)
        sys.exit(2)

    engine = create_async_engine(settings.database_url(), echo=False)
    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    recorder = SyncStatusRecorder(session_factory)

    try:
        counts = await recorder.table_counts()
        if args.kind:
            status = await recorder.get_status(SyncKind(args.kind))
            statuses = [status] if status is not None else []
        else:
            statuses = await recorder.list_statuses()
    except Exception as e:
        print(f"Failed to read status: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        await engine.dispose()

    print("Table counts")
    print(f"  cards          = {counts['cards']}")
    print(f"  expansions     = {counts['expansions']}")
    print(f"  raw prices     = {counts['raw_prices']}")
    print(f"  graded prices  = {counts['graded_prices']}")
    print()

    if not statuses:
        print("No sync runs recorded yet.")
        return

    for status in statuses:
        print(f"[{status.sync_kind}]")
        print(f"  in_progress          = {status.in_progress}")
        print(f"  last_started_at      = {status.last_started_at}")
        print(f"  last_completed_at    = {status.last_completed_at}")
        print(f"  pages_processed      = {status.pages_processed}")
        print(f"  last_completed_page  = {status.last_completed_page}")
        print(f"  total_cards          = {status.total_cards}")
        print(f"  total_expansions     = {status.total_expansions}")
        print(f"  total_prices         = {status.total_prices}")
        if status.last_error:
            print(f"  last_error           = {status.last_error}")
        print()


if __name__ == "__main__":
    asyncio.run(main())
