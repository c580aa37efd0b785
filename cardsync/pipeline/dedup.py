"""
Card Sync - Dedup / Resume Tracker

Answers two questions for incremental syncs:
- which ids on this page are not stored yet?
- which page should an interrupted run restart from?

The resume page prefers the exact cursor persisted in sync_status and
falls back to an estimate from the stored card count.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.config import SyncKind, settings
from cardsync.errors import StorageWriteError
from cardsync.models.card import Card
from cardsync.models.card_price import CardPrice
from cardsync.models.sync_status import SyncStatus
from cardsync.pipeline.status import SyncStatusRecorder

logger = structlog.get_logger(__name__)


@dataclass
class DedupResult:
    """Ids split by whether storage already has them, in input order."""
    new_ids: list[str] = field(default_factory=list)
    duplicate_ids: list[str] = field(default_factory=list)


def compute_resume_page(stored_count: int, page_size: int) -> int:
    """
    First page that may hold unseen records: floor(count / page_size) + 1.

    Assumes upstream ordering is stable and append-only.
    """
    if page_size < 1:
        raise ValueError(f"page_size must be >= 1, got {page_size}")
    return max(stored_count, 0) // page_size + 1


class ResumeTracker:
    """
    Storage-backed dedup and resume logic for one sync run.

    Usage:
        tracker = ResumeTracker(session_factory, recorder)
        start = await tracker.resolve_start_page(SyncKind.COMPREHENSIVE, 100)
        dedup = await tracker.filter_new(ids)
        walker.skip_ahead(tracker.observe_page(dedup))
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        recorder: SyncStatusRecorder,
        skip_after_known_pages: int | None = None,
    ):
        self.session_factory = session_factory
        self.recorder = recorder
        self.skip_after_known_pages = (
            skip_after_known_pages
            if skip_after_known_pages is not None
            else settings.SKIP_AHEAD_AFTER_KNOWN_PAGES
        )
        self.known_page_streak = 0

    async def filter_new(self, ids: Sequence[str]) -> DedupResult:
        """Split ids into those not yet stored and those already stored."""
        if not ids:
            return DedupResult()
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(Card.id).where(Card.id.in_(set(ids))))
                existing = set(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageWriteError(f"dedup lookup failed: {e}") from e

        dedup = DedupResult(
            new_ids=[i for i in ids if i not in existing],
            duplicate_ids=[i for i in ids if i in existing],
        )
        logger.debug(
            "dedup_filtered",
            checked=len(ids),
            new=len(dedup.new_ids),
            duplicates=len(dedup.duplicate_ids),
        )
        return dedup

    async def filter_stale(self, ids: Sequence[str], cutoff: datetime) -> list[str]:
        """
        Ids whose newest card_prices row is older than cutoff, or which have
        no price rows at all. Input order is kept.
        """
        if not ids:
            return []
        newest = func.max(CardPrice.updated_at)
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(CardPrice.card_id)
                    .where(CardPrice.card_id.in_(set(ids)))
                    .group_by(CardPrice.card_id)
                    .having(newest >= cutoff)
                )
                fresh = set(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageWriteError(f"price freshness lookup failed: {e}") from e

        stale = [i for i in ids if i not in fresh]
        logger.debug("dedup_stale_filtered", checked=len(ids), stale=len(stale))
        return stale

    async def stored_card_count(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(select(func.count()).select_from(Card))
            return int(result.scalar_one())

    async def resolve_start_page(self, kind: SyncKind, page_size: int) -> int:
        """
        Page an incremental run should start from.

        An unfinished previous run (in progress, failed or cancelled) leaves
        an exact cursor; resume right after it. Otherwise estimate from the
        stored card count.
        """
        status = await self.recorder.get_status(kind)
        if status is not None and status.last_completed_page and _run_unfinished(status):
            start_page = status.last_completed_page + 1
            logger.info(
                "resume_from_cursor",
                sync_kind=kind.value,
                last_completed_page=status.last_completed_page,
                start_page=start_page,
            )
            return start_page

        stored = await self.stored_card_count()
        start_page = compute_resume_page(stored, page_size)
        logger.info(
            "resume_from_count",
            sync_kind=kind.value,
            stored_cards=stored,
            page_size=page_size,
            start_page=start_page,
        )
        return start_page

    def observe_page(self, dedup: DedupResult) -> int:
        """
        Track runs of pages with nothing new.

        Returns:
            Pages to skip ahead: K once K consecutive fully-known pages have
            been seen (the streak then resets), otherwise 0.
        """
        if dedup.duplicate_ids and not dedup.new_ids:
            self.known_page_streak += 1
        else:
            self.known_page_streak = 0

        k = self.skip_after_known_pages
        if k > 0 and self.known_page_streak >= k:
            self.known_page_streak = 0
            return k
        return 0


def _run_unfinished(status: SyncStatus) -> bool:
    """True when the last started run never reached mark_completed."""
    if status.in_progress or status.last_error:
        return True
    if status.last_started_at is None:
        return False
    return status.last_completed_at is None or status.last_completed_at < status.last_started_at
