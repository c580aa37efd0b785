"""
Card Sync - Sync Status Recorder

Owns the sync_status table: one row per SyncKind recording whether a run
is in progress, when it last started and finished, running totals, the
last error and the resume cursor.

Every write opens its own session so a rolled-back data chunk can never
discard a status update.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.config import PriceKind, SyncKind
from cardsync.errors import StorageWriteError
from cardsync.models.card import Card
from cardsync.models.card_price import CardPrice
from cardsync.models.expansion import Expansion
from cardsync.models.sync_status import SyncStatus
from cardsync.pipeline.upsert import build_upsert

logger = structlog.get_logger(__name__)


@dataclass
class SyncCounts:
    """Running totals for the current run."""
    cards: int = 0
    expansions: int = 0
    prices: int = 0
    pages: int = 0


class SyncStatusRecorder:
    """
    Reads and writes sync_status rows.

    Usage:
        recorder = SyncStatusRecorder(session_factory)
        await recorder.mark_started(SyncKind.FULL)
        await recorder.mark_progress(SyncKind.FULL, counts, last_completed_page=7)
        await recorder.mark_completed(SyncKind.FULL, counts)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _write(self, kind: SyncKind, values: dict[str, Any]) -> None:
        row = {"sync_kind": kind.value, **values, "updated_at": datetime.now(timezone.utc)}
        async with self.session_factory() as session:
            try:
                dialect_name = session.get_bind().dialect.name
                await session.execute(
                    build_upsert(dialect_name, SyncStatus, [row], ("sync_kind",))
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StorageWriteError(f"sync_status write failed: {e}") from e

    @staticmethod
    def _count_values(counts: SyncCounts) -> dict[str, Any]:
        return {
            "total_cards": counts.cards,
            "total_expansions": counts.expansions,
            "total_prices": counts.prices,
            "pages_processed": counts.pages,
        }

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def mark_started(self, kind: SyncKind, start_page: int | None = None) -> None:
        """
        Flag the run in progress and clear the previous error.

        For resumable runs pass start_page: the cursor is rewound to
        start_page - 1 so a run that dies before its first page never
        inherits the previous run's cursor.
        """
        values: dict[str, Any] = {
            "in_progress": True,
            "last_error": None,
            "last_started_at": datetime.now(timezone.utc),
        }
        if start_page is not None:
            values["last_completed_page"] = start_page - 1
        await self._write(kind, values)
        logger.info("sync_status_started", sync_kind=kind.value, start_page=start_page)

    async def mark_progress(
        self,
        kind: SyncKind,
        counts: SyncCounts,
        last_completed_page: int | None = None,
    ) -> bool:
        """
        Checkpoint totals and the resume cursor.

        Failures are logged, never raised: a missed checkpoint only costs
        some re-fetching on the next resume.

        Returns:
            True when the checkpoint was written.
        """
        values = self._count_values(counts)
        if last_completed_page is not None:
            values["last_completed_page"] = last_completed_page
        try:
            await self._write(kind, values)
        except StorageWriteError as e:
            logger.warning(
                "sync_status_progress_failed",
                sync_kind=kind.value,
                page=last_completed_page,
                error=str(e),
            )
            return False
        logger.debug(
            "sync_status_progress",
            sync_kind=kind.value,
            page=last_completed_page,
            cards=counts.cards,
            prices=counts.prices,
        )
        return True

    async def mark_completed(self, kind: SyncKind, counts: SyncCounts) -> None:
        """Clear in_progress and stamp last_completed_at."""
        await self._write(
            kind,
            {
                **self._count_values(counts),
                "in_progress": False,
                "last_error": None,
                "last_completed_at": datetime.now(timezone.utc),
            },
        )
        logger.info(
            "sync_status_completed",
            sync_kind=kind.value,
            cards=counts.cards,
            expansions=counts.expansions,
            prices=counts.prices,
            pages=counts.pages,
        )

    async def mark_failed(
        self,
        kind: SyncKind,
        error: str,
        counts: SyncCounts | None = None,
    ) -> None:
        """
        Clear in_progress and record the error.

        Called on the failure path, so a storage error here is logged
        instead of masking the original failure.
        """
        values: dict[str, Any] = {"in_progress": False, "last_error": error[:2000]}
        if counts is not None:
            values.update(self._count_values(counts))
        try:
            await self._write(kind, values)
        except StorageWriteError as e:
            logger.error(
                "sync_status_mark_failed_error",
                sync_kind=kind.value,
                original_error=error,
                error=str(e),
            )
            return
        logger.warning("sync_status_failed", sync_kind=kind.value, error=error)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def get_status(self, kind: SyncKind) -> SyncStatus | None:
        async with self.session_factory() as session:
            return await session.get(SyncStatus, kind.value)

    async def list_statuses(self) -> list[SyncStatus]:
        async with self.session_factory() as session:
            result = await session.execute(select(SyncStatus).order_by(SyncStatus.sync_kind))
            return list(result.scalars().all())

    async def table_counts(self) -> dict[str, int]:
        """Row counts for the operator report."""
        async with self.session_factory() as session:
            cards = await session.scalar(select(func.count()).select_from(Card))
            expansions = await session.scalar(select(func.count()).select_from(Expansion))
            result = await session.execute(
                select(CardPrice.price_type, func.count()).group_by(CardPrice.price_type)
            )
            by_type = {price_type: count for price_type, count in result.all()}
        return {
            "cards": int(cards or 0),
            "expansions": int(expansions or 0),
            "raw_prices": int(by_type.get(PriceKind.RAW.value, 0)),
            "graded_prices": int(by_type.get(PriceKind.GRADED.value, 0)),
        }
