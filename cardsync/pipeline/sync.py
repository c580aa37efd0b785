"""
Card Sync - Sync Pipeline

Runs one SyncKind end to end:

    PageWalker → ScrydexClient → parse_card → extract_best_prices
        → ResumeTracker (dedup) → upsert_batch → SyncStatusRecorder

Each page is fully written before the next one is fetched, and the resume
cursor is checkpointed after the page's writes commit.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Protocol

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.config import Settings, SyncKind, SyncProfile, get_profile, settings
from cardsync.errors import StorageWriteError
from cardsync.models.card import Card
from cardsync.models.card_price import CARD_PRICE_KEY, CardPrice
from cardsync.models.expansion import Expansion
from cardsync.pipeline.dedup import ResumeTracker
from cardsync.pipeline.pagination import Page, PageWalker, StopReason
from cardsync.pipeline.pricing import build_price_rows, extract_best_prices
from cardsync.pipeline.scrydex import ScrydexCard, parse_card, parse_expansion
from cardsync.pipeline.status import SyncCounts, SyncStatusRecorder
from cardsync.pipeline.upsert import UpsertResult, upsert_batch

logger = structlog.get_logger(__name__)


class PageSource(Protocol):
    """The slice of ScrydexClient the pipeline depends on."""

    async def fetch_cards_page(self, page: int, page_size: int) -> list[Any]: ...

    async def fetch_expansions_page(self, page: int, page_size: int) -> list[Any]: ...


@dataclass
class SyncReport:
    """What one run did. Returned by SyncPipeline.run()."""
    kind: SyncKind
    start_page: int = 1
    pages_processed: int = 0
    cards_seen: int = 0
    cards_upserted: int = 0
    expansions_upserted: int = 0
    prices_upserted: int = 0
    prices_pruned: int = 0
    duplicates_skipped: int = 0
    unknown_cards_skipped: int = 0
    fresh_cards_skipped: int = 0
    invalid_records: int = 0
    failed_records: int = 0
    failed_pages: list[int] = field(default_factory=list)
    last_page_reached: int | None = None
    stopped_reason: StopReason | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.stopped_reason in (
            StopReason.END_OF_DATA,
            StopReason.MAX_PAGES,
        )

    @property
    def aborted(self) -> bool:
        """The walk hit the consecutive-failure threshold."""
        return self.stopped_reason is StopReason.FAILED

    def counts(self) -> SyncCounts:
        return SyncCounts(
            cards=self.cards_upserted,
            expansions=self.expansions_upserted,
            prices=self.prices_upserted,
            pages=self.pages_processed,
        )


class SyncPipeline:
    """
    Orchestrates a sync run against one client and one database.

    Usage:
        async with ScrydexClient() as client:
            pipeline = SyncPipeline(client, session_factory)
            report = await pipeline.run(SyncKind.FULL)
    """

    def __init__(
        self,
        client: PageSource,
        session_factory: async_sessionmaker[AsyncSession],
        config: Settings | None = None,
        recorder: SyncStatusRecorder | None = None,
        stop_event: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.session_factory = session_factory
        self.config = config or settings
        self.recorder = recorder or SyncStatusRecorder(session_factory)
        self.stop_event = stop_event or asyncio.Event()
        self._sleep = sleep

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    async def run(self, kind: SyncKind) -> SyncReport:
        """
        Execute one sync run.

        The status row always ends with in_progress cleared: completed on
        END_OF_DATA / MAX_PAGES, failed on abort, cancellation or exception.

        Raises:
            StorageWriteError / SyncError: after mark_failed, for errors that
            are not contained per page or per chunk.
        """
        profile = get_profile(kind, self.config)
        report = SyncReport(kind=kind)
        tracker = ResumeTracker(
            self.session_factory,
            self.recorder,
            skip_after_known_pages=self.config.SKIP_AHEAD_AFTER_KNOWN_PAGES,
        )

        # Read the cursor before mark_started overwrites the previous run's state
        if profile.resumable:
            report.start_page = await tracker.resolve_start_page(kind, profile.page_size)

        logger.info(
            "sync_run_started",
            sync_kind=kind.value,
            start_page=report.start_page,
            page_size=profile.page_size,
            max_pages=profile.max_pages,
        )
        await self.recorder.mark_started(
            kind, start_page=report.start_page if profile.resumable else None
        )

        try:
            if profile.sync_expansions:
                await self._sync_expansions(report)

            if report.stopped_reason is None:
                await self._sync_cards(profile, tracker, report)

        except Exception as e:
            report.error = f"{type(e).__name__}: {e}"
            report.finished_at = datetime.now(timezone.utc)
            logger.error(
                "sync_run_failed",
                sync_kind=kind.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.recorder.mark_failed(kind, report.error, report.counts())
            raise

        report.finished_at = datetime.now(timezone.utc)

        if report.stopped_reason is StopReason.FAILED:
            report.error = (
                f"Aborted after {self.config.MAX_CONSECUTIVE_PAGE_FAILURES} consecutive "
                f"page failures (pages {report.failed_pages[-self.config.MAX_CONSECUTIVE_PAGE_FAILURES:]})"
            )
            await self.recorder.mark_failed(kind, report.error, report.counts())
        elif report.stopped_reason is StopReason.CANCELLED:
            report.error = "Cancelled"
            await self.recorder.mark_failed(kind, report.error, report.counts())
        else:
            await self.recorder.mark_completed(kind, report.counts())

        logger.info(
            "sync_run_finished",
            sync_kind=kind.value,
            stopped_reason=report.stopped_reason.value if report.stopped_reason else None,
            pages=report.pages_processed,
            cards=report.cards_upserted,
            expansions=report.expansions_upserted,
            prices=report.prices_upserted,
            duplicates=report.duplicates_skipped,
            unknown_cards=report.unknown_cards_skipped,
            fresh_cards=report.fresh_cards_skipped,
            failed_records=report.failed_records,
            failed_pages=len(report.failed_pages),
            duration_seconds=round(
                (report.finished_at - report.started_at).total_seconds(), 2
            ),
        )
        return report

    # -----------------------------------------------------------------------
    # Expansions
    # -----------------------------------------------------------------------

    async def _sync_expansions(self, report: SyncReport) -> None:
        walker = PageWalker(
            self.client.fetch_expansions_page,
            self.config.EXPANSION_PAGE_SIZE,
            max_pages=self.config.FULL_SYNC_MAX_PAGES,
            delay_seconds=self.config.EXPANSION_PAGE_DELAY_SECONDS,
            max_consecutive_failures=self.config.MAX_CONSECUTIVE_PAGE_FAILURES,
            stop_event=self.stop_event,
            label="expansions",
            sleep=self._sleep,
        )

        async for page in walker.pages():
            expansions = [e for e in map(parse_expansion, page.items) if e is not None]
            report.invalid_records += len(page.items) - len(expansions)
            if not expansions:
                continue
            now = datetime.now(timezone.utc)
            rows = [{**e.to_row(), "updated_at": now} for e in expansions]
            result = await self._upsert(Expansion, rows, ("id",))
            report.expansions_upserted += result.succeeded
            report.failed_records += result.failed_count

        report.failed_pages.extend(walker.failed_pages)
        logger.info(
            "sync_expansions_complete",
            upserted=report.expansions_upserted,
            reason=walker.stop_reason.value if walker.stop_reason else None,
        )
        # A failed or cancelled expansion walk ends the run; the card walk never starts
        if walker.stop_reason in (StopReason.FAILED, StopReason.CANCELLED):
            report.stopped_reason = walker.stop_reason

    # -----------------------------------------------------------------------
    # Cards
    # -----------------------------------------------------------------------

    async def _sync_cards(
        self,
        profile: SyncProfile,
        tracker: ResumeTracker,
        report: SyncReport,
    ) -> None:
        walker = PageWalker(
            self.client.fetch_cards_page,
            profile.page_size,
            start_page=report.start_page,
            max_pages=profile.max_pages,
            delay_seconds=profile.delay_seconds,
            max_consecutive_failures=self.config.MAX_CONSECUTIVE_PAGE_FAILURES,
            stop_event=self.stop_event,
            label="cards",
            sleep=self._sleep,
        )

        storage_failed: list[int] = []

        async for page in walker.pages():
            try:
                await self._process_card_page(page, profile, tracker, walker, report)
            except (StorageWriteError, SQLAlchemyError) as e:
                # Page counts as failed; the cursor is not checkpointed for it
                storage_failed.append(page.number)
                logger.warning(
                    "sync_page_storage_failed",
                    sync_kind=profile.kind.value,
                    page=page.number,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            report.pages_processed += 1
            report.last_page_reached = page.number

            checkpoint_due = (
                profile.resumable
                or report.pages_processed % max(self.config.PROGRESS_EVERY_PAGES, 1) == 0
            )
            if checkpoint_due:
                await self.recorder.mark_progress(
                    profile.kind, report.counts(), last_completed_page=page.number
                )

        report.failed_pages.extend(sorted(walker.failed_pages + storage_failed))
        report.stopped_reason = walker.stop_reason

    async def _process_card_page(
        self,
        page: Page,
        profile: SyncProfile,
        tracker: ResumeTracker,
        walker: PageWalker,
        report: SyncReport,
    ) -> None:
        cards = [c for c in map(parse_card, page.items) if c is not None]
        report.invalid_records += len(page.items) - len(cards)
        report.cards_seen += len(cards)
        if not cards:
            return

        targets = cards
        if profile.dedup:
            dedup = await tracker.filter_new([c.id for c in cards])
            if profile.store_cards:
                # New cards only; a run of fully-known pages triggers a skip ahead
                new_ids = set(dedup.new_ids)
                targets = [c for c in cards if c.id in new_ids]
                report.duplicates_skipped += len(dedup.duplicate_ids)
                walker.skip_ahead(tracker.observe_page(dedup))
            else:
                # Prices only, and only for cards already in the catalog
                known_ids = set(dedup.duplicate_ids)
                targets = [c for c in cards if c.id in known_ids]
                report.unknown_cards_skipped += len(dedup.new_ids)
                if profile.stale_after_hours and targets:
                    cutoff = report.started_at - timedelta(hours=profile.stale_after_hours)
                    stale_ids = set(await tracker.filter_stale([c.id for c in targets], cutoff))
                    report.fresh_cards_skipped += len(targets) - len(stale_ids)
                    targets = [c for c in targets if c.id in stale_ids]

        if not targets:
            return

        if profile.store_cards:
            now = datetime.now(timezone.utc)
            card_rows = [{**c.to_row(), "updated_at": now} for c in targets]
            result = await self._upsert(Card, card_rows, ("id",))
            report.cards_upserted += result.succeeded
            report.failed_records += result.failed_count
            if result.failed:
                failed_ids = {f.record.get("id") for f in result.failed}
                targets = [c for c in targets if c.id not in failed_ids]

        if profile.store_prices and targets:
            written, pruned, failed = await self.write_prices(targets)
            report.prices_upserted += written
            report.prices_pruned += pruned
            report.failed_records += failed

        logger.info(
            "sync_page_stored",
            sync_kind=profile.kind.value,
            page=page.number,
            cards=len(cards),
            targets=len(targets),
            total_cards=report.cards_upserted,
            total_prices=report.prices_upserted,
        )

    # -----------------------------------------------------------------------
    # Prices
    # -----------------------------------------------------------------------

    async def write_prices(self, cards: list[ScrydexCard]) -> tuple[int, int, int]:
        """
        Upsert the selected price rows for cards and drop superseded ones.

        A card keeps at most one raw and one graded row: when the selection
        moves to a different condition or grade, the previous row is removed.

        Returns:
            (rows written, rows pruned, rows failed)
        """
        selected: dict[str, set[tuple[str, ...]]] = {}
        rows: list[dict[str, Any]] = []
        for card in cards:
            best = extract_best_prices(card, self.config.REQUIRE_USD_PRICES)
            card_rows = build_price_rows(card, best)
            selected[card.id] = {tuple(r[k] for k in CARD_PRICE_KEY[1:]) for r in card_rows}
            rows.extend(card_rows)

        result = await self._upsert(CardPrice, rows, CARD_PRICE_KEY) if rows else UpsertResult()
        failed_cards = {f.record.get("card_id") for f in result.failed}
        prunable = {cid: keys for cid, keys in selected.items() if cid not in failed_cards}
        pruned = await self._prune_superseded_prices(prunable)
        return result.succeeded, pruned, result.failed_count

    async def _prune_superseded_prices(self, selected: dict[str, set[tuple[str, ...]]]) -> int:
        if not selected:
            return 0
        try:
            async with self.session_factory() as session:
                existing = await session.execute(
                    select(
                        CardPrice.card_id,
                        CardPrice.price_type,
                        CardPrice.condition,
                        CardPrice.company,
                        CardPrice.grade,
                    ).where(CardPrice.card_id.in_(list(selected)))
                )
                stale = [
                    row for row in existing.all()
                    if tuple(row)[1:] not in selected[row[0]]
                ]
                for card_id, price_type, condition, company, grade in stale:
                    await session.execute(
                        delete(CardPrice).where(
                            CardPrice.card_id == card_id,
                            CardPrice.price_type == price_type,
                            CardPrice.condition == condition,
                            CardPrice.company == company,
                            CardPrice.grade == grade,
                        )
                    )
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(
                "sync_price_prune_failed",
                cards=len(selected),
                error=str(e),
                error_type=type(e).__name__,
            )
            return 0

        if stale:
            logger.info("sync_prices_pruned", rows=len(stale))
        return len(stale)

    async def reextract_prices(self) -> SyncReport:
        """
        Rebuild card_prices from the variants stored on every card.

        No API calls. Cards are read in id order, chunk by chunk.
        """
        report = SyncReport(kind=SyncKind.PRICING)
        chunk_size = self.config.UPSERT_CHUNK_SIZE
        last_id: str | None = None

        logger.info("reextract_prices_started", chunk_size=chunk_size)

        while True:
            try:
                async with self.session_factory() as session:
                    stmt = select(Card.id, Card.name, Card.variants).order_by(Card.id).limit(chunk_size)
                    if last_id is not None:
                        stmt = stmt.where(Card.id > last_id)
                    rows = (await session.execute(stmt)).all()
            except SQLAlchemyError as e:
                raise StorageWriteError(f"card read failed: {e}") from e

            if not rows:
                break
            last_id = rows[-1][0]

            cards = [
                c for c in (
                    parse_card({"id": cid, "name": name, "variants": variants or []})
                    for cid, name, variants in rows
                )
                if c is not None
            ]
            report.cards_seen += len(cards)
            report.invalid_records += len(rows) - len(cards)

            written, pruned, failed = await self.write_prices(cards)
            report.prices_upserted += written
            report.prices_pruned += pruned
            report.failed_records += failed
            report.pages_processed += 1

        report.stopped_reason = StopReason.END_OF_DATA
        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            "reextract_prices_complete",
            cards=report.cards_seen,
            prices=report.prices_upserted,
            pruned=report.prices_pruned,
            failed=report.failed_records,
        )
        return report

    # -----------------------------------------------------------------------
    # Storage
    # -----------------------------------------------------------------------

    async def _upsert(
        self,
        model: type,
        rows: list[dict[str, Any]],
        conflict_key: tuple[str, ...],
    ) -> UpsertResult:
        async with self.session_factory() as session:
            return await upsert_batch(
                session,
                model,
                rows,
                conflict_key,
                chunk_size=self.config.UPSERT_CHUNK_SIZE,
                retry_delay=self.config.UPSERT_RETRY_DELAY_SECONDS,
                sleep=self._sleep,
            )
