"""
Tests for the sync pipeline (cardsync/pipeline/sync.py).

Uses an in-memory page source for most runs and one respx-backed run
through the real ScrydexClient. Storage is in-memory SQLite.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import httpx
import pytest
import respx
from sqlalchemy import delete, func, select

from cardsync.config import SyncKind
from cardsync.errors import ApiError, StorageWriteError
from cardsync.models import Card, CardPrice, Expansion, SyncStatus
from cardsync.pipeline.dedup import ResumeTracker
from cardsync.pipeline.pagination import StopReason
from cardsync.pipeline.scrydex import ScrydexClient
from cardsync.pipeline.sync import SyncPipeline


class FakeScrydex:
    """In-memory stand-in for ScrydexClient's paged fetches."""

    def __init__(
        self,
        cards: list[dict[str, Any]],
        expansions: list[dict[str, Any]] | None = None,
        fail_pages: set[int] | None = None,
        stop_after_page: int | None = None,
        stop_event: asyncio.Event | None = None,
    ):
        self.cards = cards
        self.expansions = expansions or []
        self.fail_pages = fail_pages or set()
        self.stop_after_page = stop_after_page
        self.stop_event = stop_event
        self.card_calls: list[int] = []

    async def fetch_cards_page(self, page: int, page_size: int) -> list[Any]:
        self.card_calls.append(page)
        if page in self.fail_pages:
            raise ApiError(500, "upstream error")
        if self.stop_event is not None and page == self.stop_after_page:
            self.stop_event.set()
        start = (page - 1) * page_size
        return self.cards[start:start + page_size]

    async def fetch_expansions_page(self, page: int, page_size: int) -> list[Any]:
        start = (page - 1) * page_size
        return self.expansions[start:start + page_size]


async def count(session_factory, model, *where) -> int:
    async with session_factory() as session:
        stmt = select(func.count()).select_from(model)
        for clause in where:
            stmt = stmt.where(clause)
        return await session.scalar(stmt)


async def stored_ids(session_factory) -> set[str]:
    async with session_factory() as session:
        return set((await session.scalars(select(Card.id))).all())


@pytest.fixture
def cards(make_card) -> list[dict[str, Any]]:
    return [make_card(f"sv1-{i}") for i in range(1, 6)]


# ---------------------------------------------------------------------------
# full
# ---------------------------------------------------------------------------


async def test_full_sync_stores_cards_prices_and_expansions(
    session_factory, test_settings, cards, make_expansion
) -> None:
    client = FakeScrydex(cards, expansions=[make_expansion("sv1"), make_expansion("sv2")])
    pipeline = SyncPipeline(client, session_factory, config=test_settings)

    report = await pipeline.run(SyncKind.FULL)

    assert report.ok
    assert report.stopped_reason is StopReason.END_OF_DATA
    assert report.cards_upserted == 5
    assert report.prices_upserted == 10
    assert report.expansions_upserted == 2
    assert client.card_calls == [1, 2, 3]

    assert await count(session_factory, Card) == 5
    assert await count(session_factory, Expansion) == 2
    assert await count(session_factory, CardPrice, CardPrice.price_type == "raw") == 5
    assert await count(session_factory, CardPrice, CardPrice.price_type == "graded") == 5

    async with session_factory() as session:
        status = await session.get(SyncStatus, "full")
    assert status.in_progress is False
    assert status.last_error is None
    assert status.total_cards == 5
    assert status.total_expansions == 2


async def test_full_sync_twice_is_idempotent(session_factory, test_settings, cards) -> None:
    pipeline = SyncPipeline(FakeScrydex(cards), session_factory, config=test_settings)

    await pipeline.run(SyncKind.FULL)
    async with session_factory() as session:
        first = (await session.execute(select(CardPrice.card_id, CardPrice.market))).all()

    await pipeline.run(SyncKind.FULL)
    async with session_factory() as session:
        second = (await session.execute(select(CardPrice.card_id, CardPrice.market))).all()

    assert await count(session_factory, Card) == 5
    assert sorted(tuple(r) for r in first) == sorted(tuple(r) for r in second)


async def test_full_sync_replaces_superseded_price_rows(
    session_factory, test_settings, make_card
) -> None:
    nm = [{"type": "raw", "condition": "NM", "market": "4.00", "currency": "USD"}]
    lp = [{"type": "raw", "condition": "LP", "market": "2.50", "currency": "USD"}]

    await SyncPipeline(
        FakeScrydex([make_card("sv1-1", prices=nm)]), session_factory, config=test_settings
    ).run(SyncKind.FULL)
    report = await SyncPipeline(
        FakeScrydex([make_card("sv1-1", prices=lp)]), session_factory, config=test_settings
    ).run(SyncKind.FULL)

    assert report.prices_pruned == 1
    async with session_factory() as session:
        rows = (await session.scalars(select(CardPrice))).all()
    assert [(r.condition, r.market) for r in rows] == [("LP", Decimal("2.50"))]


# ---------------------------------------------------------------------------
# pricing
# ---------------------------------------------------------------------------


async def test_pricing_sync_only_prices_known_cards(
    session_factory, test_settings, cards, seed_cards
) -> None:
    await seed_cards(["sv1-2", "sv1-4"])
    pipeline = SyncPipeline(FakeScrydex(cards), session_factory, config=test_settings)

    report = await pipeline.run(SyncKind.PRICING)

    assert report.ok
    assert report.cards_upserted == 0
    assert report.prices_upserted == 4
    assert report.unknown_cards_skipped == 3
    assert report.duplicates_skipped == 0
    assert await count(session_factory, Card) == 2
    async with session_factory() as session:
        priced = set((await session.scalars(select(CardPrice.card_id))).all())
    assert priced == {"sv1-2", "sv1-4"}


async def test_pricing_sync_refreshes_only_stale_prices(
    session_factory, test_settings, cards, seed_cards
) -> None:
    test_settings.PRICING_STALE_AFTER_HOURS = 24
    await seed_cards(["sv1-1", "sv1-2", "sv1-3"])
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        session.add_all(
            [
                CardPrice(card_id="sv1-1", price_type="raw", condition="NM", market=1, updated_at=now),
                CardPrice(
                    card_id="sv1-2",
                    price_type="raw",
                    condition="NM",
                    market=1,
                    updated_at=now - timedelta(hours=48),
                ),
            ]
        )
        await session.commit()

    report = await SyncPipeline(FakeScrydex(cards), session_factory, config=test_settings).run(
        SyncKind.PRICING
    )

    assert report.ok
    assert report.fresh_cards_skipped == 1
    assert report.unknown_cards_skipped == 2
    # sv1-2 was stale and sv1-3 had no prices; each gets raw + graded
    assert report.prices_upserted == 4
    async with session_factory() as session:
        fresh = (
            await session.scalars(select(CardPrice.market).where(CardPrice.card_id == "sv1-1"))
        ).all()
        refreshed = (
            await session.scalars(
                select(CardPrice.market).where(
                    CardPrice.card_id == "sv1-2", CardPrice.price_type == "raw"
                )
            )
        ).all()
    assert fresh == [Decimal("1.00")]
    assert refreshed == [Decimal("4.00")]


# ---------------------------------------------------------------------------
# comprehensive
# ---------------------------------------------------------------------------


async def test_comprehensive_resume_matches_uninterrupted_run(
    session_factory, test_settings, make_card
) -> None:
    all_cards = [make_card(f"sv1-{i}") for i in range(1, 8)]

    stop_event = asyncio.Event()
    interrupted = FakeScrydex(all_cards, stop_after_page=2, stop_event=stop_event)
    first = await SyncPipeline(
        interrupted, session_factory, config=test_settings, stop_event=stop_event
    ).run(SyncKind.COMPREHENSIVE)

    assert first.stopped_reason is StopReason.CANCELLED
    assert await stored_ids(session_factory) == {"sv1-1", "sv1-2", "sv1-3", "sv1-4"}
    async with session_factory() as session:
        status = await session.get(SyncStatus, "comprehensive")
    assert status.in_progress is False
    assert status.last_completed_page == 2

    resumed = FakeScrydex(all_cards)
    second = await SyncPipeline(resumed, session_factory, config=test_settings).run(
        SyncKind.COMPREHENSIVE
    )

    assert second.ok
    assert second.start_page == 3
    assert resumed.card_calls[0] == 3
    assert await stored_ids(session_factory) == {c["id"] for c in all_cards}
    assert await count(session_factory, CardPrice) == 2 * len(all_cards)


async def test_comprehensive_skips_known_cards(
    session_factory, test_settings, cards, seed_cards
) -> None:
    await seed_cards(["sv1-1", "sv1-2"])
    pipeline = SyncPipeline(FakeScrydex(cards), session_factory, config=test_settings)

    report = await pipeline.run(SyncKind.COMPREHENSIVE)

    # Two stored cards at page size 2 resume from page 2
    assert report.start_page == 2
    assert report.cards_upserted == 3
    assert await stored_ids(session_factory) == {c["id"] for c in cards}


async def test_comprehensive_skip_ahead_after_known_pages(
    session_factory, test_settings, make_card, seed_cards
) -> None:
    test_settings.CARD_PAGE_SIZE = 1
    test_settings.SKIP_AHEAD_AFTER_KNOWN_PAGES = 2
    all_cards = [make_card(f"sv1-{i}") for i in range(1, 9)]
    await seed_cards(["sv1-3", "sv1-4"])
    client = FakeScrydex(all_cards)

    report = await SyncPipeline(client, session_factory, config=test_settings).run(
        SyncKind.COMPREHENSIVE
    )

    assert report.start_page == 3
    assert client.card_calls == [3, 4, 7, 8, 9]
    assert report.duplicates_skipped == 2
    assert await stored_ids(session_factory) == {"sv1-3", "sv1-4", "sv1-7", "sv1-8"}


# ---------------------------------------------------------------------------
# failures
# ---------------------------------------------------------------------------


async def test_single_failed_page_is_skipped(session_factory, test_settings, cards) -> None:
    client = FakeScrydex(cards, fail_pages={2})

    report = await SyncPipeline(client, session_factory, config=test_settings).run(SyncKind.FULL)

    assert report.ok
    assert report.failed_pages == [2]
    assert await stored_ids(session_factory) == {"sv1-1", "sv1-2", "sv1-5"}


async def test_storage_failure_on_one_page_is_contained(
    session_factory, test_settings, make_card, monkeypatch
) -> None:
    all_cards = [make_card(f"sv1-{i}") for i in range(1, 7)]
    filter_new = ResumeTracker.filter_new
    calls: list[list[str]] = []

    async def flaky_filter_new(self, ids):
        calls.append(list(ids))
        if len(calls) == 2:
            raise StorageWriteError("dedup lookup failed: connection reset")
        return await filter_new(self, ids)

    monkeypatch.setattr(ResumeTracker, "filter_new", flaky_filter_new)
    client = FakeScrydex(all_cards)

    report = await SyncPipeline(client, session_factory, config=test_settings).run(
        SyncKind.COMPREHENSIVE
    )

    assert report.ok
    assert report.failed_pages == [2]
    assert report.pages_processed == 3
    assert client.card_calls == [1, 2, 3, 4]
    assert await stored_ids(session_factory) == {"sv1-1", "sv1-2", "sv1-5", "sv1-6"}
    async with session_factory() as session:
        status = await session.get(SyncStatus, "comprehensive")
    assert status.in_progress is False
    assert status.last_error is None


async def test_consecutive_page_failures_abort_run(session_factory, test_settings, make_card) -> None:
    all_cards = [make_card(f"sv1-{i}") for i in range(1, 13)]
    client = FakeScrydex(all_cards, fail_pages={2, 3, 4})

    report = await SyncPipeline(client, session_factory, config=test_settings).run(SyncKind.FULL)

    assert report.aborted
    assert not report.ok
    assert client.card_calls == [1, 2, 3, 4]
    assert await stored_ids(session_factory) == {"sv1-1", "sv1-2"}
    async with session_factory() as session:
        status = await session.get(SyncStatus, "full")
    assert status.in_progress is False
    assert "Aborted after 3 consecutive page failures" in status.last_error


async def test_unexpected_error_marks_run_failed(session_factory, test_settings) -> None:
    class BrokenScrydex(FakeScrydex):
        async def fetch_cards_page(self, page: int, page_size: int) -> list[Any]:
            raise RuntimeError("bug")

    with pytest.raises(RuntimeError):
        await SyncPipeline(BrokenScrydex([]), session_factory, config=test_settings).run(
            SyncKind.FULL
        )

    async with session_factory() as session:
        status = await session.get(SyncStatus, "full")
    assert status.in_progress is False
    assert status.last_error == "RuntimeError: bug"


async def test_malformed_cards_are_dropped_not_fatal(session_factory, test_settings, make_card) -> None:
    client = FakeScrydex([make_card("sv1-1"), {"name": "no id"}, make_card("sv1-3")])

    report = await SyncPipeline(client, session_factory, config=test_settings).run(SyncKind.FULL)

    assert report.ok
    assert report.invalid_records == 1
    assert await stored_ids(session_factory) == {"sv1-1", "sv1-3"}


# ---------------------------------------------------------------------------
# test kind / reextract
# ---------------------------------------------------------------------------


async def test_test_sync_fetches_one_small_page(session_factory, test_settings, cards) -> None:
    client = FakeScrydex(cards)

    report = await SyncPipeline(client, session_factory, config=test_settings).run(SyncKind.TEST)

    assert report.ok
    assert report.stopped_reason is StopReason.MAX_PAGES
    assert client.card_calls == [1]
    assert await count(session_factory, Card) == test_settings.TEST_SYNC_PAGE_SIZE


async def test_reextract_rebuilds_prices_from_stored_variants(
    session_factory, test_settings, cards
) -> None:
    pipeline = SyncPipeline(FakeScrydex(cards), session_factory, config=test_settings)
    await pipeline.run(SyncKind.FULL)
    async with session_factory() as session:
        await session.execute(delete(CardPrice))
        await session.commit()

    report = await pipeline.reextract_prices()

    assert report.cards_seen == 5
    assert report.prices_upserted == 10
    assert await count(session_factory, CardPrice) == 10


# ---------------------------------------------------------------------------
# End to end through the HTTP client
# ---------------------------------------------------------------------------


async def test_full_sync_through_scrydex_client(
    session_factory, test_settings, cards, make_expansion
) -> None:
    def cards_page(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page"])
        size = int(request.url.params["page_size"])
        return httpx.Response(200, json={"data": cards[(page - 1) * size:page * size]})

    with respx.mock(base_url=test_settings.SCRYDEX_BASE_URL) as mock:
        mock.get(test_settings.SCRYDEX_CARDS_ENDPOINT).mock(side_effect=cards_page)
        mock.get(test_settings.SCRYDEX_EXPANSIONS_ENDPOINT).mock(
            return_value=httpx.Response(200, json={"data": [make_expansion("sv1")]})
        )

        async with ScrydexClient(
            api_key=test_settings.SCRYDEX_API_KEY,
            team_id=test_settings.SCRYDEX_TEAM_ID,
            base_url=test_settings.SCRYDEX_BASE_URL,
        ) as client:
            report = await SyncPipeline(client, session_factory, config=test_settings).run(
                SyncKind.FULL
            )

    assert report.ok
    assert report.expansions_upserted == 1
    assert report.cards_upserted == 5
    async with session_factory() as session:
        card = await session.get(Card, "sv1-3")
    assert card.image_url == "https://images.scrydex.test/sv1-3/small"
    assert card.variants[0]["prices"][1]["company"] == "PSA"
