"""
Card Sync - Pagination Walker

Drives a page-fetch callable from a start page until the data runs out,
a page limit is hit, too many pages fail in a row, or the run is
cancelled.

    FETCHING ──full page──▶ DELAYING ──▶ FETCHING
        │ short/empty page or max_pages          ─▶ DONE
        │ page failed (below threshold)          ─▶ FETCHING (next page)
        │ consecutive failures == threshold      ─▶ FAILED
        └ stop_event set                         ─▶ DONE (cancelled)

Pages are yielded one at a time so the caller can write each page before
the next one is fetched.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

import structlog

from cardsync.errors import SyncError

logger = structlog.get_logger(__name__)

FetchPage = Callable[[int, int], Awaitable[list[Any]]]


class WalkState(str, Enum):
    FETCHING = "fetching"
    DELAYING = "delaying"
    DONE = "done"
    FAILED = "failed"


class StopReason(str, Enum):
    END_OF_DATA = "end_of_data"
    MAX_PAGES = "max_pages"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Page:
    """One successfully fetched page."""
    number: int
    items: list[Any]


@dataclass
class WalkResult:
    """Outcome of a buffered walk."""
    items: list[Any]
    last_page_reached: int | None
    stopped_reason: StopReason
    pages_fetched: int = 0
    failed_pages: list[int] = field(default_factory=list)


class PageWalker:
    """
    Stateful page iterator.

    Usage:
        walker = PageWalker(client.fetch_cards_page, page_size=100, delay_seconds=0.2)
        async for page in walker.pages():
            ...
        if walker.stop_reason is StopReason.FAILED:
            ...
    """

    def __init__(
        self,
        fetch_page: FetchPage,
        page_size: int,
        *,
        start_page: int = 1,
        max_pages: int | None = None,
        delay_seconds: float = 0.0,
        max_consecutive_failures: int = 3,
        stop_event: asyncio.Event | None = None,
        label: str = "pages",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        if start_page < 1:
            raise ValueError(f"start_page must be >= 1, got {start_page}")
        if max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")

        self._fetch_page = fetch_page
        self.page_size = page_size
        self.start_page = start_page
        self.max_pages = max_pages
        self.delay_seconds = delay_seconds
        self.max_consecutive_failures = max_consecutive_failures
        self._stop_event = stop_event
        self._label = label
        self._sleep = sleep

        self.state = WalkState.FETCHING
        self.stop_reason: StopReason | None = None
        self.current_page = start_page
        self.last_page_reached: int | None = None
        self.pages_attempted = 0
        self.pages_fetched = 0
        self.consecutive_failures = 0
        self.failed_pages: list[int] = []
        self.last_error: str | None = None

    # -----------------------------------------------------------------------
    # Control
    # -----------------------------------------------------------------------

    def skip_ahead(self, pages: int) -> None:
        """Move the cursor forward; takes effect on the next fetch."""
        if pages <= 0:
            return
        logger.info(
            "pagination_skip_ahead",
            label=self._label,
            from_page=self.current_page,
            to_page=self.current_page + pages,
        )
        self.current_page += pages

    def _finish(self, reason: StopReason) -> None:
        self.stop_reason = reason
        self.state = WalkState.FAILED if reason is StopReason.FAILED else WalkState.DONE
        logger.info(
            "pagination_finished",
            label=self._label,
            reason=reason.value,
            pages_fetched=self.pages_fetched,
            failed_pages=len(self.failed_pages),
            last_page=self.last_page_reached,
        )

    def _should_stop(self) -> bool:
        if self._stop_event is not None and self._stop_event.is_set():
            self._finish(StopReason.CANCELLED)
            return True
        if self.max_pages is not None and self.pages_attempted >= self.max_pages:
            self._finish(StopReason.MAX_PAGES)
            return True
        return False

    # -----------------------------------------------------------------------
    # Iteration
    # -----------------------------------------------------------------------

    async def pages(self) -> AsyncIterator[Page]:
        """Yield each successfully fetched page in ascending order."""
        self.state = WalkState.FETCHING

        while not self._should_stop():
            page_number = self.current_page
            self.pages_attempted += 1

            try:
                items = await self._fetch_page(page_number, self.page_size)
            except SyncError as e:
                self.consecutive_failures += 1
                self.failed_pages.append(page_number)
                self.last_error = str(e)
                logger.warning(
                    "pagination_page_failed",
                    label=self._label,
                    page=page_number,
                    error=str(e),
                    error_type=type(e).__name__,
                    consecutive_failures=self.consecutive_failures,
                )
                if self.consecutive_failures >= self.max_consecutive_failures:
                    self._finish(StopReason.FAILED)
                    return
                self.current_page = page_number + 1
                continue

            self.consecutive_failures = 0
            self.pages_fetched += 1
            self.last_page_reached = page_number
            self.current_page = page_number + 1

            logger.debug(
                "pagination_page_fetched",
                label=self._label,
                page=page_number,
                items=len(items),
            )
            yield Page(number=page_number, items=items)

            if len(items) < self.page_size:
                self._finish(StopReason.END_OF_DATA)
                return
            if self._should_stop():
                return

            if self.delay_seconds > 0:
                self.state = WalkState.DELAYING
                await self._sleep(self.delay_seconds)
            self.state = WalkState.FETCHING

    async def collect(self) -> WalkResult:
        """Buffer every page into one WalkResult."""
        items: list[Any] = []
        async for page in self.pages():
            items.extend(page.items)
        assert self.stop_reason is not None
        return WalkResult(
            items=items,
            last_page_reached=self.last_page_reached,
            stopped_reason=self.stop_reason,
            pages_fetched=self.pages_fetched,
            failed_pages=list(self.failed_pages),
        )


async def walk_all_pages(
    fetch_page: FetchPage,
    page_size: int,
    start_page: int = 1,
    max_pages: int | None = None,
    delay_seconds: float = 0.0,
    **kwargs: Any,
) -> WalkResult:
    """
    Walk every page and return all items at once.

    Intended for small corpora such as expansions; card syncs iterate
    PageWalker.pages() instead so each page is written before the next
    fetch.
    """
    walker = PageWalker(
        fetch_page,
        page_size,
        start_page=start_page,
        max_pages=max_pages,
        delay_seconds=delay_seconds,
        **kwargs,
    )
    return await walker.collect()
