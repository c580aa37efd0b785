"""
Card Sync - Configuration & Constants

Every endpoint, page size, delay, threshold and credential lives here.
No hardcoded values in pipeline logic.

Usage:
    from cardsync.config import settings
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic_settings import BaseSettings
from sqlalchemy.engine import make_url

from cardsync.errors import FatalConfigError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SyncKind(str, Enum):
    """Closed set of sync runs. Each maps to exactly one SyncProfile."""
    FULL = "full"                     # expansions + every card, refresh in place
    PRICING = "pricing"               # price rows for cards already stored
    COMPREHENSIVE = "comprehensive"   # resumable, new cards only
    TEST = "test"                     # one small page, smoke test


class PriceKind(str, Enum):
    """Discriminator for price entries and stored price rows."""
    RAW = "raw"
    GRADED = "graded"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Central configuration for Card Sync.

    Loads from environment variables (or .env) with fallback defaults.
    Credentials default to empty and are checked by require_settings()
    before any network activity.
    """

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # -----------------------------------------------------------------------
    # Scrydex API
    # -----------------------------------------------------------------------
    SCRYDEX_API_KEY: str = ""
    SCRYDEX_TEAM_ID: str = ""
    SCRYDEX_BASE_URL: str = "https://api.scrydex.com"
    SCRYDEX_CARDS_ENDPOINT: str = "/pokemon/v1/en/cards"
    SCRYDEX_EXPANSIONS_ENDPOINT: str = "/pokemon/v1/expansions"
    SCRYDEX_PAGE_SIZE_PARAM: str = "page_size"
    SCRYDEX_TIMEOUT_SECONDS: float = 30.0
    SCRYDEX_MAX_RETRIES: int = 3
    SCRYDEX_BASE_BACKOFF_SECONDS: float = 1.0
    SCRYDEX_RATE_LIMIT_COOLDOWN_SECONDS: float = 5.0

    # -----------------------------------------------------------------------
    # Database (Supabase Postgres in production)
    # -----------------------------------------------------------------------
    DATABASE_URL: str = ""
    DATABASE_PASSWORD: str = ""

    # -----------------------------------------------------------------------
    # Pagination
    # -----------------------------------------------------------------------
    CARD_PAGE_SIZE: int = 100
    EXPANSION_PAGE_SIZE: int = 100
    CARD_PAGE_DELAY_SECONDS: float = 0.2
    EXPANSION_PAGE_DELAY_SECONDS: float = 0.1
    FULL_SYNC_MAX_PAGES: int = 500              # hard stop, ~50k cards at 100/page
    MAX_CONSECUTIVE_PAGE_FAILURES: int = 3

    # -----------------------------------------------------------------------
    # Dedup / resume
    # -----------------------------------------------------------------------
    SKIP_AHEAD_AFTER_KNOWN_PAGES: int = 5

    # -----------------------------------------------------------------------
    # Storage writes
    # -----------------------------------------------------------------------
    UPSERT_CHUNK_SIZE: int = 100
    UPSERT_RETRY_DELAY_SECONDS: float = 1.0
    PROGRESS_EVERY_PAGES: int = 5

    # -----------------------------------------------------------------------
    # Pricing
    # -----------------------------------------------------------------------
    REQUIRE_USD_PRICES: bool = True
    PRICING_STALE_AFTER_HOURS: float = 24.0    # pricing sync skips cards priced more recently; 0 disables

    # -----------------------------------------------------------------------
    # Test sync
    # -----------------------------------------------------------------------
    TEST_SYNC_PAGE_SIZE: int = 10

    LOG_LEVEL: str = "INFO"

    def database_url(self) -> str:
        """DATABASE_URL with DATABASE_PASSWORD applied when one is set."""
        url = make_url(self.DATABASE_URL)
        if self.DATABASE_PASSWORD:
            url = url.set(password=self.DATABASE_PASSWORD)
        return url.render_as_string(hide_password=False)


def require_settings(config: Settings) -> None:
    """
    Fail fast when credentials are missing.

    The storage credential is satisfied either by DATABASE_PASSWORD or by a
    password embedded in DATABASE_URL.

    Raises:
        FatalConfigError: naming every missing variable.
    """
    missing: list[str] = []
    if not config.SCRYDEX_API_KEY:
        missing.append("SCRYDEX_API_KEY")
    if not config.SCRYDEX_TEAM_ID:
        missing.append("SCRYDEX_TEAM_ID")
    if not config.DATABASE_URL:
        missing.append("DATABASE_URL")
        missing.append("DATABASE_PASSWORD")
    elif not config.DATABASE_PASSWORD and not make_url(config.DATABASE_URL).password:
        missing.append("DATABASE_PASSWORD")

    if missing:
        raise FatalConfigError(missing)


# ---------------------------------------------------------------------------
# Sync profiles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SyncProfile:
    """Explicit pipeline configuration for one SyncKind."""
    kind: SyncKind
    page_size: int
    delay_seconds: float
    max_pages: int | None
    sync_expansions: bool
    store_cards: bool
    store_prices: bool
    dedup: bool
    resumable: bool
    stale_after_hours: float | None = None


def get_profile(kind: SyncKind, config: Settings | None = None) -> SyncProfile:
    """Map a SyncKind to its pipeline configuration."""
    config = config or settings
    if kind is SyncKind.FULL:
        return SyncProfile(
            kind=kind,
            page_size=config.CARD_PAGE_SIZE,
            delay_seconds=config.CARD_PAGE_DELAY_SECONDS,
            max_pages=config.FULL_SYNC_MAX_PAGES,
            sync_expansions=True,
            store_cards=True,
            store_prices=True,
            dedup=False,
            resumable=False,
        )
    if kind is SyncKind.PRICING:
        return SyncProfile(
            kind=kind,
            page_size=config.CARD_PAGE_SIZE,
            delay_seconds=config.CARD_PAGE_DELAY_SECONDS,
            max_pages=config.FULL_SYNC_MAX_PAGES,
            sync_expansions=False,
            store_cards=False,
            store_prices=True,
            dedup=True,
            resumable=False,
            stale_after_hours=config.PRICING_STALE_AFTER_HOURS or None,
        )
    if kind is SyncKind.COMPREHENSIVE:
        return SyncProfile(
            kind=kind,
            page_size=config.CARD_PAGE_SIZE,
            delay_seconds=config.CARD_PAGE_DELAY_SECONDS,
            max_pages=config.FULL_SYNC_MAX_PAGES,
            sync_expansions=True,
            store_cards=True,
            store_prices=True,
            dedup=True,
            resumable=True,
        )
    if kind is SyncKind.TEST:
        return SyncProfile(
            kind=kind,
            page_size=config.TEST_SYNC_PAGE_SIZE,
            delay_seconds=0.0,
            max_pages=1,
            sync_expansions=False,
            store_cards=True,
            store_prices=True,
            dedup=False,
            resumable=False,
        )
    raise ValueError(f"Unknown sync kind: {kind!r}")


# Singleton instance
settings = Settings()
