"""
Card Sync - Shared pytest Fixtures & Configuration

Provides common fixtures for all test modules:
- In-memory aiosqlite database built from the ORM metadata
- Settings instance with fast test values
- Scrydex card / expansion payload factories
- Seeding helpers
"""

from __future__ import annotations

from typing import Any, AsyncGenerator, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cardsync.config import Settings
from cardsync.models import Base, Card


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

pytest_plugins = ("pytest_asyncio",)


@pytest.fixture
def test_settings() -> Settings:
    """Settings with small pages and no delays; ignores any local .env."""
    return Settings(
        _env_file=None,
        SCRYDEX_API_KEY="test-key",
        SCRYDEX_TEAM_ID="test-team",
        SCRYDEX_BASE_URL="https://api.scrydex.test",
        DATABASE_URL="postgresql+asyncpg://sync@localhost:5432/cards",
        DATABASE_PASSWORD="secret",
        CARD_PAGE_SIZE=2,
        EXPANSION_PAGE_SIZE=2,
        CARD_PAGE_DELAY_SECONDS=0.0,
        EXPANSION_PAGE_DELAY_SECONDS=0.0,
        FULL_SYNC_MAX_PAGES=50,
        MAX_CONSECUTIVE_PAGE_FAILURES=3,
        SKIP_AHEAD_AFTER_KNOWN_PAGES=5,
        UPSERT_CHUNK_SIZE=100,
        UPSERT_RETRY_DELAY_SECONDS=0.0,
        PROGRESS_EVERY_PAGES=1,
        TEST_SYNC_PAGE_SIZE=3,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Session factory over a fresh in-memory SQLite database.

    StaticPool keeps one connection so every session sees the same database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    await engine.dispose()


@pytest.fixture
def seed_cards(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[list[str]], Any]:
    """Insert bare pokemon_cards rows for the given ids."""

    async def _seed(ids: list[str]) -> None:
        async with session_factory() as session:
            session.add_all(Card(id=card_id, name=f"Card {card_id}") for card_id in ids)
            await session.commit()

    return _seed


# ---------------------------------------------------------------------------
# Payload factories
# ---------------------------------------------------------------------------


def raw_price(condition: str, market: Any, currency: str = "USD", **extra: Any) -> dict[str, Any]:
    return {"type": "raw", "condition": condition, "market": market, "currency": currency, **extra}


def graded_price(
    company: str, grade: Any, market: Any, currency: str = "USD", **extra: Any
) -> dict[str, Any]:
    return {
        "type": "graded",
        "company": company,
        "grade": grade,
        "market": market,
        "currency": currency,
        **extra,
    }


@pytest.fixture
def make_card() -> Callable[..., dict[str, Any]]:
    """
    Build a Scrydex card payload.

    Default prices: NM raw at 4.00 and PSA 10 at 120.00 on a "normal" variant.
    """

    def _make(
        card_id: str,
        name: str | None = None,
        prices: list[dict[str, Any]] | None = None,
        **fields: Any,
    ) -> dict[str, Any]:
        if prices is None:
            prices = [raw_price("NM", "4.00"), graded_price("PSA", "10", "120.00")]
        return {
            "id": card_id,
            "name": name or f"Card {card_id}",
            "supertype": "Pokémon",
            "hp": "60",
            "number": card_id.split("-")[-1],
            "rarity": "Common",
            "expansion": {"id": "sv1", "name": "Scarlet & Violet"},
            "images": [
                {
                    "type": "front",
                    "small": f"https://images.scrydex.test/{card_id}/small",
                    "large": f"https://images.scrydex.test/{card_id}/large",
                }
            ],
            "language_code": "en",
            "variants": [{"name": "normal", "prices": prices}],
            **fields,
        }

    return _make


@pytest.fixture
def make_expansion() -> Callable[..., dict[str, Any]]:
    def _make(expansion_id: str, **fields: Any) -> dict[str, Any]:
        return {
            "id": expansion_id,
            "name": f"Expansion {expansion_id}",
            "series": "Scarlet & Violet",
            "code": expansion_id.upper(),
            "total": 258,
            "printed_total": 198,
            "language_code": "en",
            "release_date": "2023/03/31",
            "is_online_only": False,
            "logo": f"https://images.scrydex.test/{expansion_id}/logo",
            "symbol": f"https://images.scrydex.test/{expansion_id}/symbol",
            **fields,
        }

    return _make
