"""
Card Sync - Pricing Extractor

Reduces all price entries on a card's variants to at most one best raw
price and one best graded price.

Raw:    lowest condition rank first (NM < LP < MP < DM < anything else),
        then cheapest market price.
Graded: PSA 10 first, then highest market price, then company, grade and
        input order so the choice is always deterministic.

Pure functions; nothing here touches the network or the database.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, NamedTuple, Union

import structlog

from cardsync.config import PriceKind, settings
from cardsync.pipeline.scrydex import GradedPriceEntry, RawPriceEntry, ScrydexCard

logger = structlog.get_logger(__name__)


class RawCondition(str, Enum):
    """Canonical raw condition codes, in rank order."""
    NEAR_MINT = "NM"
    LIGHTLY_PLAYED = "LP"
    MODERATELY_PLAYED = "MP"
    DAMAGED = "DM"


# ---------------------------------------------------------------------------
# Condition ranking
# ---------------------------------------------------------------------------

_CONDITION_RANK: dict[RawCondition, int] = {
    RawCondition.NEAR_MINT: 1,
    RawCondition.LIGHTLY_PLAYED: 2,
    RawCondition.MODERATELY_PLAYED: 3,
    RawCondition.DAMAGED: 4,
}
UNKNOWN_CONDITION_RANK = 5

# Upper-cased spellings seen upstream, mapped onto the canonical codes.
# Heavily Played has no code of its own and ranks as unknown.
_CONDITION_ALIASES: dict[str, RawCondition] = {
    "NM": RawCondition.NEAR_MINT,
    "NEAR MINT": RawCondition.NEAR_MINT,
    "NEAR_MINT": RawCondition.NEAR_MINT,
    "NEAR-MINT": RawCondition.NEAR_MINT,
    "LP": RawCondition.LIGHTLY_PLAYED,
    "LIGHTLY PLAYED": RawCondition.LIGHTLY_PLAYED,
    "LIGHTLY_PLAYED": RawCondition.LIGHTLY_PLAYED,
    "LIGHT PLAYED": RawCondition.LIGHTLY_PLAYED,
    "MP": RawCondition.MODERATELY_PLAYED,
    "MODERATELY PLAYED": RawCondition.MODERATELY_PLAYED,
    "MODERATELY_PLAYED": RawCondition.MODERATELY_PLAYED,
    "DM": RawCondition.DAMAGED,
    "DMG": RawCondition.DAMAGED,
    "DAMAGED": RawCondition.DAMAGED,
}


def normalize_condition(condition: str | None) -> RawCondition | None:
    """
    Map an upstream condition string onto a RawCondition.

    Returns:
        The canonical code, or None when the spelling is not recognised.
    """
    if not condition:
        return None
    return _CONDITION_ALIASES.get(condition.strip().upper())


def condition_rank(condition: str | None) -> int:
    """Rank a raw condition; unknown or missing conditions rank last."""
    normalized = normalize_condition(condition)
    if normalized is None:
        return UNKNOWN_CONDITION_RANK
    return _CONDITION_RANK[normalized]


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class SelectedPrice(NamedTuple):
    """A chosen price entry plus the variant it was listed under."""
    variant: str | None
    entry: Union[RawPriceEntry, GradedPriceEntry]


class BestPrices(NamedTuple):
    """Result of extract_best_prices. Either side may be None."""
    raw_price: SelectedPrice | None
    graded_price: SelectedPrice | None


def iter_price_entries(card: ScrydexCard) -> Iterator[SelectedPrice]:
    """Flatten price entries across all variants, in upstream order."""
    for variant in card.variants:
        for entry in variant.prices:
            yield SelectedPrice(variant=variant.name, entry=entry)


def is_eligible(entry: RawPriceEntry | GradedPriceEntry, require_usd: bool = True) -> bool:
    """An entry is storable when it has a non-negative market price (in USD when required)."""
    if entry.market is None or entry.market < 0:
        return False
    if require_usd and entry.currency != "USD":
        return False
    return True


def _raw_sort_key(indexed: tuple[int, SelectedPrice]) -> tuple[Any, ...]:
    index, selected = indexed
    return (condition_rank(selected.entry.condition), selected.entry.market, index)


def _graded_sort_key(indexed: tuple[int, SelectedPrice]) -> tuple[Any, ...]:
    index, selected = indexed
    entry = selected.entry
    company = (entry.company or "").strip().upper()
    grade = entry.grade or ""
    is_psa_10 = company == "PSA" and grade == "10"
    return (0 if is_psa_10 else 1, -entry.market, company, grade, index)


def extract_best_prices(card: ScrydexCard, require_usd: bool | None = None) -> BestPrices:
    """
    Pick the best raw and best graded price for a card.

    Args:
        card: Validated card payload with its variants.
        require_usd: Drop non-USD entries. Defaults to REQUIRE_USD_PRICES.

    Returns:
        BestPrices(raw_price, graded_price); a side is None when no eligible
        entry of that kind exists.
    """
    if require_usd is None:
        require_usd = settings.REQUIRE_USD_PRICES

    raw: list[tuple[int, SelectedPrice]] = []
    graded: list[tuple[int, SelectedPrice]] = []

    for index, selected in enumerate(iter_price_entries(card)):
        if not is_eligible(selected.entry, require_usd):
            continue
        if isinstance(selected.entry, RawPriceEntry):
            raw.append((index, selected))
        else:
            graded.append((index, selected))

    best_raw = min(raw, key=_raw_sort_key)[1] if raw else None
    best_graded = min(graded, key=_graded_sort_key)[1] if graded else None

    logger.debug(
        "pricing_extracted",
        card_id=card.id,
        raw_candidates=len(raw),
        graded_candidates=len(graded),
        raw_market=str(best_raw.entry.market) if best_raw else None,
        graded_market=str(best_graded.entry.market) if best_graded else None,
    )
    return BestPrices(raw_price=best_raw, graded_price=best_graded)


# ---------------------------------------------------------------------------
# Storage rows
# ---------------------------------------------------------------------------


def _price_row(card_id: str, selected: SelectedPrice, now: datetime) -> dict[str, Any]:
    entry = selected.entry
    if isinstance(entry, RawPriceEntry):
        normalized = normalize_condition(entry.condition)
        condition = normalized.value if normalized else (entry.condition or "").strip()
        price_type, company, grade = PriceKind.RAW, "", ""
    else:
        condition = ""
        price_type = PriceKind.GRADED
        company = (entry.company or "").strip().upper()
        grade = entry.grade or ""

    return {
        "card_id": card_id,
        "price_type": price_type.value,
        "condition": condition,
        "company": company,
        "grade": grade,
        "variant": selected.variant,
        "market": entry.market,
        "low": entry.low,
        "mid": entry.mid,
        "high": entry.high,
        "currency": entry.currency or "USD",
        "is_perfect": entry.is_perfect,
        "is_signed": entry.is_signed,
        "is_error": entry.is_error,
        "trends": entry.trends,
        "updated_at": now,
    }


def build_price_rows(card: ScrydexCard, best: BestPrices) -> list[dict[str, Any]]:
    """
    Turn a selection into card_prices rows (zero, one or two).

    Qualifiers that do not apply to a row's kind are '' so the composite
    key stays total.
    """
    now = datetime.now(timezone.utc)
    rows: list[dict[str, Any]] = []
    if best.raw_price is not None:
        rows.append(_price_row(card.id, best.raw_price, now))
    if best.graded_price is not None:
        rows.append(_price_row(card.id, best.graded_price, now))
    return rows
