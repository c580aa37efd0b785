"""
Card Sync - Scrydex API Client

Fetches card and expansion pages from the Scrydex API. Every failure is
translated into the typed errors in cardsync.errors so callers can decide
per class whether to retry, skip or abort.

Base URL: https://api.scrydex.com
Auth: X-Api-Key + X-Team-ID headers
Pagination: page + page_size
"""

from __future__ import annotations

import asyncio
import json
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Literal, Union

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from cardsync.config import settings
from cardsync.errors import (
    ApiError,
    EmptyResponseError,
    ParseError,
    RateLimitError,
    ScrydexTimeoutError,
    TransientNetworkError,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Shape coercion
# ---------------------------------------------------------------------------
#
# Optional fields degrade to None when upstream sends the wrong shape.
# Only a card's id and name are strict.


def _optional_str(v: Any) -> str | None:
    if v is None or v == "" or isinstance(v, (dict, list)):
        return None
    return str(v)


def _optional_int(v: Any) -> int | None:
    if v is None or isinstance(v, bool):
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _optional_list(v: Any) -> list[Any] | None:
    return v if isinstance(v, list) else None


def _optional_dict(v: Any) -> dict[str, Any] | None:
    return v if isinstance(v, dict) else None


def _str_list(v: Any) -> list[str] | None:
    if not isinstance(v, list):
        return None
    return [s for s in map(_optional_str, v) if s is not None]


def _int_list(v: Any) -> list[int] | None:
    if not isinstance(v, list):
        return None
    return [i for i in map(_optional_int, v) if i is not None]


# ---------------------------------------------------------------------------
# Pydantic Response Models
# ---------------------------------------------------------------------------


class PriceEntryBase(BaseModel):
    """Fields shared by raw and graded price entries."""

    model_config = ConfigDict(extra="ignore")

    market: Decimal | None = Field(default=None, description="Market price")
    low: Decimal | None = None
    mid: Decimal | None = None
    high: Decimal | None = None
    currency: str | None = Field(default=None, description="ISO currency code")
    trends: dict[str, Any] | None = None
    is_perfect: bool = False
    is_signed: bool = False
    is_error: bool = False

    @field_validator("market", "low", "mid", "high", mode="before")
    @classmethod
    def parse_decimal(cls, v: Any) -> Decimal | None:
        """Safely convert price values to Decimal. Never use float for money."""
        if v is None or v == "" or v == "N/A":
            return None
        try:
            return Decimal(str(v))
        except (InvalidOperation, ValueError):
            return None

    @field_validator("is_perfect", "is_signed", "is_error", mode="before")
    @classmethod
    def none_is_false(cls, v: Any) -> bool:
        return bool(v)

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, v: Any) -> str | None:
        v = _optional_str(v)
        return v.strip().upper() if v else None

    @field_validator("trends", mode="before")
    @classmethod
    def trends_dict(cls, v: Any) -> dict[str, Any] | None:
        return _optional_dict(v)


class RawPriceEntry(PriceEntryBase):
    """Ungraded price, qualified by condition (NM, LP, ...)."""

    type: Literal["raw"] = "raw"
    condition: str | None = None

    @field_validator("condition", mode="before")
    @classmethod
    def condition_str(cls, v: Any) -> str | None:
        return _optional_str(v)


class GradedPriceEntry(PriceEntryBase):
    """Slab price, qualified by grading company and grade."""

    type: Literal["graded"] = "graded"
    company: str | None = None
    grade: str | None = None

    @field_validator("company", mode="before")
    @classmethod
    def company_str(cls, v: Any) -> str | None:
        return _optional_str(v)

    @field_validator("grade", mode="before")
    @classmethod
    def grade_to_str(cls, v: Any) -> str | None:
        """Grades arrive as "10", 10 or 10.0; store them as "10"."""
        if isinstance(v, float) and v.is_integer():
            return str(int(v))
        v = _optional_str(v)
        return v.strip() if v else None


PriceEntry = Annotated[Union[RawPriceEntry, GradedPriceEntry], Field(discriminator="type")]

_price_entry_adapter: TypeAdapter[Any] = TypeAdapter(PriceEntry)


class ScrydexVariant(BaseModel):
    """A printing of a card (normal, holofoil, reverse, ...) with its prices."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    prices: list[PriceEntry] = Field(default_factory=list)

    @field_validator("name", mode="before")
    @classmethod
    def name_str(cls, v: Any) -> str | None:
        return _optional_str(v)

    @field_validator("prices", mode="before")
    @classmethod
    def drop_unusable_prices(cls, v: Any) -> list[Any]:
        """
        Keep raw and graded entries that validate on their own.

        Unknown types and malformed entries are dropped one by one; the
        rest of the variant survives.
        """
        if not isinstance(v, list):
            return []
        kept = []
        for p in v:
            if not isinstance(p, dict) or p.get("type") not in ("raw", "graded"):
                continue
            try:
                _price_entry_adapter.validate_python(p)
            except ValidationError as e:
                logger.debug(
                    "scrydex_price_entry_invalid",
                    price_type=p.get("type"),
                    error=str(e.errors()[0]["msg"]) if e.errors() else None,
                )
                continue
            kept.append(p)
        if len(kept) != len(v):
            logger.debug(
                "scrydex_price_entries_dropped",
                dropped=len(v) - len(kept),
            )
        return kept


class ExpansionRef(BaseModel):
    """Expansion summary embedded in a card payload."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str | None = None

    @field_validator("id", "name", mode="before")
    @classmethod
    def ref_str(cls, v: Any) -> str | None:
        return _optional_str(v)


class ScrydexCard(BaseModel):
    """
    Card payload from the Scrydex cards endpoint.

    Only `id` and `name` are required; everything else is optional because
    older expansions omit most gameplay fields.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1, description="Scrydex card id (e.g., 'sv1-25')")
    name: str = Field(..., description="Card name")
    supertype: str | None = None
    types: list[str] | None = None
    subtypes: list[str] | None = None
    hp: str | None = None
    number: str | None = None
    rarity: str | None = None
    expansion: ExpansionRef | None = None
    images: list[dict[str, Any]] = Field(default_factory=list)
    abilities: list[Any] | None = None
    attacks: list[Any] | None = None
    weaknesses: list[Any] | None = None
    resistances: list[Any] | None = None
    retreat_cost: list[str] | None = None
    artist: str | None = None
    flavor_text: str | None = None
    regulation_mark: str | None = None
    language_code: str = "en"
    national_pokedex_numbers: list[int] | None = None
    legalities: dict[str, Any] | None = None
    variants: list[ScrydexVariant] = Field(default_factory=list)

    @field_validator(
        "supertype", "hp", "number", "rarity", "artist", "flavor_text", "regulation_mark",
        mode="before",
    )
    @classmethod
    def to_str(cls, v: Any) -> str | None:
        return _optional_str(v)

    @field_validator("types", "subtypes", "retreat_cost", mode="before")
    @classmethod
    def to_str_list(cls, v: Any) -> list[str] | None:
        return _str_list(v)

    @field_validator("abilities", "attacks", "weaknesses", "resistances", mode="before")
    @classmethod
    def to_list(cls, v: Any) -> list[Any] | None:
        return _optional_list(v)

    @field_validator("national_pokedex_numbers", mode="before")
    @classmethod
    def to_int_list(cls, v: Any) -> list[int] | None:
        return _int_list(v)

    @field_validator("legalities", mode="before")
    @classmethod
    def to_dict(cls, v: Any) -> dict[str, Any] | None:
        return _optional_dict(v)

    @field_validator("expansion", mode="before")
    @classmethod
    def expansion_ref(cls, v: Any) -> Any:
        return v if isinstance(v, (dict, ExpansionRef)) else None

    @field_validator("images", mode="before")
    @classmethod
    def normalize_images(cls, v: Any) -> list[dict[str, Any]]:
        """Accept either a list of image objects or a single {small, large} dict."""
        if isinstance(v, dict):
            return [v]
        if isinstance(v, list):
            return [i for i in v if isinstance(i, dict)]
        return []

    @field_validator("variants", mode="before")
    @classmethod
    def variant_objects(cls, v: Any) -> list[Any]:
        if not isinstance(v, list):
            return []
        return [variant for variant in v if isinstance(variant, (dict, ScrydexVariant))]

    @field_validator("language_code", mode="before")
    @classmethod
    def default_language(cls, v: Any) -> str:
        return str(v) if v else "en"

    @property
    def image_url(self) -> str | None:
        return self.images[0].get("small") if self.images else None

    @property
    def image_url_large(self) -> str | None:
        return self.images[0].get("large") if self.images else None

    def to_row(self) -> dict[str, Any]:
        """Flatten into a pokemon_cards row."""
        return {
            "id": self.id,
            "name": self.name,
            "supertype": self.supertype,
            "types": self.types,
            "subtypes": self.subtypes,
            "hp": self.hp,
            "number": self.number,
            "rarity": self.rarity,
            "expansion_id": self.expansion.id if self.expansion else None,
            "expansion_name": self.expansion.name if self.expansion else None,
            "image_url": self.image_url,
            "image_url_large": self.image_url_large,
            "abilities": self.abilities,
            "attacks": self.attacks,
            "weaknesses": self.weaknesses,
            "resistances": self.resistances,
            "retreat_cost": self.retreat_cost,
            "artist": self.artist,
            "flavor_text": self.flavor_text,
            "regulation_mark": self.regulation_mark,
            "language_code": self.language_code,
            "national_pokedex_numbers": self.national_pokedex_numbers,
            "legalities": self.legalities,
            "variants": [v.model_dump(mode="json") for v in self.variants],
        }


class ScrydexExpansion(BaseModel):
    """Expansion payload from the Scrydex expansions endpoint."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    name: str
    series: str | None = None
    code: str | None = None
    total: int | None = None
    printed_total: int | None = None
    language_code: str = "en"
    release_date: str | None = Field(default=None, description="Release date YYYY/MM/DD")
    is_online_only: bool = False
    logo: str | None = None
    symbol: str | None = None

    @field_validator("release_date", "series", "code", "logo", "symbol", mode="before")
    @classmethod
    def to_str(cls, v: Any) -> str | None:
        return _optional_str(v)

    @field_validator("total", "printed_total", mode="before")
    @classmethod
    def to_int(cls, v: Any) -> int | None:
        return _optional_int(v)

    @field_validator("is_online_only", mode="before")
    @classmethod
    def none_is_false(cls, v: Any) -> bool:
        return bool(v)

    @field_validator("language_code", mode="before")
    @classmethod
    def default_language(cls, v: Any) -> str:
        return str(v) if v else "en"

    def get_release_date(self) -> date | None:
        """Parse release date string to date object."""
        if not self.release_date:
            return None
        try:
            # Scrydex uses YYYY/MM/DD
            return date.fromisoformat(self.release_date.replace("/", "-"))
        except ValueError:
            logger.warning(
                "scrydex_invalid_release_date",
                expansion_id=self.id,
                raw_date=self.release_date,
            )
            return None

    def to_row(self) -> dict[str, Any]:
        """Flatten into a pokemon_expansions row."""
        return {
            "id": self.id,
            "name": self.name,
            "series": self.series,
            "code": self.code,
            "total": self.total,
            "printed_total": self.printed_total,
            "language_code": self.language_code,
            "release_date": self.get_release_date(),
            "is_online_only": self.is_online_only,
            "logo_url": self.logo,
            "symbol_url": self.symbol,
        }


# ---------------------------------------------------------------------------
# Defensive parsing
# ---------------------------------------------------------------------------


def parse_card(raw: Any) -> ScrydexCard | None:
    """
    Validate one card payload. Malformed cards are logged and dropped
    rather than failing the whole page.
    """
    if not isinstance(raw, dict):
        logger.warning("scrydex_card_not_object", payload_type=type(raw).__name__)
        return None
    try:
        return ScrydexCard.model_validate(raw)
    except ValidationError as e:
        logger.warning(
            "scrydex_card_invalid",
            card_id=raw.get("id"),
            error_count=e.error_count(),
            error=str(e.errors()[0]["msg"]) if e.errors() else None,
        )
        return None


def parse_expansion(raw: Any) -> ScrydexExpansion | None:
    """Validate one expansion payload; None when malformed."""
    if not isinstance(raw, dict):
        logger.warning("scrydex_expansion_not_object", payload_type=type(raw).__name__)
        return None
    try:
        return ScrydexExpansion.model_validate(raw)
    except ValidationError as e:
        logger.warning(
            "scrydex_expansion_invalid",
            expansion_id=raw.get("id"),
            error_count=e.error_count(),
        )
        return None


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


class ScrydexClient:
    """
    Async client for the Scrydex API.

    Transient network errors retry with exponential backoff; a 429 waits a
    fixed cooldown and retries once; every other failure raises immediately.

    Usage:
        async with ScrydexClient() as client:
            cards = await client.fetch_cards_page(page=1, page_size=100)
    """

    def __init__(
        self,
        api_key: str | None = None,
        team_id: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        base_backoff: float | None = None,
        rate_limit_cooldown: float | None = None,
    ):
        self._api_key = api_key or settings.SCRYDEX_API_KEY
        self._team_id = team_id or settings.SCRYDEX_TEAM_ID
        self._base_url = base_url or settings.SCRYDEX_BASE_URL
        self._timeout = timeout if timeout is not None else settings.SCRYDEX_TIMEOUT_SECONDS
        self._max_retries = (
            max_retries if max_retries is not None else settings.SCRYDEX_MAX_RETRIES
        )
        self._base_backoff = (
            base_backoff if base_backoff is not None else settings.SCRYDEX_BASE_BACKOFF_SECONDS
        )
        self._rate_limit_cooldown = (
            rate_limit_cooldown
            if rate_limit_cooldown is not None
            else settings.SCRYDEX_RATE_LIMIT_COOLDOWN_SECONDS
        )
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ScrydexClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "X-Api-Key": self._api_key,
                "X-Team-ID": self._team_id,
                "Accept": "application/json",
            },
            timeout=self._timeout,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()

    async def _get(self, endpoint: str, params: dict[str, Any] | None) -> httpx.Response:
        """Send one GET, retrying transient network errors with backoff."""
        assert self._client is not None, "Client not initialized. Use 'async with'."

        last_error: TransientNetworkError | None = None

        for attempt in range(self._max_retries + 1):
            try:
                return await self._client.get(endpoint, params=params)

            except httpx.TimeoutException as e:
                last_error = ScrydexTimeoutError(
                    f"Request to {endpoint} timed out after {self._timeout}s"
                )
                last_error.__cause__ = e

            except httpx.RequestError as e:
                last_error = TransientNetworkError(f"{type(e).__name__}: {e}")
                last_error.__cause__ = e

            logger.warning(
                "scrydex_request_error",
                error=str(last_error),
                error_type=type(last_error).__name__,
                attempt=attempt + 1,
                endpoint=endpoint,
            )
            if attempt < self._max_retries:
                await asyncio.sleep(self._base_backoff * (2 ** attempt))

        assert last_error is not None
        raise last_error

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Pull a human-readable message out of an error response."""
        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError):
            return response.text.strip()[:200] or response.reason_phrase
        if isinstance(body, dict):
            for key in ("message", "error", "detail"):
                if body.get(key):
                    return str(body[key])
        return response.reason_phrase

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def fetch_page(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        """
        GET one endpoint and return its payload.

        Returns `body["data"]` when the body is an object with a `data`
        envelope, otherwise the parsed body.

        Raises:
            RateLimitError: 429 persisted after one cooldown retry.
            ApiError: any other non-2xx status.
            EmptyResponseError: 2xx with an empty body.
            ParseError: 2xx with a body that is not JSON.
            TransientNetworkError: network failure after all retries.
        """
        response = await self._get(endpoint, params)

        if response.status_code == 429:
            logger.warning(
                "scrydex_rate_limited",
                endpoint=endpoint,
                cooldown_seconds=self._rate_limit_cooldown,
            )
            await asyncio.sleep(self._rate_limit_cooldown)
            response = await self._get(endpoint, params)
            if response.status_code == 429:
                raise RateLimitError(self._error_message(response))

        if not response.is_success:
            message = self._error_message(response)
            logger.error(
                "scrydex_http_error",
                status_code=response.status_code,
                endpoint=endpoint,
                message=message,
            )
            raise ApiError(response.status_code, message)

        body_text = response.text
        if not body_text or not body_text.strip():
            raise EmptyResponseError()

        try:
            body = json.loads(body_text)
        except json.JSONDecodeError as e:
            raise ParseError(body_text, reason=e.msg) from e

        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    async def fetch_cards_page(self, page: int, page_size: int) -> list[Any]:
        """Fetch one page of cards with prices included."""
        data = await self.fetch_page(
            settings.SCRYDEX_CARDS_ENDPOINT,
            params={
                "page": page,
                settings.SCRYDEX_PAGE_SIZE_PARAM: page_size,
                "include": "prices",
            },
        )
        return _require_list(data, settings.SCRYDEX_CARDS_ENDPOINT)

    async def fetch_expansions_page(self, page: int, page_size: int) -> list[Any]:
        """Fetch one page of expansions."""
        data = await self.fetch_page(
            settings.SCRYDEX_EXPANSIONS_ENDPOINT,
            params={"page": page, settings.SCRYDEX_PAGE_SIZE_PARAM: page_size},
        )
        return _require_list(data, settings.SCRYDEX_EXPANSIONS_ENDPOINT)


def _require_list(data: Any, endpoint: str) -> list[Any]:
    """A list endpoint must yield a list; anything else is unusable."""
    if isinstance(data, list):
        return data
    raise ParseError(
        json.dumps(data, default=str)[:200],
        reason=f"expected a list from {endpoint}, got {type(data).__name__}",
    )
