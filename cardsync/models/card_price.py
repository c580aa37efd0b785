"""
Card Sync - Selected Price Model

At most one row per (card_id, price_type, condition, company, grade).
The qualifier that does not apply to a row's kind holds '' rather than NULL,
so the primary key never admits duplicates and re-sync overwrites in place.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import BOOLEAN, DECIMAL, TIMESTAMP, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base, JSONType

# Upsert conflict target, in primary key order
CARD_PRICE_KEY = ("card_id", "price_type", "condition", "company", "grade")


class CardPrice(Base):
    """
    Best raw or best graded price chosen for a card by the pricing extractor.

    Raw rows carry `condition` (NM, LP, ...); graded rows carry `company`
    and `grade` (PSA / 10, ...).
    """

    __tablename__ = "card_prices"

    card_id: Mapped[str] = mapped_column(String, primary_key=True)
    price_type: Mapped[str] = mapped_column(
        String, primary_key=True, comment="'raw' or 'graded'"
    )
    condition: Mapped[str] = mapped_column(
        String, primary_key=True, default="", comment="Raw condition code, '' for graded"
    )
    company: Mapped[str] = mapped_column(
        String, primary_key=True, default="", comment="Grading company, '' for raw"
    )
    grade: Mapped[str] = mapped_column(
        String, primary_key=True, default="", comment="Numeric grade, '' for raw"
    )
    variant: Mapped[str | None] = mapped_column(String, nullable=True)
    market: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), nullable=False)
    low: Mapped[Decimal | None] = mapped_column(DECIMAL(12, 2), nullable=True)
    mid: Mapped[Decimal | None] = mapped_column(DECIMAL(12, 2), nullable=True)
    high: Mapped[Decimal | None] = mapped_column(DECIMAL(12, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String, nullable=False, default="USD")
    is_perfect: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    is_signed: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    is_error: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    trends: Mapped[Any | None] = mapped_column(JSONType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_card_prices_price_type", "price_type"),
    )

    def __repr__(self) -> str:
        qualifier = self.condition or f"{self.company} {self.grade}"
        return (
            f"<CardPrice card_id={self.card_id!r} type={self.price_type!r} "
            f"{qualifier} market={self.market}>"
        )
