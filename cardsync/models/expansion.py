"""
Card Sync - Expansion Model

Release groupings for cards. Same lifecycle as Card: upserted by id,
never deleted.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import BOOLEAN, DATE, INTEGER, TIMESTAMP, String, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base


class Expansion(Base):
    """Scrydex expansion (set) metadata."""

    __tablename__ = "pokemon_expansions"

    id: Mapped[str] = mapped_column(String, primary_key=True, comment="Scrydex expansion id")
    name: Mapped[str] = mapped_column(String, nullable=False)
    series: Mapped[str | None] = mapped_column(String, nullable=True)
    code: Mapped[str | None] = mapped_column(String, nullable=True)
    total: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    printed_total: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    language_code: Mapped[str] = mapped_column(String, nullable=False, default="en")
    release_date: Mapped[date | None] = mapped_column(DATE, nullable=True)
    is_online_only: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    logo_url: Mapped[str | None] = mapped_column(String, nullable=True)
    symbol_url: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Expansion id={self.id!r} name={self.name!r} series={self.series!r}>"
