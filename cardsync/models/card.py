"""
Card Sync - Card Model

One row per Scrydex card. Written only by sync runs (upsert by id), never
deleted by the pipeline. The raw `variants` payload is kept so price rows
can be rebuilt from storage without another API call.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import TIMESTAMP, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base, JSONType


class Card(Base):
    """
    Catalog card from the Scrydex API.

    The id is the Scrydex card id (e.g., "sv1-25").
    """

    __tablename__ = "pokemon_cards"

    id: Mapped[str] = mapped_column(String, primary_key=True, comment="Scrydex card id")
    name: Mapped[str] = mapped_column(String, nullable=False)
    supertype: Mapped[str | None] = mapped_column(String, nullable=True)
    types: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    subtypes: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    hp: Mapped[str | None] = mapped_column(String, nullable=True)
    number: Mapped[str | None] = mapped_column(String, nullable=True)
    rarity: Mapped[str | None] = mapped_column(String, nullable=True)
    expansion_id: Mapped[str | None] = mapped_column(String, nullable=True)
    expansion_name: Mapped[str | None] = mapped_column(String, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    image_url_large: Mapped[str | None] = mapped_column(String, nullable=True)
    abilities: Mapped[Any | None] = mapped_column(JSONType, nullable=True)
    attacks: Mapped[Any | None] = mapped_column(JSONType, nullable=True)
    weaknesses: Mapped[Any | None] = mapped_column(JSONType, nullable=True)
    resistances: Mapped[Any | None] = mapped_column(JSONType, nullable=True)
    retreat_cost: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    artist: Mapped[str | None] = mapped_column(String, nullable=True)
    flavor_text: Mapped[str | None] = mapped_column(String, nullable=True)
    regulation_mark: Mapped[str | None] = mapped_column(String, nullable=True)
    language_code: Mapped[str] = mapped_column(String, nullable=False, default="en")
    national_pokedex_numbers: Mapped[list[int] | None] = mapped_column(JSONType, nullable=True)
    legalities: Mapped[Any | None] = mapped_column(JSONType, nullable=True)
    variants: Mapped[Any | None] = mapped_column(
        JSONType, nullable=True, comment="Raw variants payload incl. prices"
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_pokemon_cards_name", "name"),
        Index("ix_pokemon_cards_expansion_id", "expansion_id"),
    )

    def __repr__(self) -> str:
        return f"<Card id={self.id!r} name={self.name!r} expansion={self.expansion_id!r}>"
