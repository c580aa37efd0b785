"""Initial schema: pokemon_cards, pokemon_expansions, card_prices, sync_status

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-16
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # --- pokemon_expansions ---
    op.create_table(
        "pokemon_expansions",
        sa.Column("id", sa.String(), primary_key=True, comment="Scrydex expansion id"),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("series", sa.String(), nullable=True),
        sa.Column("code", sa.String(), nullable=True),
        sa.Column("total", sa.INTEGER(), nullable=True),
        sa.Column("printed_total", sa.INTEGER(), nullable=True),
        sa.Column("language_code", sa.String(), nullable=False, server_default="en"),
        sa.Column("release_date", sa.DATE(), nullable=True),
        sa.Column("is_online_only", sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column("logo_url", sa.String(), nullable=True),
        sa.Column("symbol_url", sa.String(), nullable=True),
        *_timestamps(),
    )

    # --- pokemon_cards ---
    op.create_table(
        "pokemon_cards",
        sa.Column("id", sa.String(), primary_key=True, comment="Scrydex card id"),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("supertype", sa.String(), nullable=True),
        sa.Column("types", JSONB(), nullable=True),
        sa.Column("subtypes", JSONB(), nullable=True),
        sa.Column("hp", sa.String(), nullable=True),
        sa.Column("number", sa.String(), nullable=True),
        sa.Column("rarity", sa.String(), nullable=True),
        sa.Column("expansion_id", sa.String(), nullable=True),
        sa.Column("expansion_name", sa.String(), nullable=True),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("image_url_large", sa.String(), nullable=True),
        sa.Column("abilities", JSONB(), nullable=True),
        sa.Column("attacks", JSONB(), nullable=True),
        sa.Column("weaknesses", JSONB(), nullable=True),
        sa.Column("resistances", JSONB(), nullable=True),
        sa.Column("retreat_cost", JSONB(), nullable=True),
        sa.Column("artist", sa.String(), nullable=True),
        sa.Column("flavor_text", sa.String(), nullable=True),
        sa.Column("regulation_mark", sa.String(), nullable=True),
        sa.Column("language_code", sa.String(), nullable=False, server_default="en"),
        sa.Column("national_pokedex_numbers", JSONB(), nullable=True),
        sa.Column("legalities", JSONB(), nullable=True),
        sa.Column("variants", JSONB(), nullable=True, comment="Raw variants payload incl. prices"),
        *_timestamps(),
    )
    op.create_index("ix_pokemon_cards_name", "pokemon_cards", ["name"])
    op.create_index("ix_pokemon_cards_expansion_id", "pokemon_cards", ["expansion_id"])

    # --- card_prices: at most one row per (card, kind, condition, company, grade) ---
    op.create_table(
        "card_prices",
        sa.Column("card_id", sa.String(), nullable=False),
        sa.Column("price_type", sa.String(), nullable=False, comment="'raw' or 'graded'"),
        sa.Column("condition", sa.String(), nullable=False, server_default=""),
        sa.Column("company", sa.String(), nullable=False, server_default=""),
        sa.Column("grade", sa.String(), nullable=False, server_default=""),
        sa.Column("variant", sa.String(), nullable=True),
        sa.Column("market", sa.DECIMAL(12, 2), nullable=False),
        sa.Column("low", sa.DECIMAL(12, 2), nullable=True),
        sa.Column("mid", sa.DECIMAL(12, 2), nullable=True),
        sa.Column("high", sa.DECIMAL(12, 2), nullable=True),
        sa.Column("currency", sa.String(), nullable=False, server_default="USD"),
        sa.Column("is_perfect", sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column("is_signed", sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column("is_error", sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column("trends", JSONB(), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("card_id", "price_type", "condition", "company", "grade"),
        sa.CheckConstraint("price_type IN ('raw', 'graded')", name="ck_card_prices_price_type"),
        sa.CheckConstraint("market >= 0", name="ck_card_prices_market_non_negative"),
    )
    op.create_index("ix_card_prices_price_type", "card_prices", ["price_type"])

    # --- sync_status: one row per sync kind ---
    op.create_table(
        "sync_status",
        sa.Column("sync_kind", sa.String(), primary_key=True, comment="full | pricing | comprehensive | test"),
        sa.Column("in_progress", sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column("last_started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("total_cards", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("total_expansions", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("total_prices", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("pages_processed", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("last_completed_page", sa.INTEGER(), nullable=True, comment="Resume cursor: last page fully written"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("sync_status")
    op.drop_index("ix_card_prices_price_type", table_name="card_prices")
    op.drop_table("card_prices")
    op.drop_index("ix_pokemon_cards_expansion_id", table_name="pokemon_cards")
    op.drop_index("ix_pokemon_cards_name", table_name="pokemon_cards")
    op.drop_table("pokemon_cards")
    op.drop_table("pokemon_expansions")
