"""
Card Sync - Sync Status Model

One row per sync kind, keyed by the SyncKind value. Read by the operator
dashboard; written only by SyncStatusRecorder.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BOOLEAN, INTEGER, TIMESTAMP, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base


class SyncStatus(Base):
    """Run metadata and resume cursor for one sync kind."""

    __tablename__ = "sync_status"

    sync_kind: Mapped[str] = mapped_column(
        String, primary_key=True, comment="full | pricing | comprehensive | test"
    )
    in_progress: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    last_started_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    last_completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    total_cards: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    total_expansions: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    total_prices: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    pages_processed: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    last_completed_page: Mapped[int | None] = mapped_column(
        INTEGER, nullable=True, comment="Resume cursor: last page fully written"
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<SyncStatus kind={self.sync_kind!r} in_progress={self.in_progress} "
            f"cards={self.total_cards} page={self.last_completed_page}>"
        )
