"""
Card Sync - Batch Upserter

Writes records in fixed-size chunks with one INSERT ... ON CONFLICT DO UPDATE
statement and one commit per chunk. A failing chunk is rolled back, retried
once, then reported; later chunks are still attempted.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

import structlog
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.dml import Insert

from cardsync.config import settings
from cardsync.errors import StorageWriteError

logger = structlog.get_logger(__name__)


@dataclass
class FailedRecord:
    """A record that could not be written, with the reason."""
    record: dict[str, Any]
    error: str


@dataclass
class UpsertResult:
    """Per-batch outcome. succeeded + len(failed) == records submitted."""
    succeeded: int = 0
    failed: list[FailedRecord] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    def merge(self, other: UpsertResult) -> UpsertResult:
        self.succeeded += other.succeeded
        self.failed.extend(other.failed)
        return self


# ---------------------------------------------------------------------------
# Statement building
# ---------------------------------------------------------------------------


def build_upsert(
    dialect_name: str,
    model: type,
    rows: list[dict[str, Any]],
    conflict_key: Sequence[str],
) -> Insert:
    """
    Dialect-native INSERT ... ON CONFLICT (conflict_key) DO UPDATE.

    Every non-key column present in the rows is overwritten from EXCLUDED.
    """
    if dialect_name == "postgresql":
        stmt = pg_insert(model).values(rows)
    elif dialect_name == "sqlite":
        stmt = sqlite_insert(model).values(rows)
    else:
        raise StorageWriteError(f"Upsert not supported for dialect '{dialect_name}'")

    update_columns = [c for c in rows[0] if c not in conflict_key]
    if not update_columns:
        return stmt.on_conflict_do_nothing(index_elements=list(conflict_key))
    return stmt.on_conflict_do_update(
        index_elements=list(conflict_key),
        set_={c: stmt.excluded[c] for c in update_columns},
    )


def _conflict_value(record: dict[str, Any], conflict_key: Sequence[str]) -> tuple[Any, ...]:
    return tuple(record.get(k) for k in conflict_key)


def collapse_duplicates(
    records: Sequence[dict[str, Any]],
    conflict_key: Sequence[str],
) -> list[dict[str, Any]]:
    """
    One row per conflict key, last occurrence wins.

    A single ON CONFLICT statement cannot touch the same row twice.
    """
    collapsed: dict[tuple[Any, ...], dict[str, Any]] = {}
    for record in records:
        collapsed[_conflict_value(record, conflict_key)] = record
    return list(collapsed.values())


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def upsert_batch(
    session: AsyncSession,
    model: type,
    records: Sequence[dict[str, Any]],
    conflict_key: Sequence[str],
    *,
    chunk_size: int | None = None,
    retry_delay: float | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> UpsertResult:
    """
    Upsert records in chunks, isolating failures per chunk.

    Args:
        session: Async session; committed once per chunk.
        model: Declarative model class of the target table.
        records: Row dicts, all with the same keys.
        conflict_key: Columns of the target's unique constraint.
        chunk_size: Records per statement. Defaults to UPSERT_CHUNK_SIZE.
        retry_delay: Seconds before retrying a failed chunk.

    Returns:
        UpsertResult with the succeeded count and every failed record.
    """
    chunk_size = chunk_size or settings.UPSERT_CHUNK_SIZE
    if retry_delay is None:
        retry_delay = settings.UPSERT_RETRY_DELAY_SECONDS

    result = UpsertResult()
    table = model.__tablename__
    if not records:
        return result

    writable: list[dict[str, Any]] = []
    for record in records:
        missing = [k for k in conflict_key if record.get(k) is None]
        if missing:
            result.failed.append(
                FailedRecord(record=record, error=f"missing key column(s): {', '.join(missing)}")
            )
        else:
            writable.append(record)

    dialect_name = session.get_bind().dialect.name

    for offset in range(0, len(writable), chunk_size):
        chunk = writable[offset:offset + chunk_size]
        chunk_number = offset // chunk_size + 1
        rows = collapse_duplicates(chunk, conflict_key)
        if len(rows) != len(chunk):
            logger.debug(
                "upsert_chunk_collapsed",
                table=table,
                chunk=chunk_number,
                records=len(chunk),
                rows=len(rows),
            )

        error: str | None = None
        for attempt in range(2):
            try:
                await session.execute(build_upsert(dialect_name, model, rows, conflict_key))
                await session.commit()
                error = None
                break
            except SQLAlchemyError as e:
                await session.rollback()
                error = f"{type(e).__name__}: {e}"
                logger.warning(
                    "upsert_chunk_failed",
                    table=table,
                    chunk=chunk_number,
                    records=len(chunk),
                    attempt=attempt + 1,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if attempt == 0:
                    await sleep(retry_delay)

        if error is None:
            result.succeeded += len(chunk)
        else:
            result.failed.extend(FailedRecord(record=r, error=error) for r in chunk)

    log = logger.warning if result.failed else logger.info
    log(
        "upsert_batch_complete",
        table=table,
        submitted=len(records),
        succeeded=result.succeeded,
        failed=result.failed_count,
    )
    return result
