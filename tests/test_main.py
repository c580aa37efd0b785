"""
Tests for the process entrypoint (cardsync/main.py): argument parsing and
exit-code mapping.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cardsync import main as entrypoint
from cardsync.config import Settings, SyncKind
from cardsync.errors import StorageWriteError
from cardsync.pipeline.pagination import StopReason
from cardsync.pipeline.sync import SyncReport


def sqlite_engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def patched_pipeline(report: SyncReport | None = None, error: Exception | None = None) -> MagicMock:
    pipeline = MagicMock()
    pipeline.run = AsyncMock(return_value=report, side_effect=error)
    pipeline.reextract_prices = AsyncMock(return_value=report, side_effect=error)
    return MagicMock(return_value=pipeline)


@pytest.fixture(autouse=True)
def no_signal_handlers():
    with patch.object(entrypoint, "_install_signal_handlers"):
        yield


async def test_missing_config_exits_2() -> None:
    config = Settings(_env_file=None, SCRYDEX_API_KEY="", SCRYDEX_TEAM_ID="", DATABASE_URL="")

    assert await entrypoint.run("full", config) == entrypoint.EXIT_CONFIG


@pytest.mark.parametrize(
    "stopped_reason, error, expected",
    [
        (StopReason.END_OF_DATA, None, entrypoint.EXIT_OK),
        (StopReason.MAX_PAGES, None, entrypoint.EXIT_OK),
        (StopReason.FAILED, "Aborted after 3 consecutive page failures", entrypoint.EXIT_ABORTED),
        (StopReason.CANCELLED, "Cancelled", entrypoint.EXIT_FAILURE),
    ],
)
async def test_report_maps_to_exit_code(test_settings, stopped_reason, error, expected) -> None:
    report = SyncReport(kind=SyncKind.FULL, stopped_reason=stopped_reason, error=error)
    pipeline_cls = patched_pipeline(report)

    with patch.object(entrypoint, "create_db_engine", return_value=sqlite_engine()), \
            patch.object(entrypoint, "SyncPipeline", pipeline_cls):
        code = await entrypoint.run("full", test_settings)

    assert code == expected
    pipeline_cls.return_value.run.assert_awaited_once_with(SyncKind.FULL)


async def test_unhandled_error_exits_1(test_settings) -> None:
    pipeline_cls = patched_pipeline(error=StorageWriteError("disk full"))

    with patch.object(entrypoint, "create_db_engine", return_value=sqlite_engine()), \
            patch.object(entrypoint, "SyncPipeline", pipeline_cls):
        code = await entrypoint.run("comprehensive", test_settings)

    assert code == entrypoint.EXIT_FAILURE


async def test_reextract_runs_without_sync_kind(test_settings) -> None:
    report = SyncReport(kind=SyncKind.PRICING, stopped_reason=StopReason.END_OF_DATA)
    pipeline_cls = patched_pipeline(report)

    with patch.object(entrypoint, "create_db_engine", return_value=sqlite_engine()), \
            patch.object(entrypoint, "SyncPipeline", pipeline_cls):
        code = await entrypoint.run("reextract", test_settings)

    assert code == entrypoint.EXIT_OK
    pipeline_cls.return_value.reextract_prices.assert_awaited_once()
    pipeline_cls.return_value.run.assert_not_awaited()


def test_parse_args_accepts_every_kind() -> None:
    for kind in ["full", "pricing", "comprehensive", "test", "reextract"]:
        assert entrypoint.parse_args([kind]).kind == kind


def test_parse_args_rejects_unknown_kind() -> None:
    with pytest.raises(SystemExit):
        entrypoint.parse_args(["everything"])
