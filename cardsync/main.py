"""
Card Sync - Application Entrypoint

Configures structlog, validates credentials, creates the async SQLAlchemy
engine and runs one sync.

Run via:
    python -m cardsync.main full
    python -m cardsync.main pricing
    python -m cardsync.main comprehensive
    python -m cardsync.main test
    python -m cardsync.main reextract

Exit codes:
    0  success
    1  unhandled failure
    2  missing configuration
    3  walk aborted after too many consecutive page failures
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cardsync import __version__
from cardsync.config import Settings, SyncKind, require_settings, settings
from cardsync.errors import FatalConfigError
from cardsync.pipeline.scrydex import ScrydexClient
from cardsync.pipeline.sync import SyncPipeline

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_ABORTED = 3

REEXTRACT = "reextract"


# ---------------------------------------------------------------------------
# Structlog Configuration
# ---------------------------------------------------------------------------


def _configure_logging(log_level: str = "INFO") -> None:
    """
    Set up structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    # stdlib logging for third-party libraries (httpx, sqlalchemy)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Database Setup
# ---------------------------------------------------------------------------


def create_db_engine(config: Settings) -> tuple[Any, async_sessionmaker[AsyncSession]]:
    """
    Create SQLAlchemy async engine and session factory.

    DATABASE_URL points at the Supabase Postgres instance (asyncpg driver);
    DATABASE_PASSWORD, when set, replaces the password in the URL.

    Returns:
        (engine, session_factory) tuple.
    """
    engine = create_async_engine(
        config.database_url(),
        echo=False,
        pool_pre_ping=True,
    )
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine, session_factory


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m cardsync.main",
        description="Sync Scrydex cards, expansions and prices into Postgres.",
    )
    parser.add_argument(
        "kind",
        choices=[k.value for k in SyncKind] + [REEXTRACT],
        help=(
            "full: expansions + every card | pricing: prices for stored cards | "
            "comprehensive: resumable, new cards only | test: one page of 10 | "
            "reextract: rebuild prices from stored variants, no API calls"
        ),
    )
    return parser.parse_args(argv)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    """SIGINT / SIGTERM stop the walk between pages."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass


async def run(kind: str, config: Settings | None = None) -> int:
    """
    Run one sync and map the outcome to an exit code.

    Execution order:
    1. Validate credentials (before any network activity)
    2. Create async database engine and verify the connection
    3. Run the sync inside a ScrydexClient context
    """
    config = config or settings
    logger = structlog.get_logger(__name__)

    logger.info("card_sync_startup", version=__version__, sync_kind=kind)

    try:
        require_settings(config)
    except FatalConfigError as e:
        logger.error("config_missing", missing=e.missing)
        return EXIT_CONFIG

    engine, session_factory = create_db_engine(config)

    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        logger.info("database_health_check_passed")
    except Exception as e:
        logger.error(
            "database_health_check_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        await engine.dispose()
        return EXIT_FAILURE

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    try:
        async with ScrydexClient(
            api_key=config.SCRYDEX_API_KEY,
            team_id=config.SCRYDEX_TEAM_ID,
            base_url=config.SCRYDEX_BASE_URL,
        ) as client:
            pipeline = SyncPipeline(client, session_factory, config=config, stop_event=stop_event)
            if kind == REEXTRACT:
                report = await pipeline.reextract_prices()
            else:
                report = await pipeline.run(SyncKind(kind))
    except Exception as e:
        logger.error(
            "card_sync_fatal_error",
            sync_kind=kind,
            error=str(e),
            error_type=type(e).__name__,
        )
        return EXIT_FAILURE
    finally:
        await engine.dispose()

    if report.aborted:
        logger.error("card_sync_aborted", sync_kind=kind, error=report.error)
        return EXIT_ABORTED
    if report.error:
        logger.warning("card_sync_incomplete", sync_kind=kind, error=report.error)
        return EXIT_FAILURE

    logger.info(
        "card_sync_complete",
        sync_kind=kind,
        cards=report.cards_upserted,
        expansions=report.expansions_upserted,
        prices=report.prices_upserted,
        failed_records=report.failed_records,
    )
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    _configure_logging(log_level=settings.LOG_LEVEL)
    return asyncio.run(run(args.kind))


# ---------------------------------------------------------------------------
# CLI Entry
# ---------------------------------------------------------------------------


if __name__ == "__main__":
    sys.exit(main())
