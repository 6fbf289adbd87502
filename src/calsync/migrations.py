"""Programmatic Alembic migration runner for calsync.

Lets the CLI (and tests) bring a database to the latest schema without
shelling out to the Alembic CLI.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

CHAIN = "calsync"


def _build_alembic_config(db_url: str) -> Config:
    """Build an Alembic Config pointing at the calsync version directory."""
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Alembic Config uses configparser interpolation; percent-encoded DB URLs
    # must escape '%' as '%%'.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / CHAIN))
    return config


def _upgrade(db_url: str, revision: str) -> None:
    config = _build_alembic_config(db_url)
    logger.info("Running migration chain (chain=%s, target=%s)", CHAIN, revision)
    command.upgrade(config, revision)


async def run_migrations(db_url: str, revision: str = f"{CHAIN}@head") -> None:
    """Upgrade the database at *db_url* to *revision*.

    Alembic drives a synchronous SQLAlchemy engine, so the upgrade runs in a
    worker thread.
    """
    await asyncio.to_thread(_upgrade, db_url, revision)
