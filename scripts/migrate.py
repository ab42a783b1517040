"""
Apply the raw SQL files in ``migrations/`` to the BidFlow database.

Files run in name order inside one transaction; ``_migrations_applied``
remembers which ones already ran, so re-running is a no-op.

Usage::

    python -m scripts.migrate
"""

from __future__ import annotations

import asyncio
import glob
import logging
import os

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from bidflow.core.config import settings

logger = logging.getLogger("bidflow.migrate")

MIGRATION_DIR = os.path.normpath(
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "migrations")
)

_CREATE_TRACKING_TABLE = """
CREATE TABLE IF NOT EXISTS _migrations_applied (
    filename   TEXT PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def pending_files(applied: set[str], migration_dir: str = MIGRATION_DIR) -> list[str]:
    """Return the sorted .sql paths whose basename is not in ``applied``."""
    sql_files = sorted(glob.glob(os.path.join(migration_dir, "*.sql")))
    return [path for path in sql_files if os.path.basename(path) not in applied]


async def run_migrations(database_url: str = settings.database_url) -> list[str]:
    """Apply pending migrations and return the filenames applied."""
    engine = create_async_engine(database_url)
    try:
        async with engine.begin() as conn:
            await conn.execute(text(_CREATE_TRACKING_TABLE))
            applied = set((await conn.execute(text("SELECT filename FROM _migrations_applied"))).scalars())

            done = []
            for path in pending_files(applied):
                filename = os.path.basename(path)
                with open(path, encoding="utf-8") as fh:
                    sql = fh.read()
                # Multi-statement files need asyncpg's simple query protocol
                raw = await conn.get_raw_connection()
                await raw.dbapi_connection._connection.execute(sql)
                await conn.execute(
                    text("INSERT INTO _migrations_applied (filename) VALUES (:filename)"),
                    {"filename": filename},
                )
                logger.info("Applied migration %s", filename)
                done.append(filename)
    finally:
        await engine.dispose()

    logger.info("Migrations complete: applied=%d, already applied=%d", len(done), len(applied))
    return done


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    asyncio.run(run_migrations())
