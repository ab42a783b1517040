"""
Alembic environment for drafting new BidFlow migrations from model changes.

The SQL files in ``migrations/`` applied by ``scripts/migrate.py`` remain the
source of truth; autogenerate output is reviewed and copied there.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

from bidflow.core.config import settings
from bidflow.models import Base

config = context.config
config.set_main_option("sqlalchemy.url", settings.database_url)
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def include_object(obj, name, type_, reflected, compare_to) -> bool:
    # the migration runner's own bookkeeping table
    return not (type_ == "table" and name == "_migrations_applied")


def _configure(**kwargs) -> None:
    context.configure(target_metadata=Base.metadata, include_object=include_object, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


async def _run_online() -> None:
    engine = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with engine.connect() as connection:
        await connection.run_sync(lambda sync_conn: _configure(connection=sync_conn))
    await engine.dispose()


if context.is_offline_mode():
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
else:
    asyncio.run(_run_online())
