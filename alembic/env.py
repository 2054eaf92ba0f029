from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

from fleetstatus.core.config import settings
from fleetstatus.db import models

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# the archive is optional for the service, but migrations need a target
if not config.get_main_option("sqlalchemy.url"):
    if settings.database_url is None:
        raise RuntimeError("DATABASE_URL is not set")
    config.set_main_option("sqlalchemy.url", str(settings.database_url))

metadata = models.Base.metadata


def run_migrations_offline() -> None:
    """Emit SQL for the snapshot archive without a live connection."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection) -> None:
    context.configure(connection=connection, target_metadata=metadata, compare_type=True)

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section) or {},
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
