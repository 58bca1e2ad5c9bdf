"""Alembic environment configuration for Stashu-Engine."""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

from stashu_engine.common.config import StashuSettings
from stashu_engine.common.database import Base  # imports every model module

config = context.config

# Allow CLI override: alembic -x sqlalchemy.url=... upgrade head
cmd_url = context.get_x_argument(as_dictionary=True).get("sqlalchemy.url")
if cmd_url:
    config.set_main_option("sqlalchemy.url", cmd_url)
elif not config.get_main_option("sqlalchemy.url"):
    config.set_main_option("sqlalchemy.url", StashuSettings().db_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url, target_metadata=target_metadata, literal_binds=True, render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection) -> None:
    # SQLite cannot ALTER most columns in place
    context.configure(connection=connection, target_metadata=target_metadata, render_as_batch=True)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with connectable.connect() as connection:
        await connection.run_sync(_run_sync)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
