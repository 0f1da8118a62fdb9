"""
Alembic migration environment for JvmScope.

Migrations run through the same async driver the service uses (``asyncpg``
in production, ``aiosqlite`` for local SQLite files).  The database URL is
taken from the application settings, and every ORM model is imported so
``--autogenerate`` sees the discovery tree, target and plugin tables.

Usage::

    alembic revision --autogenerate -m "describe change"
    alembic upgrade head
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from jvmscope.config import get_settings
from jvmscope.core.database import Base
from jvmscope.models import (  # noqa: F401 – imported for side-effects
    DiscoveryNode,
    DiscoveryPlugin,
    Target,
)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

database_url: str = get_settings().DATABASE_URL
config.set_main_option("sqlalchemy.url", database_url)

# SQLite cannot ALTER constraints in place; batch mode recreates the table.
_render_as_batch: bool = database_url.startswith("sqlite")


# ── Offline migrations (emit SQL without a live database) ────────────────────

def run_migrations_offline() -> None:
    context.configure(
        url=database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        render_as_batch=_render_as_batch,
    )

    with context.begin_transaction():
        context.run_migrations()


# ── Online migrations (connect to a live database) ───────────────────────────

def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=_render_as_batch,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Run the migrations inside a connection of a throwaway async engine."""
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
