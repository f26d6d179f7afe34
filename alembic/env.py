from __future__ import annotations

import asyncio
from logging.config import fileConfig
from uuid import uuid4

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

from backend.config import settings
from backend.database import Base

# Every mapped table must be imported before autogenerate compares metadata.
from backend.models import incident, registration, user  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    """DATABASE_URL wins over alembic.ini so migrations hit the API's database."""
    url = (settings.database_url or "").strip() or config.get_main_option("sqlalchemy.url", "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is not configured for Alembic migrations.")
    return url


def _context_options(url: str) -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "compare_server_default": True,
        # SQLite cannot ALTER columns in place; batch mode recreates the table.
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline() -> None:
    url = _database_url()
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_context_options(url),
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    url = _database_url()
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = url

    connect_args = {}
    if url.startswith("postgresql+asyncpg://"):
        # Unique prepared statement names keep asyncpg working behind PgBouncer.
        connect_args["prepared_statement_name_func"] = lambda: f"__incidentdesk_{uuid4()}__"

    connectable = async_engine_from_config(
        section, prefix="sqlalchemy.", poolclass=pool.NullPool, connect_args=connect_args
    )

    def _run(connection) -> None:
        context.configure(connection=connection, **_context_options(url))
        with context.begin_transaction():
            context.run_migrations()

    async with connectable.connect() as connection:
        await connection.run_sync(_run)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
