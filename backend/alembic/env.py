# /backend/alembic/env.py
import asyncio
import logging
import sys
from logging.config import fileConfig
from pathlib import Path

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from alembic import context

# Make `passkey_gate` importable when alembic runs from backend/
alembic_dir = Path(__file__).resolve().parent
project_root = alembic_dir.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# --- Alembic Config ---
config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

# --- Application Imports ---
try:
    from passkey_gate.core.config import settings

    # Registers every model on Base.metadata
    from passkey_gate.db.base import Base

    logger.info("Successfully imported application settings, Base, and models.")
except ImportError as e:
    logger.error("Failed to import application modules. Error: %s", e, exc_info=True)
    raise

target_metadata = Base.metadata


def _redacted(url: str) -> str:
    if settings.POSTGRES_PASSWORD:
        return url.replace(settings.POSTGRES_PASSWORD, "****")
    return url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (uses a synchronous URL)."""
    sync_url = settings.SYNC_SQLALCHEMY_DATABASE_URL
    if not sync_url:
        raise ValueError("SYNC_SQLALCHEMY_DATABASE_URL computed to None or empty in settings.")
    logger.info("Running migrations in OFFLINE mode using URL: %s", _redacted(sync_url))

    context.configure(
        url=sync_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        render_as_batch=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()
    logger.info("Offline migrations complete.")


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=True,
        compare_server_default=True,
    )
    with context.begin_transaction():
        context.run_migrations()
    logger.info("Online migration run completed within the transaction.")


async def run_migrations_online() -> None:
    """Run migrations in 'online' mode using an ASYNC engine."""
    db_url = settings.ASYNC_SQLALCHEMY_DATABASE_URL
    logger.info("Database URI for Alembic ONLINE (async) mode: %s", _redacted(db_url))
    connectable = create_async_engine(db_url, poolclass=pool.NullPool)

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()
    logger.info("Async engine disposed. Online migrations fully complete.")


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
