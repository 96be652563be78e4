"""Alembic environment for the WeTools auth tables.

Runs against the same ``ASYNC_DATABASE_URI`` the service uses: asyncpg on
Postgres in production, aiosqlite for local runs (batch mode, no SSL).
"""

import asyncio
import pathlib
import ssl
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from wetools_auth.core.config import ModeEnum, settings  # noqa: E402
import wetools_auth.models  # noqa: E402,F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata
db_url = str(settings.ASYNC_DATABASE_URI)
is_sqlite = db_url.startswith("sqlite")


def _connect_args() -> dict:
    # Hosted Postgres needs TLS; local Postgres and SQLite do not
    if is_sqlite or settings.MODE == ModeEnum.development:
        return {}
    ssl_context = ssl.create_default_context()
    ssl_context.check_hostname = False
    ssl_context.verify_mode = ssl.CERT_NONE
    return {"ssl": ssl_context}


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=is_sqlite,
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(url=db_url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_engine(db_url, connect_args=_connect_args())
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_sync)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
