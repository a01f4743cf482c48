import asyncio
from logging.config import fileConfig
import os
import sys

from sqlalchemy import pool
from sqlalchemy.engine import Connection

from alembic import context

# run from the repository root or from alembic/; either way seathold must import
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from seathold.config import settings
from seathold.db.base import Base
from seathold.db.session import make_engine
import seathold.models  # noqa: F401  registers tables on Base.metadata

config = context.config

if config.config_file_name:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    # `alembic -x db_url=...` points a migration at another database (CI, a scratch copy)
    return context.get_x_argument(as_dictionary=True).get("db_url") or str(settings.DATABASE_URL)


def _configure_options(url: str) -> dict:
    # SQLite cannot ALTER most columns in place; batch mode rebuilds the table instead
    return {"compare_type": True, "render_as_batch": url.startswith("sqlite")}


def run_migrations_offline():
    url = _database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(url),
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection, url: str):
    context.configure(connection=connection, target_metadata=target_metadata, **_configure_options(url))

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online():
    url = _database_url()
    connectable = make_engine(url, poolclass=pool.NullPool)

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations, url)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
