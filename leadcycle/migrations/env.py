import asyncio
import os
from logging.config import fileConfig

from alembic import context
from sqlmodel import SQLModel

from leadcycle import db

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# lead, conversation_memory and email_schedule register on import of leadcycle.db
target_metadata = SQLModel.metadata


def _get_database_url() -> str:
    return config.get_main_option("sqlalchemy.url") or os.getenv("DATABASE_URL", db.DATABASE_URL)


def run_migrations_offline() -> None:
    context.configure(
        url=_get_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite needs batch mode to alter the email_schedule unique constraint
        render_as_batch=connection.dialect.name == "sqlite",
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = db.configure_engine(_get_database_url())
    try:
        async with engine.begin() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await engine.dispose()


def main() -> None:
    if context.is_offline_mode():
        run_migrations_offline()
    else:
        asyncio.run(run_migrations_online())


main()
