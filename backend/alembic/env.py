"""
Alembic environment for the booking engine schema.

The URL comes from DATABASE_URL_SYNC unless overridden on the command line:
    alembic -x db_url=sqlite:///./local.db upgrade head
SQLite targets run in batch mode so ALTERs on the check-constrained tables work.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from booking_engine.core.config import get_settings
from booking_engine.db.base import Base
import booking_engine.models  # noqa: F401  registers every table on Base.metadata

config = context.config

db_url = context.get_x_argument(as_dictionary=True).get("db_url") or get_settings().DATABASE_URL_SYNC
config.set_main_option("sqlalchemy.url", db_url)
is_sqlite = db_url.startswith("sqlite")

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=is_sqlite,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the migration as SQL for review instead of applying it."""
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
