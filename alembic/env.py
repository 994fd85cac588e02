"""Migration runner for the guard tables (``login_attempts``, ``ip_bans``).

The database URL comes from ``GUARD_DATABASE_URL`` when set, so migrations
and the running service always point at the same database.
"""

import os
from logging.config import fileConfig

from alembic import context

import harborguard.helpers.attempt_store  # noqa: F401
import harborguard.helpers.ban_store  # noqa: F401
from harborguard.helpers.guard_db import Base, build_engine

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _database_url() -> str:
    return os.environ.get("GUARD_DATABASE_URL") or config.get_main_option(
        "sqlalchemy.url"
    )


def run_migrations_offline() -> None:
    """Emit SQL for the migrations without connecting."""
    context.configure(
        url=_database_url(),
        target_metadata=Base.metadata,
        literal_binds=True,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply the migrations to the configured database."""
    engine = build_engine(_database_url())
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=Base.metadata,
                # SQLite cannot ALTER most columns in place
                render_as_batch=True,
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
