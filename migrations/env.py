from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context

from app.config import get_config
from app.db import Base, create_db_engine
# Registers kv_entries on Base.metadata for autogenerate
from app.kv import models as _kv_models  # noqa: F401


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata
app_config = get_config(os.getenv("APP_ENV"))


def _database_url() -> str:
    # alembic.ini wins; otherwise use the same URL the app would use.
    return config.get_main_option("sqlalchemy.url") or app_config.SQLALCHEMY_DATABASE_URI


def _include_object(obj, name, type_, reflected, compare_to) -> bool:
    # The key-value table may share a database with unrelated tables.
    return not (type_ == "table" and reflected and compare_to is None)


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        include_object=_include_object,
        literal_binds=True,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations against the configured database."""
    url = _database_url()
    logger.info("Running kv_entries migrations against %s", url.split("@")[-1])
    engine = create_db_engine(url, connect_timeout=app_config.SQL_CONNECT_TIMEOUT)

    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                include_object=_include_object,
                compare_type=True,
            )

            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
