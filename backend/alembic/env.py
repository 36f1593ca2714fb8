import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from gridrank import models  # noqa: F401
from gridrank.core.config import get_settings
from gridrank.db.base import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)
logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata


def _database_url() -> str:
    """Explicit connection attribute, then env vars, then alembic.ini, then settings."""
    candidates = (
        config.attributes.get("connection_url"),
        os.getenv("DATABASE_URL", "").strip(),
        os.getenv("POSTGRES_DSN", "").strip(),
        config.get_main_option("sqlalchemy.url"),
    )
    for candidate in candidates:
        if candidate:
            return str(candidate)
    return get_settings().postgres_dsn


def run_migrations_offline(url: str) -> None:
    context.configure(url=url, target_metadata=target_metadata, literal_binds=True, compare_type=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section, {})
    engine = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
        with context.begin_transaction():
            context.run_migrations()


database_url = _database_url()
config.set_main_option("sqlalchemy.url", database_url)
logger.info("Running grid scan migrations against %s", database_url.split("@")[-1])

if context.is_offline_mode():
    run_migrations_offline(database_url)
else:
    run_migrations_online()
