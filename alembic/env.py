import logging
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import pool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from config import get_settings  # noqa: E402
from database import Base, create_app_engine  # noqa: E402
import models  # noqa: E402,F401  registers the tables on Base.metadata

config = context.config
if config.config_file_name is not None and config.attributes.get(
    "configure_logger", True
):
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

# An explicit sqlalchemy.url (alembic.ini or the caller's Config) wins over
# CYCLES_DATABASE_URL.
database_url = config.get_main_option("sqlalchemy.url") or get_settings().database_url

migration_options = {
    "target_metadata": Base.metadata,
    "compare_type": True,
    # SQLite cannot ALTER most constraints in place; batch mode rebuilds the table.
    "render_as_batch": database_url.startswith("sqlite"),
}


def run_offline() -> None:
    context.configure(
        url=database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **migration_options,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = create_app_engine(database_url, poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, **migration_options)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    logger.info(f"Emitting migration SQL for {database_url.split(':', 1)[0]}")
    run_offline()
else:
    run_online()
