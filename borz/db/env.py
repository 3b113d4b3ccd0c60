from logging.config import fileConfig
import os
import re
from pathlib import Path

from dotenv import load_dotenv
from alembic import context

PROJECT_ROOT = Path(__file__).resolve().parents[2]
load_dotenv(PROJECT_ROOT / ".env", override=False)

from borz.config import load_settings  # noqa: E402
from borz.database import Base, make_engine  # noqa: E402
# Import all models so autogenerate can see tables in Base.metadata.
import borz.models  # noqa: F401,E402

config = context.config


# Prefer an explicit alembic.ini URL (including ${ENV_VAR} placeholders), otherwise the app's DATABASE_URL
def _get_migration_url() -> str:
    url = (config.get_main_option("sqlalchemy.url") or "").strip()
    if url:
        m = re.fullmatch(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}", url)
        if not m:
            return url
        env_val = os.getenv(m.group(1)) or ""
        if env_val:
            return env_val
    return load_settings().database_url


if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


# Generates SQL without a live DB connection
def run_migrations_offline() -> None:
    context.configure(
        url=_get_migration_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


# Executes against a live DB connection
def run_migrations_online() -> None:
    connectable = make_engine(_get_migration_url())

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
