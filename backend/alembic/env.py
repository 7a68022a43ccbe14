import sys, pathlib, os
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

# backend root on sys.path
BASE_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from recordlock.locks import models as lock_models  # noqa: F401  (registers edit_locks)
from recordlock.tenants import models as tenant_models  # noqa: F401  (registers tenants)
from recordlock.shared.db import Base
from recordlock.shared.config import settings

config = context.config

# -x db_url=... migrates a tenant database instead of the central one
db_url = context.get_x_argument(as_dictionary=True).get("db_url") or os.getenv(
    "DATABASE_URL", settings.DATABASE_URL
)
if db_url:
    config.set_main_option("sqlalchemy.url", db_url)

if config.config_file_name:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline():
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
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
