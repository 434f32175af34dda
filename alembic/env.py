"""Alembic environment for the control-plane registry."""

from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context

from lifecycle_engine.infrastructure.postgres.config import settings
from lifecycle_engine.infrastructure.postgres.database import Base
from lifecycle_engine.infrastructure.postgres.models import CustomerORM, ConfigOverrideORM  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# `alembic -x database_url=sqlite:///local.db upgrade head` targets another store
url = context.get_x_argument(as_dictionary=True).get("database_url") or settings.database_url
config.set_main_option("sqlalchemy.url", url)

target_metadata = Base.metadata
REGISTRY_TABLES = set(target_metadata.tables)


def include_object(obj, name, type_, reflected, compare_to):
    # The registry may share a server database with other tools
    if type_ == "table" and reflected and compare_to is None:
        return name in REGISTRY_TABLES
    return True


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_object=include_object,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL for the registry schema without connecting."""
    _configure(url=url, literal_binds=True, dialect_opts={"paramstyle": "named"})

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        # SQLite cannot ALTER most constraints in place
        _configure(connection=connection, render_as_batch=connection.dialect.name == "sqlite")

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
