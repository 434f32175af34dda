#lifecycle_engine\database\postgres.py

"""PostgreSQL implementation of the customer database provisioner."""

import logging
import os
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.pool import NullPool

from lifecycle_engine.core.commands import CommandFailed, run_command
from lifecycle_engine.core.errors import AlreadyExists, DatabaseConnectionError, StepFailed
from lifecycle_engine.core.models import Customer
from lifecycle_engine.core.validation import validate_identifier
from lifecycle_engine.database.base import (
    CreateOutcome, DatabaseProvisioner, SeedKind, build_database_url
)

logger = logging.getLogger(__name__)


class PostgresDatabaseProvisioner(DatabaseProvisioner):
    """
    One database plus one login role per customer.

    The admin URL points at the maintenance database (usually `postgres`).
    Connections to the customer's own database are opened on demand and
    disposed after use.
    """

    def __init__(
        self,
        admin_url: str,
        migrate_command: list[str],
        seed_commands: dict[SeedKind, list[str]],
        command_timeout: int = 600,
        engine_factory: Callable[..., Engine] = create_engine,
    ):
        self._admin_url = make_url(admin_url)
        self._migrate_command = list(migrate_command)
        self._seed_commands = dict(seed_commands)
        self._command_timeout = command_timeout
        self._engine_factory = engine_factory
        self._admin_engine: Optional[Engine] = None

    # ============================================
    # Engines
    # ============================================

    def _admin(self) -> Engine:
        # CREATE/DROP DATABASE cannot run inside a transaction block
        if self._admin_engine is None:
            self._admin_engine = self._engine_factory(
                self._admin_url,
                isolation_level="AUTOCOMMIT",
                poolclass=NullPool,
            )
        return self._admin_engine

    def _engine_for(self, database: str, user: str | None = None, password: str | None = None,
                    autocommit: bool = False) -> Engine:
        url = self._admin_url.set(database=database)
        if user is not None:
            url = url.set(username=user, password=password)
        kwargs = {"poolclass": NullPool}
        if autocommit:
            kwargs["isolation_level"] = "AUTOCOMMIT"
        return self._engine_factory(url, **kwargs)

    def customer_url(self, customer: Customer) -> str:
        return build_database_url(
            customer.app_db_user,
            customer.app_db_password,
            self._admin_url.host or "localhost",
            self._admin_url.port or 5432,
            customer.db_name,
        )

    # ============================================
    # Create / Drop
    # ============================================

    def create_database(
        self,
        name: str,
        app_user: str,
        app_password: str,
        exist_ok: bool = True,
    ) -> CreateOutcome:
        validate_identifier(name, "db_name")
        validate_identifier(app_user, "app_db_user")

        try:
            with self._admin().connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"),
                    {"name": name},
                ).scalar() is not None

                if exists and not exist_ok:
                    raise AlreadyExists(f"Database {name} already exists")

                role_exists = conn.execute(
                    text("SELECT 1 FROM pg_roles WHERE rolname = :user"),
                    {"user": app_user},
                ).scalar() is not None

                verb = "ALTER" if role_exists else "CREATE"
                conn.execute(
                    text(f'{verb} ROLE "{app_user}" WITH LOGIN PASSWORD :password'),
                    {"password": app_password},
                )

                if not exists:
                    conn.execute(text(f'CREATE DATABASE "{name}"'))
                    logger.info(f"[db] created database {name}")

                conn.execute(text(f'GRANT ALL PRIVILEGES ON DATABASE "{name}" TO "{app_user}"'))

            self._grant_schema(name, app_user)

        except OperationalError as e:
            raise DatabaseConnectionError(f"Database engine unavailable: {e}") from e
        except SQLAlchemyError as e:
            raise StepFailed("create_database", str(e)) from e

        if exists:
            logger.info(f"[db] database {name} already exists, credentials refreshed")
            return CreateOutcome.ALREADY_EXISTS
        return CreateOutcome.CREATED

    def _grant_schema(self, name: str, app_user: str) -> None:
        """Hand the public schema to the app role so migrations can run as it."""
        engine = self._engine_for(name, autocommit=True)
        try:
            with engine.connect() as conn:
                for statement in (
                    f'ALTER SCHEMA public OWNER TO "{app_user}"',
                    f'GRANT USAGE, CREATE ON SCHEMA public TO "{app_user}"',
                    f'GRANT ALL PRIVILEGES ON ALL TABLES IN SCHEMA public TO "{app_user}"',
                    f'GRANT ALL PRIVILEGES ON ALL SEQUENCES IN SCHEMA public TO "{app_user}"',
                    f'ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT ALL ON TABLES TO "{app_user}"',
                    f'ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT ALL ON SEQUENCES TO "{app_user}"',
                ):
                    conn.execute(text(statement))
        finally:
            engine.dispose()

    def drop_database(self, name: str, app_user: str | None = None) -> None:
        validate_identifier(name, "db_name")

        try:
            with self._admin().connect() as conn:
                conn.execute(
                    text(
                        "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                        "WHERE datname = :name AND pid <> pg_backend_pid()"
                    ),
                    {"name": name},
                )
                conn.execute(text(f'DROP DATABASE IF EXISTS "{name}"'))

                if app_user:
                    validate_identifier(app_user, "app_db_user")
                    conn.execute(text(f'DROP ROLE IF EXISTS "{app_user}"'))

        except OperationalError as e:
            raise DatabaseConnectionError(f"Database engine unavailable: {e}") from e
        except SQLAlchemyError as e:
            raise StepFailed("drop_database", str(e)) from e

        logger.info(f"[db] dropped database {name}")

    def database_exists(self, name: str) -> bool:
        try:
            with self._admin().connect() as conn:
                return conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"),
                    {"name": name},
                ).scalar() is not None
        except OperationalError as e:
            raise DatabaseConnectionError(f"Database engine unavailable: {e}") from e

    # ============================================
    # Migrations / Seed
    # ============================================

    def _run_as_customer(self, step: str, argv: list[str], customer: Customer, workdir: Path) -> None:
        env = {**os.environ, "DATABASE_URL": self.customer_url(customer), "NODE_ENV": "production"}
        try:
            run_command(argv, cwd=workdir, env=env, timeout=self._command_timeout)
        except CommandFailed as e:
            raise StepFailed(step, e.output) from e

    def run_migrations(self, customer: Customer, workdir: Path) -> None:
        logger.info(f"[{customer.domain}] running migrations")
        self._run_as_customer("run_migrations", self._migrate_command, customer, workdir)

    def seed(self, customer: Customer, kind: SeedKind, workdir: Path) -> None:
        argv = self._seed_commands.get(kind)
        if not argv:
            logger.info(f"[{customer.domain}] no {kind.value} seed configured")
            return
        logger.info(f"[{customer.domain}] seeding ({kind.value})")
        self._run_as_customer(f"seed_{kind.value}", argv, customer, workdir)

    # ============================================
    # Demo pack
    # ============================================

    def import_demo_pack(self, customer: Customer, pack_path: Path, uploads_dir: Path) -> None:
        pack_path = Path(pack_path)
        if not pack_path.is_file():
            raise StepFailed("import_demo_pack", f"demo pack not found: {pack_path}")

        with tempfile.TemporaryDirectory(prefix="demo-pack-") as tmp:
            workdir = Path(tmp)
            try:
                with zipfile.ZipFile(pack_path) as archive:
                    archive.extractall(workdir)
            except zipfile.BadZipFile as e:
                raise StepFailed("import_demo_pack", f"not a zip archive: {pack_path.name}") from e

            dumps = sorted(workdir.rglob("*.sql"))
            if not dumps:
                raise StepFailed("import_demo_pack", "no .sql dump in demo pack")

            uploads = next((p for p in workdir.rglob("uploads") if p.is_dir()), None)

            # Stage uploads first so a copy failure happens before any data is touched
            incoming = None
            if uploads is not None:
                incoming = uploads_dir.with_name(uploads_dir.name + ".incoming")
                shutil.rmtree(incoming, ignore_errors=True)
                shutil.copytree(uploads, incoming)

            try:
                self._restore(customer, dumps[0].read_text(encoding="utf-8"))
            except Exception:
                if incoming is not None:
                    shutil.rmtree(incoming, ignore_errors=True)
                raise

        if incoming is not None:
            _swap_directory(incoming, uploads_dir)

        logger.info(f"[{customer.domain}] demo pack {pack_path.name} imported")

    def _restore(self, customer: Customer, sql: str) -> None:
        """Schema reset and data load in one transaction, as the customer's role."""
        engine = self._engine_for(
            customer.db_name, customer.app_db_user, customer.app_db_password
        )
        try:
            with engine.begin() as conn:
                conn.exec_driver_sql("DROP SCHEMA IF EXISTS public CASCADE")
                conn.exec_driver_sql("CREATE SCHEMA public")
                conn.exec_driver_sql(sql)
        except OperationalError as e:
            raise DatabaseConnectionError(f"Customer database unavailable: {e}") from e
        except SQLAlchemyError as e:
            raise StepFailed("import_demo_pack", f"restore rolled back: {e}") from e
        finally:
            engine.dispose()


def _swap_directory(incoming: Path, target: Path) -> None:
    previous = target.with_name(target.name + ".previous")
    shutil.rmtree(previous, ignore_errors=True)
    if target.exists():
        target.rename(previous)
    incoming.rename(target)
    shutil.rmtree(previous, ignore_errors=True)
