#lifecycle_engine\database\base.py

from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from urllib.parse import quote

from lifecycle_engine.core.models import Customer


class CreateOutcome(Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


class SeedKind(Enum):
    ESSENTIAL = "essential"
    DEMO = "demo"


def build_database_url(user: str, password: str, host: str, port: int, db_name: str) -> str:
    """Connection URL in the form the customer's backend expects."""
    return (
        f"postgresql://{quote(user, safe='')}:{quote(password, safe='')}"
        f"@{host}:{port}/{db_name}?schema=public"
    )


class DatabaseProvisioner(ABC):
    """
    Per-customer database lifecycle.

    Administrative credentials are only used for create/drop. Everything
    that touches the customer's data runs as the customer's own role.
    """

    @abstractmethod
    def create_database(
        self,
        name: str,
        app_user: str,
        app_password: str,
        exist_ok: bool = True,
    ) -> CreateOutcome:
        """
        Create the database and its app role, or confirm they exist.

        Returns ALREADY_EXISTS for a repeat call; raises AlreadyExists
        instead when `exist_ok` is False. Raises DatabaseConnectionError
        when the engine is unreachable.
        """
        raise NotImplementedError

    @abstractmethod
    def drop_database(self, name: str, app_user: str | None = None) -> None:
        """Terminate sessions and drop the database. Missing is fine."""
        raise NotImplementedError

    @abstractmethod
    def database_exists(self, name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def customer_url(self, customer: Customer) -> str:
        """DATABASE_URL built from the customer's own credentials."""
        raise NotImplementedError

    @abstractmethod
    def run_migrations(self, customer: Customer, workdir: Path) -> None:
        """Apply schema migrations. Raises StepFailed with the tool output."""
        raise NotImplementedError

    @abstractmethod
    def seed(self, customer: Customer, kind: SeedKind, workdir: Path) -> None:
        raise NotImplementedError

    @abstractmethod
    def import_demo_pack(self, customer: Customer, pack_path: Path, uploads_dir: Path) -> None:
        """
        Replace the customer's data with a demo pack.

        Either the whole pack lands or the database is left as it was.
        """
        raise NotImplementedError
