# lifecycle_engine/infrastructure/memory/collaborators.py

"""
In-memory stand-ins for the external collaborators.

Each one keeps its state in plain dicts and can be told to fail a named
operation, so pipeline and lifecycle paths can be exercised without a
database engine, pm2, nginx or HTTP.
"""

from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, List, Optional, Set

import requests

from lifecycle_engine.core.errors import (
    AlreadyExists, Conflict, DatabaseConnectionError, StepFailed, SupervisorUnavailable
)
from lifecycle_engine.core.models import SERVICES, Customer, ServicePorts
from lifecycle_engine.database.base import (
    CreateOutcome, DatabaseProvisioner, SeedKind, build_database_url
)
from lifecycle_engine.health_checker.checker import ProbeResult, ServiceHealthChecker, probe_url
from lifecycle_engine.proxy.base import ReverseProxyRegistrar
from lifecycle_engine.staging.templates import TemplateStager
from lifecycle_engine.supervisor.base import (
    ProcessSupervisor, UnitDefinition, UnitState, UnitStatus
)


class _Failures:
    """Named operations that should raise on their next calls."""

    def __init__(self):
        self.fail_on: Dict[str, str] = {}

    def fail(self, operation: str, detail: str = "injected failure") -> None:
        self.fail_on[operation] = detail

    def heal(self, operation: Optional[str] = None) -> None:
        if operation is None:
            self.fail_on.clear()
        else:
            self.fail_on.pop(operation, None)

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise StepFailed(operation, self.fail_on[operation])


# ============================================
# Database
# ============================================

class InMemoryDatabaseProvisioner(_Failures, DatabaseProvisioner):
    def __init__(self, host: str = "localhost", port: int = 5432):
        super().__init__()
        self.host = host
        self.port = port
        self.databases: Dict[str, str] = {}
        self.roles: Dict[str, str] = {}
        self.migrated: List[str] = []
        self.seeded: List[tuple] = []
        self.imported: List[tuple] = []
        self.unavailable = False
        self._lock = Lock()

    def _reachable(self) -> None:
        if self.unavailable:
            raise DatabaseConnectionError("database engine unreachable")

    def create_database(self, name, app_user, app_password, exist_ok=True) -> CreateOutcome:
        self._reachable()
        self._check("create_database")
        with self._lock:
            exists = name in self.databases
            if exists and not exist_ok:
                raise AlreadyExists(f"Database {name} already exists")
            self.roles[app_user] = app_password
            if exists:
                return CreateOutcome.ALREADY_EXISTS
            self.databases[name] = app_user
            return CreateOutcome.CREATED

    def drop_database(self, name, app_user=None) -> None:
        self._reachable()
        self._check("drop_database")
        with self._lock:
            self.databases.pop(name, None)
            if app_user:
                self.roles.pop(app_user, None)

    def database_exists(self, name) -> bool:
        self._reachable()
        return name in self.databases

    def customer_url(self, customer: Customer) -> str:
        return build_database_url(
            customer.app_db_user, customer.app_db_password, self.host, self.port, customer.db_name
        )

    def run_migrations(self, customer, workdir) -> None:
        self._check("run_migrations")
        self.migrated.append(customer.db_name)

    def seed(self, customer, kind: SeedKind, workdir) -> None:
        self._check(f"seed_{kind.value}")
        self.seeded.append((customer.db_name, kind))

    def import_demo_pack(self, customer, pack_path, uploads_dir) -> None:
        self._check("import_demo_pack")
        self.imported.append((customer.db_name, Path(pack_path).name))


# ============================================
# Supervisor
# ============================================

class InMemorySupervisor(_Failures, ProcessSupervisor):
    def __init__(self):
        super().__init__()
        self.definitions: Dict[str, UnitDefinition] = {}
        self.states: Dict[str, UnitState] = {}
        self.restarts: Dict[str, int] = {}
        self.calls: List[tuple] = []
        self.unavailable = False
        self._lock = Lock()

    def _enter(self, action: str, unit_id: str) -> None:
        if self.unavailable:
            raise SupervisorUnavailable("process manager unreachable")
        self._check(action)
        self._check(f"{action}:{unit_id}")
        self.calls.append((action, unit_id))

    def register(self, definition: UnitDefinition) -> None:
        self._enter("register", definition.unit_id)
        with self._lock:
            self.definitions[definition.unit_id] = definition
            self.states.setdefault(definition.unit_id, UnitState.STOPPED)

    def start(self, unit_id: str) -> None:
        self._enter("start", unit_id)
        with self._lock:
            if unit_id not in self.definitions:
                raise StepFailed(f"start {unit_id}", "unit is not registered")
            self.states[unit_id] = UnitState.RUNNING

    def stop(self, unit_id: str) -> None:
        self._enter("stop", unit_id)
        with self._lock:
            if unit_id in self.states:
                self.states[unit_id] = UnitState.STOPPED

    def restart(self, unit_id: str) -> None:
        self._enter("restart", unit_id)
        with self._lock:
            if unit_id not in self.definitions:
                raise StepFailed(f"restart {unit_id}", "unit is not registered")
            self.states[unit_id] = UnitState.RUNNING
            self.restarts[unit_id] = self.restarts.get(unit_id, 0) + 1

    def status(self, unit_id: str) -> UnitStatus:
        if self.unavailable:
            raise SupervisorUnavailable("process manager unreachable")
        with self._lock:
            state = self.states.get(unit_id, UnitState.MISSING)
            return UnitStatus(
                unit_id=unit_id,
                state=state,
                pid=1000 + len(unit_id) if state == UnitState.RUNNING else None,
                restart_count=self.restarts.get(unit_id, 0),
            )

    def list(self) -> List[UnitStatus]:
        return [self.status(unit_id) for unit_id in sorted(self.states)]

    def remove(self, unit_id: str) -> None:
        self._enter("remove", unit_id)
        with self._lock:
            self.definitions.pop(unit_id, None)
            self.states.pop(unit_id, None)

    def crash(self, unit_id: str) -> None:
        with self._lock:
            self.states[unit_id] = UnitState.CRASHED


# ============================================
# Reverse proxy
# ============================================

class InMemoryProxyRegistrar(_Failures, ReverseProxyRegistrar):
    def __init__(self):
        super().__init__()
        self.sites: Dict[str, ServicePorts] = {}
        self._lock = Lock()

    def register(self, domain: str, ports: ServicePorts) -> None:
        self._check("register_proxy")
        with self._lock:
            current = self.sites.get(domain)
            if current is not None and current != ports:
                raise Conflict(f"{domain} is already routed to {current.as_tuple()}")
            self.sites[domain] = ports

    def unregister(self, domain: str) -> None:
        self._check("remove_proxy")
        with self._lock:
            self.sites.pop(domain, None)

    def registered_ports(self, domain: str) -> Optional[ServicePorts]:
        return self.sites.get(domain)


# ============================================
# Staging
# ============================================

class InMemoryTemplateStager(_Failures, TemplateStager):
    """Creates empty service directories instead of extracting archives."""

    def __init__(self, customers_path: str | Path, missing: Iterable[str] = ()):
        super().__init__()
        self._customers = Path(customers_path)
        self.missing: Set[str] = set(missing)
        self.staged: List[str] = []
        self.removed: List[str] = []

    def missing_templates(self, version: str) -> List[str]:
        return sorted(f"{s}-{version}.zip" for s in SERVICES if s in self.missing)

    def stage(self, customer: Customer, services: Iterable[str] = SERVICES) -> Path:
        self._check("stage_code")
        root = self._customers / customer.slug
        for service in services:
            (root / service).mkdir(parents=True, exist_ok=True)
        self.staged.append(customer.domain)
        return root

    def remove(self, customer: Customer) -> None:
        self._check("remove_files")
        self.removed.append(customer.domain)


# ============================================
# Health
# ============================================

class ScriptedHealthChecker(ServiceHealthChecker):
    """Health checker whose probes answer from a table instead of HTTP."""

    def __init__(self, unhealthy: Iterable[str] = (), attempts: int = 3):
        super().__init__(
            attempts=attempts,
            interval_seconds=0,
            total_timeout_seconds=60,
            session=requests.Session(),
            sleep=lambda seconds: None,
        )
        self.unhealthy: Set[str] = set(unhealthy)
        self.probes: List[str] = []

    def probe(self, customer: Customer, service: str) -> ProbeResult:
        self.probes.append(service)
        url = probe_url(customer, service)
        if service in self.unhealthy:
            return ProbeResult(service, url, healthy=False, status_code=503)
        return ProbeResult(service, url, healthy=True, status_code=200)
