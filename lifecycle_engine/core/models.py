"""Core domain models for customers and provisioning runs."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional
from uuid import UUID


SERVICES = ("backend", "admin", "store")


class CustomerStatus(Enum):
    """Customer lifecycle status."""

    PENDING = "PENDING"
    PROVISIONING = "PROVISIONING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"
    DELETING = "DELETING"
    DELETED = "DELETED"


class CustomerMode(Enum):
    LOCAL = "local"
    PRODUCTION = "production"


class StepResult(Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def infer_mode(domain: str) -> CustomerMode:
    """Pseudo-domains (`*.local`, `localhost`, single labels) run in local mode."""
    if domain == "localhost" or domain.endswith(".local") or "." not in domain:
        return CustomerMode.LOCAL
    return CustomerMode.PRODUCTION


@dataclass(frozen=True)
class ServicePorts:
    """The port triple owned by one customer."""

    backend: int
    admin: int
    store: int

    def for_service(self, service: str) -> int:
        if service not in SERVICES:
            raise KeyError(service)
        return getattr(self, service)

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.backend, self.admin, self.store)

    def __iter__(self) -> Iterator[int]:
        return iter(self.as_tuple())

    def to_dict(self) -> Dict[str, int]:
        return {"backend": self.backend, "admin": self.admin, "store": self.store}


@dataclass
class CustomerRequest:
    """Declarative creation request handed to the lifecycle manager."""

    domain: str
    mode: Optional[CustomerMode] = None
    partner_id: Optional[str] = None

    db_name: Optional[str] = None
    app_db_user: Optional[str] = None
    app_db_password: Optional[str] = field(default=None, repr=False)

    redis_host: Optional[str] = None
    redis_port: Optional[int] = None
    redis_password: Optional[str] = field(default=None, repr=False)

    template_version: str = "latest"
    store_name: Optional[str] = None
    demo_pack: Optional[str] = None

    # Operator-pinned ports; normally left empty and allocated.
    ports: Optional[ServicePorts] = None


@dataclass
class Customer:
    """One tenant's isolated application stack."""

    # Identity
    customer_id: UUID
    domain: str
    mode: CustomerMode = CustomerMode.LOCAL
    partner_id: Optional[str] = None

    # Network
    ports: Optional[ServicePorts] = None

    # Storage
    db_name: str = ""
    app_db_user: str = ""
    app_db_password: str = field(default="", repr=False)
    redis_host: Optional[str] = None
    redis_port: Optional[int] = None
    redis_password: Optional[str] = field(default=None, repr=False)

    # Code
    template_version: str = "latest"
    store_name: Optional[str] = None
    demo_pack: Optional[str] = None

    # State
    status: CustomerStatus = CustomerStatus.PENDING
    failed_step: Optional[str] = None
    error_detail: Optional[str] = None
    step_history: List[Dict[str, Any]] = field(default_factory=list)

    # Timestamps
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_health_check_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    # Optimistic concurrency
    version: int = 0

    @property
    def slug(self) -> str:
        """Filesystem/config-safe name derived from the domain."""
        return self.domain.replace(".", "-")

    @property
    def is_local(self) -> bool:
        return self.mode == CustomerMode.LOCAL

    def unit_id(self, service: str) -> str:
        """Supervisor unit name for one of this customer's services."""
        return f"{self.domain}-{service}"

    def unit_ids(self) -> List[str]:
        return [self.unit_id(service) for service in SERVICES]

    def to_view(self, include_secrets: bool = False) -> Dict[str, Any]:
        """Serializable view; secrets only for scoped detail fetches."""
        view = {
            "id": str(self.customer_id),
            "domain": self.domain,
            "mode": self.mode.value,
            "partner_id": self.partner_id,
            "status": self.status.value,
            "ports": self.ports.to_dict() if self.ports else None,
            "db_name": self.db_name,
            "app_db_user": self.app_db_user,
            "redis_host": self.redis_host,
            "redis_port": self.redis_port,
            "template_version": self.template_version,
            "failed_step": self.failed_step,
            "error_detail": self.error_detail,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_health_check_at": (
                self.last_health_check_at.isoformat() if self.last_health_check_at else None
            ),
        }
        if include_secrets:
            view["app_db_password"] = self.app_db_password
            view["redis_password"] = self.redis_password
        return view


@dataclass
class ProvisioningStep:
    """Outcome of one pipeline step within one run."""

    step_name: str
    attempt: int = 1
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    result: Optional[StepResult] = None
    error_detail: Optional[str] = None

    def finish(self, result: StepResult, error_detail: Optional[str] = None) -> None:
        self.result = result
        self.error_detail = error_detail
        self.finished_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_name": self.step_name,
            "attempt": self.attempt,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "result": self.result.value if self.result else None,
            "error_detail": self.error_detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvisioningStep":
        return cls(
            step_name=data["step_name"],
            attempt=data.get("attempt", 1),
            started_at=datetime.fromisoformat(data["started_at"]),
            finished_at=(
                datetime.fromisoformat(data["finished_at"]) if data.get("finished_at") else None
            ),
            result=StepResult(data["result"]) if data.get("result") else None,
            error_detail=data.get("error_detail"),
        )


@dataclass
class SubOperationResult:
    """One independently reported sub-step of a best-effort cleanup."""

    name: str
    ok: bool
    detail: Optional[str] = None


@dataclass
class DeletionReport:
    """Aggregated outcome of a hard delete."""

    customer_id: UUID
    domain: str
    results: List[SubOperationResult] = field(default_factory=list)

    def record(self, name: str, ok: bool, detail: Optional[str] = None) -> None:
        self.results.append(SubOperationResult(name=name, ok=ok, detail=detail))

    @property
    def failures(self) -> List[SubOperationResult]:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": str(self.customer_id),
            "domain": self.domain,
            "ok": self.ok,
            "results": [
                {"name": r.name, "ok": r.ok, "detail": r.detail} for r in self.results
            ],
        }
