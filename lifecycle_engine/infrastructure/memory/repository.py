# lifecycle_engine/infrastructure/memory/repository.py

from copy import deepcopy
from threading import Lock
from typing import Dict, Iterable, Optional, Set, Tuple
from uuid import UUID

from lifecycle_engine.core.repository import ConfigOverrideRepository, CustomerRepository
from lifecycle_engine.core.models import Customer, CustomerStatus
from lifecycle_engine.core.errors import Conflict, CustomerNotFound, StaleRecord


class InMemoryCustomerRepository(CustomerRepository):
    def __init__(self):
        self._store: dict[UUID, Customer] = {}
        self._lock = Lock()

    def create(self, customer: Customer) -> None:
        with self._lock:
            if customer.customer_id in self._store:
                raise Conflict("Customer already exists")
            self._assert_unique(customer)
            self._store[customer.customer_id] = deepcopy(customer)

    def update(self, customer: Customer) -> None:
        with self._lock:
            stored = self._store.get(customer.customer_id)
            if stored is None:
                raise CustomerNotFound(f"Customer {customer.customer_id} not found")
            if stored.version != customer.version:
                raise StaleRecord(
                    f"{customer.domain} changed since it was read "
                    f"(version {customer.version}, stored {stored.version})"
                )
            if customer.status != CustomerStatus.DELETED:
                self._assert_unique(customer)
            customer.version += 1
            self._store[customer.customer_id] = deepcopy(customer)

    def _assert_unique(self, customer: Customer) -> None:
        ports = set(customer.ports) if customer.ports else set()
        for other in self._active():
            if other.customer_id == customer.customer_id:
                continue
            if other.domain == customer.domain:
                raise Conflict(f"Domain {customer.domain} is already in use")
            if other.ports and ports & set(other.ports):
                raise Conflict(
                    f"Ports of {customer.domain} overlap with {other.domain}"
                )

    def _active(self):
        return [c for c in self._store.values() if c.status != CustomerStatus.DELETED]

    def get(self, customer_id: UUID) -> Customer | None:
        customer = self._store.get(customer_id)
        return deepcopy(customer) if customer else None

    def get_by_domain(self, domain: str) -> Customer | None:
        with self._lock:
            for customer in self._active():
                if customer.domain == domain:
                    return deepcopy(customer)
        return None

    def list(
        self,
        partner_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Iterable[Customer]:
        with self._lock:
            customers = list(self._store.values()) if include_deleted else self._active()
            if partner_id:
                customers = [c for c in customers if c.partner_id == partner_id]
            customers = sorted(customers, key=lambda c: c.created_at, reverse=True)
            return [deepcopy(c) for c in customers]

    def list_by_status(self, status: CustomerStatus) -> Iterable[Customer]:
        with self._lock:
            return [deepcopy(c) for c in self._store.values() if c.status == status]

    def used_ports(self, exclude: Optional[UUID] = None) -> Set[int]:
        with self._lock:
            used = set()
            for customer in self._active():
                if customer.customer_id == exclude or not customer.ports:
                    continue
                used.update(customer.ports)
            return used

    def purge(self, customer_id: UUID) -> bool:
        with self._lock:
            return self._store.pop(customer_id, None) is not None


class InMemoryConfigOverrideRepository(ConfigOverrideRepository):
    def __init__(self):
        self._store: Dict[Tuple[UUID, str], Dict[str, str]] = {}
        self._lock = Lock()

    def get_overrides(self, customer_id: UUID, service: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._store.get((customer_id, service), {}))

    def save_overrides(self, customer_id: UUID, service: str, changes: Dict[str, str]) -> None:
        with self._lock:
            self._store.setdefault((customer_id, service), {}).update(changes)

    def delete_all(self, customer_id: UUID) -> None:
        with self._lock:
            for key in [k for k in self._store if k[0] == customer_id]:
                del self._store[key]
