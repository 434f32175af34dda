# lifecycle_engine/core/repository.py

from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional, Set
from uuid import UUID

from lifecycle_engine.core.models import Customer, CustomerStatus


class CustomerRepository(ABC):
    """
    Persistence contract for the control-plane customer registry.
    """

    @abstractmethod
    def create(self, customer: Customer) -> None:
        """
        Persist a new customer.
        Must raise Conflict if a non-deleted customer already holds
        the domain or any of the ports.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, customer_id: UUID) -> Optional[Customer]:
        """
        Fetch customer by ID.
        Returns None if not found.
        """
        raise NotImplementedError

    @abstractmethod
    def get_by_domain(self, domain: str) -> Optional[Customer]:
        """
        Fetch the non-deleted customer owning a domain, if any.
        """
        raise NotImplementedError

    @abstractmethod
    def update(self, customer: Customer) -> None:
        """
        Persist updated customer state.
        Must raise Conflict on domain/port collisions.

        Compare-and-set on `version`: the stored record must still carry
        the version the caller read, otherwise StaleRecord is raised and
        nothing is written. On success `customer.version` is advanced.
        """
        raise NotImplementedError

    @abstractmethod
    def list(
        self,
        partner_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Iterable[Customer]:
        raise NotImplementedError

    @abstractmethod
    def list_by_status(self, status: CustomerStatus) -> Iterable[Customer]:
        raise NotImplementedError

    @abstractmethod
    def used_ports(self, exclude: Optional[UUID] = None) -> Set[int]:
        """
        All ports held by non-deleted customers.
        Read fresh on every call; never cached.
        """
        raise NotImplementedError

    @abstractmethod
    def purge(self, customer_id: UUID) -> bool:
        """
        Physically remove the record. Returns False if it did not exist.
        """
        raise NotImplementedError


class ConfigOverrideRepository(ABC):
    """
    Persistence contract for per-service configuration overrides,
    keyed by (customer_id, service, key).
    """

    @abstractmethod
    def get_overrides(self, customer_id: UUID, service: str) -> Dict[str, str]:
        raise NotImplementedError

    @abstractmethod
    def save_overrides(self, customer_id: UUID, service: str, changes: Dict[str, str]) -> None:
        """
        Upsert every key in `changes` atomically.
        """
        raise NotImplementedError

    @abstractmethod
    def delete_all(self, customer_id: UUID) -> None:
        raise NotImplementedError
