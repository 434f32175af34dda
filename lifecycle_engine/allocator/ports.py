#lifecycle_engine\allocator\ports.py

"""Collision-free port triples for new customers."""

import logging
from threading import Lock
from typing import Callable, Iterable, Optional, Set
from uuid import UUID

from lifecycle_engine.core.errors import ResourceExhausted
from lifecycle_engine.core.models import ServicePorts
from lifecycle_engine.core.repository import CustomerRepository

logger = logging.getLogger(__name__)


class PortAllocator:
    """
    Hands out (backend, admin, store) triples.

    The in-use set is rebuilt from the customer registry on every call,
    so records restored out of band are always seen. Scan and reservation
    happen inside one global critical section.
    """

    def __init__(
        self,
        repository: CustomerRepository,
        base_port: int = 4000,
        max_port: int = 4999,
        stride: int = 10,
        reserved: Iterable[int] = (),
    ):
        if stride < 3:
            raise ValueError("stride must leave room for three ports")
        if max_port < base_port + 2:
            raise ValueError("port range must hold at least one triple")

        self._repo = repository
        self._base = base_port
        self._max = max_port
        self._stride = stride
        self._reserved = frozenset(reserved)
        self._pending: Set[int] = set()
        self._lock = Lock()

    def allocate(
        self,
        persist: Optional[Callable[[ServicePorts], None]] = None,
    ) -> ServicePorts:
        """
        Find the lowest free triple and reserve it.

        When `persist` is given it is called with the triple while the
        allocation lock is still held, so the reservation becomes durable
        before any other allocation can scan. Without it the triple is
        held in memory until `release`.
        """
        with self._lock:
            used = self._in_use()

            port = self._base
            while port + 2 <= self._max:
                candidate = (port, port + 1, port + 2)
                if not used.intersection(candidate):
                    ports = ServicePorts(*candidate)
                    if persist is not None:
                        persist(ports)
                    else:
                        self._pending.update(candidate)
                    logger.info(f"[ports] allocated {candidate}")
                    return ports
                port += self._stride

            raise ResourceExhausted(
                f"No free port triple in {self._base}-{self._max} "
                f"({len(used)} ports in use)"
            )

    def release(self, ports: ServicePorts) -> None:
        """Drop any in-memory hold on a triple."""
        with self._lock:
            self._pending.difference_update(ports)
        logger.info(f"[ports] released {ports.as_tuple()}")

    def is_available(self, ports: ServicePorts, owner: Optional[UUID] = None) -> bool:
        """True if no other customer (or reservation) holds any of the ports."""
        with self._lock:
            used = self._repo.used_ports(exclude=owner) | self._reserved
            return not used.intersection(ports)

    def _in_use(self) -> Set[int]:
        return self._repo.used_ports() | self._reserved | self._pending

    @property
    def capacity(self) -> int:
        """Number of triple slots in the configured range."""
        return (self._max - 2 - self._base) // self._stride + 1

    def __repr__(self) -> str:
        return (
            f"<PortAllocator(range={self._base}-{self._max}, "
            f"stride={self._stride}, pending={len(self._pending)})>"
        )
