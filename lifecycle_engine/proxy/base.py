#lifecycle_engine\proxy\base.py

from abc import ABC, abstractmethod
from typing import Optional

from lifecycle_engine.core.models import ServicePorts


class ReverseProxyRegistrar(ABC):
    """Routing rules mapping a customer domain to its service ports."""

    @abstractmethod
    def register(self, domain: str, ports: ServicePorts) -> None:
        """
        Expose `domain`. Registering the same domain with the same ports
        again is a no-op; with different ports it raises Conflict.
        """
        raise NotImplementedError

    @abstractmethod
    def unregister(self, domain: str) -> None:
        """Remove the rule. Unknown domains are ignored."""
        raise NotImplementedError

    @abstractmethod
    def registered_ports(self, domain: str) -> Optional[ServicePorts]:
        raise NotImplementedError
