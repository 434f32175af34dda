#lifecycle_engine\supervisor\base.py

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional


class UnitState(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    CRASHED = "crashed"     # process ran and exited abnormally
    MISSING = "missing"     # supervisor has no such unit


@dataclass
class UnitStatus:
    unit_id: str
    state: UnitState
    pid: Optional[int] = None
    uptime_seconds: Optional[float] = None
    restart_count: int = 0

    @property
    def running(self) -> bool:
        return self.state == UnitState.RUNNING

    def to_dict(self) -> Dict:
        return {
            "unit_id": self.unit_id,
            "state": self.state.value,
            "pid": self.pid,
            "uptime_seconds": self.uptime_seconds,
            "restart_count": self.restart_count,
        }


@dataclass
class UnitDefinition:
    """Everything a supervisor needs to (re)create one service process."""

    unit_id: str
    service: str
    cwd: Path
    command: List[str]
    port: int
    env: Dict[str, str] = field(default_factory=dict, repr=False)
    env_file: Optional[Path] = None
    out_log: Optional[Path] = None
    err_log: Optional[Path] = None
    labels: Dict[str, str] = field(default_factory=dict)


class ProcessSupervisor(ABC):
    """
    Process-control boundary. Knows units, not customers.

    Any call that cannot reach the underlying process manager raises
    SupervisorUnavailable. That is never the same thing as CRASHED.
    """

    @abstractmethod
    def register(self, definition: UnitDefinition) -> None:
        """Make a unit known so it can be started. Re-registering replaces it."""
        raise NotImplementedError

    @abstractmethod
    def start(self, unit_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def stop(self, unit_id: str) -> None:
        """Stopping an already stopped or unknown unit is not an error."""
        raise NotImplementedError

    @abstractmethod
    def restart(self, unit_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def status(self, unit_id: str) -> UnitStatus:
        raise NotImplementedError

    @abstractmethod
    def list(self) -> List[UnitStatus]:
        raise NotImplementedError

    @abstractmethod
    def remove(self, unit_id: str) -> None:
        """Stop and forget a unit. Unknown units are ignored."""
        raise NotImplementedError

    def logs(self, unit_id: str, lines: int) -> Optional[str]:
        """
        Recent output of a unit, if the supervisor keeps it itself.
        None means the caller should read the unit's log files.
        """
        return None
