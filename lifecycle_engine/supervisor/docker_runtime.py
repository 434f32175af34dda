#lifecycle_engine\supervisor\docker_runtime.py

"""
Docker-backed process supervisor.

One container per unit, named after the unit, with the staged service
directory mounted at /app and the allocated port published 1:1.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

import docker
import requests
from docker.errors import APIError, DockerException, NotFound

from lifecycle_engine.core.errors import StepFailed, SupervisorUnavailable
from lifecycle_engine.supervisor.base import (
    ProcessSupervisor, UnitDefinition, UnitState, UnitStatus
)

logger = logging.getLogger(__name__)


MANAGED_LABEL = "managed_by"
MANAGED_VALUE = "lifecycle_engine"


def _uptime(started_at: Optional[str]) -> Optional[float]:
    if not started_at or started_at.startswith("0001-"):
        return None
    # Docker reports nanoseconds; fromisoformat takes at most microseconds
    head = started_at.rstrip("Z").split(".")[0]
    started = datetime.fromisoformat(head).replace(tzinfo=timezone.utc)
    return max(0.0, (datetime.now(timezone.utc) - started).total_seconds())


def container_status(unit_id: str, container) -> UnitStatus:
    state = container.attrs.get("State", {})
    if container.status == "running":
        unit_state = UnitState.RUNNING
    elif container.status in ("restarting", "dead") or state.get("ExitCode", 0) != 0:
        unit_state = UnitState.CRASHED
    else:
        unit_state = UnitState.STOPPED

    return UnitStatus(
        unit_id=unit_id,
        state=unit_state,
        pid=state.get("Pid") or None,
        uptime_seconds=_uptime(state.get("StartedAt")) if unit_state == UnitState.RUNNING else None,
        restart_count=container.attrs.get("RestartCount", 0),
    )


class DockerSupervisor(ProcessSupervisor):
    def __init__(self, image: str = "node:20-alpine", network: Optional[str] = None, client=None):
        self._image = image
        self._network = network
        self._client = client
        self._definitions: Dict[str, UnitDefinition] = {}

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise SupervisorUnavailable(f"Docker daemon unavailable: {e}") from e
            logger.info("✅ Connected to Docker daemon")
        return self._client

    @contextmanager
    def _docker(self, action: str, unit_id: str) -> Iterator[None]:
        try:
            yield
        except requests.exceptions.ConnectionError as e:
            raise SupervisorUnavailable(f"Docker daemon unavailable: {e}") from e
        except APIError as e:
            if e.response is not None and e.response.status_code >= 500:
                raise SupervisorUnavailable(f"Docker daemon error: {e}") from e
            raise StepFailed(f"{action} {unit_id}", str(e)) from e
        except DockerException as e:
            raise SupervisorUnavailable(f"Docker daemon unavailable: {e}") from e

    def register(self, definition: UnitDefinition) -> None:
        self._definitions[definition.unit_id] = definition
        logger.info(f"[docker] registered {definition.unit_id}")

    def _create(self, definition: UnitDefinition):
        config = {
            "image": self._image,
            "name": definition.unit_id,
            "command": definition.command,
            "working_dir": "/app",
            "detach": True,
            "environment": {**definition.env, "HOSTNAME": "0.0.0.0"},
            "ports": {f"{definition.port}/tcp": definition.port},
            "volumes": {str(definition.cwd): {"bind": "/app", "mode": "rw"}},
            "restart_policy": {"Name": "unless-stopped"},
            "labels": {
                **definition.labels,
                MANAGED_LABEL: MANAGED_VALUE,
                "unit_id": definition.unit_id,
            },
        }
        if self._network:
            config["network"] = self._network

        container = self.client.containers.create(**config)
        logger.info(f"[docker] created {definition.unit_id}: {container.id[:12]}")
        return container

    def start(self, unit_id: str) -> None:
        with self._docker("start", unit_id):
            try:
                container = self.client.containers.get(unit_id)
            except NotFound:
                definition = self._definitions.get(unit_id)
                if definition is None:
                    raise StepFailed(f"start {unit_id}", "unit is not registered")
                container = self._create(definition)
            container.start()
        logger.info(f"[docker] started {unit_id}")

    def stop(self, unit_id: str) -> None:
        with self._docker("stop", unit_id):
            try:
                self.client.containers.get(unit_id).stop(timeout=10)
            except NotFound:
                logger.debug(f"[docker] {unit_id} not found, nothing to stop")
                return
        logger.info(f"[docker] stopped {unit_id}")

    def restart(self, unit_id: str) -> None:
        with self._docker("restart", unit_id):
            try:
                self.client.containers.get(unit_id).restart(timeout=10)
            except NotFound:
                raise StepFailed(f"restart {unit_id}", "container not found")
        logger.info(f"[docker] restarted {unit_id}")

    def status(self, unit_id: str) -> UnitStatus:
        with self._docker("status", unit_id):
            try:
                container = self.client.containers.get(unit_id)
            except NotFound:
                return UnitStatus(unit_id=unit_id, state=UnitState.MISSING)
            return container_status(unit_id, container)

    def list(self) -> List[UnitStatus]:
        with self._docker("list", "units"):
            containers = self.client.containers.list(
                all=True, filters={"label": f"{MANAGED_LABEL}={MANAGED_VALUE}"}
            )
            return [container_status(c.labels.get("unit_id", c.name), c) for c in containers]

    def logs(self, unit_id: str, lines: int) -> Optional[str]:
        with self._docker("logs", unit_id):
            try:
                output = self.client.containers.get(unit_id).logs(tail=lines, timestamps=True)
            except NotFound:
                return None
        return output.decode("utf-8", errors="replace")

    def remove(self, unit_id: str) -> None:
        with self._docker("remove", unit_id):
            try:
                self.client.containers.get(unit_id).remove(force=True)
            except NotFound:
                logger.debug(f"[docker] {unit_id} not found, nothing to remove")
        self._definitions.pop(unit_id, None)
        logger.info(f"[docker] removed {unit_id}")
