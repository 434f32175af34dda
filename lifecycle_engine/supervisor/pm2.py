#lifecycle_engine\supervisor\pm2.py

"""pm2-backed process supervisor, driven through the pm2 CLI."""

import json
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

from lifecycle_engine.core.commands import CommandFailed, run_command
from lifecycle_engine.core.errors import StepFailed, SupervisorUnavailable
from lifecycle_engine.supervisor.base import (
    ProcessSupervisor, UnitDefinition, UnitState, UnitStatus
)

logger = logging.getLogger(__name__)


PM2_STATES = {
    "online": UnitState.RUNNING,
    "launching": UnitState.RUNNING,
    "one-launch-status": UnitState.RUNNING,
    "stopping": UnitState.STOPPED,
    "stopped": UnitState.STOPPED,
    "errored": UnitState.CRASHED,
}

ECOSYSTEM_FILE = "ecosystem.config.json"


def ecosystem_for(definition: UnitDefinition) -> Dict:
    app = {
        "name": definition.unit_id,
        "cwd": str(definition.cwd),
        "script": definition.command[0],
        "args": definition.command[1:],
        "env": {**definition.env, "DOTENV_CONFIG_PATH": ".env"},
        "autorestart": True,
        "max_restarts": 10,
        "merge_logs": True,
        "time": True,
    }
    if definition.out_log:
        app["out_file"] = str(definition.out_log)
    if definition.err_log:
        app["error_file"] = str(definition.err_log)
    return {"apps": [app]}


def parse_jlist(output: str) -> List[UnitStatus]:
    """pm2 may print warnings before the JSON payload."""
    start = output.find("[")
    if start < 0:
        return []
    processes = json.loads(output[start:])

    now_ms = time.time() * 1000
    statuses = []
    for proc in processes:
        env = proc.get("pm2_env", {})
        state = PM2_STATES.get(env.get("status"), UnitState.CRASHED)
        uptime = None
        if state == UnitState.RUNNING and env.get("pm_uptime"):
            uptime = max(0.0, (now_ms - env["pm_uptime"]) / 1000)
        statuses.append(UnitStatus(
            unit_id=proc.get("name"),
            state=state,
            pid=proc.get("pid") or None,
            uptime_seconds=uptime,
            restart_count=env.get("restart_time", 0),
        ))
    return statuses


class Pm2Supervisor(ProcessSupervisor):
    def __init__(self, pm2_bin: str = "pm2", timeout: float = 60):
        self._bin = pm2_bin
        self._timeout = timeout
        self._ecosystems: Dict[str, Path] = {}

    def _pm2(self, *args: str, action: str, unit_id: Optional[str] = None,
             tolerate_missing: bool = False) -> str:
        try:
            return run_command([self._bin, *args], timeout=self._timeout)
        except CommandFailed as e:
            if e.returncode is None:
                raise SupervisorUnavailable(f"pm2 unavailable: {e.output}") from e
            if tolerate_missing and "not found" in e.output.lower():
                logger.debug(f"[pm2] {unit_id} not known, nothing to {action}")
                return ""
            raise StepFailed(f"{action} {unit_id}" if unit_id else action, e.output) from e

    def register(self, definition: UnitDefinition) -> None:
        path = definition.cwd / ECOSYSTEM_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        if definition.out_log:
            definition.out_log.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(ecosystem_for(definition), indent=2), encoding="utf-8")
        self._ecosystems[definition.unit_id] = path
        logger.info(f"[pm2] registered {definition.unit_id}")

    def start(self, unit_id: str) -> None:
        ecosystem = self._ecosystems.get(unit_id)
        target = str(ecosystem) if ecosystem else unit_id
        self._pm2("start", target, "--update-env", action="start", unit_id=unit_id)
        self._pm2("save", "--force", action="save")
        logger.info(f"[pm2] started {unit_id}")

    def stop(self, unit_id: str) -> None:
        self._pm2("stop", unit_id, action="stop", unit_id=unit_id, tolerate_missing=True)
        logger.info(f"[pm2] stopped {unit_id}")

    def restart(self, unit_id: str) -> None:
        self._pm2("restart", unit_id, "--update-env", action="restart", unit_id=unit_id)
        logger.info(f"[pm2] restarted {unit_id}")

    def status(self, unit_id: str) -> UnitStatus:
        for status in self.list():
            if status.unit_id == unit_id:
                return status
        return UnitStatus(unit_id=unit_id, state=UnitState.MISSING)

    def list(self) -> List[UnitStatus]:
        try:
            output = run_command([self._bin, "jlist"], timeout=self._timeout)
        except CommandFailed as e:
            raise SupervisorUnavailable(f"pm2 jlist failed: {e.output}") from e
        try:
            return parse_jlist(output)
        except ValueError as e:
            raise SupervisorUnavailable(f"unreadable pm2 jlist output: {e}") from e

    def remove(self, unit_id: str) -> None:
        self._pm2("delete", unit_id, action="remove", unit_id=unit_id, tolerate_missing=True)
        self._pm2("save", "--force", action="save")
        self._ecosystems.pop(unit_id, None)
        logger.info(f"[pm2] removed {unit_id}")
