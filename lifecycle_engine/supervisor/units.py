#lifecycle_engine\supervisor\units.py

"""Unit definitions for the three services of a customer."""

from collections import deque
from pathlib import Path
from typing import Dict, List, Optional

from lifecycle_engine.core.models import SERVICES, Customer
from lifecycle_engine.supervisor.base import UnitDefinition


def service_command(service: str, port: int) -> List[str]:
    if service == "backend":
        return ["npm", "run", "start:prod"]
    return ["npx", "next", "start", "-p", str(port)]


def build_unit_definitions(
    customer: Customer,
    customer_dir: Path,
    rendered: Dict[str, Dict[str, str]],
) -> List[UnitDefinition]:
    """
    One unit per service, named `<domain>-<service>`.

    Logs go to `<customer_dir>/logs/`.
    """
    logs = Path(customer_dir) / "logs"
    definitions = []

    for service in SERVICES:
        cwd = Path(customer_dir) / service
        port = customer.ports.for_service(service)
        definitions.append(UnitDefinition(
            unit_id=customer.unit_id(service),
            service=service,
            cwd=cwd,
            command=service_command(service, port),
            port=port,
            env={**rendered.get(service, {}), "PORT": str(port)},
            env_file=cwd / ".env",
            out_log=logs / f"{service}-out.log",
            err_log=logs / f"{service}-error.log",
            labels={
                "customer_id": str(customer.customer_id),
                "domain": customer.domain,
                "service": service,
            },
        ))

    return definitions


def tail_file(path: Path, lines: int) -> Optional[str]:
    if not path.is_file():
        return None
    with path.open("r", encoding="utf-8", errors="replace") as f:
        return "".join(deque(f, maxlen=lines))


def read_unit_logs(customer_dir: Path, service: str, lines: int) -> Dict[str, Optional[str]]:
    """Last `lines` of a service's out and error logs. Missing files are None."""
    logs = Path(customer_dir) / "logs"
    return {
        "out": tail_file(logs / f"{service}-out.log", lines),
        "error": tail_file(logs / f"{service}-error.log", lines),
    }
