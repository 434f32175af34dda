#lifecycle_engine\orchestrator\pipeline.py

"""
Provisioning pipeline.

Turns a PENDING customer into a RUNNING one by executing a fixed
sequence of steps. A failed step halts the run and leaves the customer
in ERROR with the step name and detail; nothing already done is rolled
back. Re-running resumes at the failed step.
"""

import logging
from pathlib import Path
from threading import Event, Lock
from typing import Callable, Dict, List, Optional
from uuid import UUID

from lifecycle_engine.allocator.ports import PortAllocator
from lifecycle_engine.core.errors import Cancelled, Conflict, InvalidTransition, StaleRecord, StepFailed
from lifecycle_engine.core.models import (
    Customer, CustomerStatus, ProvisioningStep, ServicePorts, StepResult
)
from lifecycle_engine.core.repository import CustomerRepository
from lifecycle_engine.core.state_machine import CustomerStateMachine
from lifecycle_engine.core.validation import validate_identifier
from lifecycle_engine.database.base import DatabaseProvisioner, SeedKind
from lifecycle_engine.environment.renderer import EnvironmentRenderer
from lifecycle_engine.health_checker.checker import ServiceHealthChecker
from lifecycle_engine.proxy.base import ReverseProxyRegistrar
from lifecycle_engine.staging.templates import TemplateStager
from lifecycle_engine.supervisor.base import ProcessSupervisor
from lifecycle_engine.supervisor.units import build_unit_definitions

logger = logging.getLogger(__name__)


STEPS = (
    "validate",
    "allocate_ports",
    "provision_database",
    "render_config",
    "stage_code",
    "migrate_database",
    "start_services",
    "register_proxy",
    "health_check",
)

CANCELLED_DETAIL = "cancelled"


class ProvisioningPipeline:
    def __init__(
        self,
        customers: CustomerRepository,
        allocator: PortAllocator,
        databases: DatabaseProvisioner,
        renderer: EnvironmentRenderer,
        stager: TemplateStager,
        supervisor: ProcessSupervisor,
        proxy: ReverseProxyRegistrar,
        health: ServiceHealthChecker,
        demo_packs_path: Optional[Path] = None,
    ):
        self._customers = customers
        self._allocator = allocator
        self._databases = databases
        self._renderer = renderer
        self._stager = stager
        self._supervisor = supervisor
        self._proxy = proxy
        self._health = health
        self._demo_packs_path = Path(demo_packs_path) if demo_packs_path else None

        self._steps: Dict[str, Callable[[Customer], StepResult]] = {
            "validate": self._validate,
            "allocate_ports": self._allocate_ports,
            "provision_database": self._provision_database,
            "render_config": self._render_config,
            "stage_code": self._stage_code,
            "migrate_database": self._migrate_database,
            "start_services": self._start_services,
            "register_proxy": self._register_proxy,
            "health_check": self._health_check,
        }

        self._cancel_events: Dict[UUID, Event] = {}
        self._active: set = set()
        self._guard = Lock()

    # ============================================
    # Cancellation
    # ============================================

    def cancel(self, customer_id: UUID, queued: bool = False) -> bool:
        """
        Ask the run for this customer to stop at the next step boundary.
        Returns True if a run is currently in flight.

        With `queued` the request is also kept for a run that has not
        started yet. Otherwise nothing is recorded when no run is active.
        """
        with self._guard:
            in_flight = customer_id in self._active
            if in_flight or queued:
                self._cancel_events.setdefault(customer_id, Event()).set()
            return in_flight

    def forget(self, customer_id: UUID) -> None:
        """Drop a pending cancellation request."""
        with self._guard:
            if customer_id not in self._active:
                self._cancel_events.pop(customer_id, None)

    def is_running(self, customer_id: UUID) -> bool:
        with self._guard:
            return customer_id in self._active

    def _begin(self, customer_id: UUID) -> Event:
        with self._guard:
            if customer_id in self._active:
                raise Conflict(f"Provisioning of {customer_id} is already in progress")
            self._active.add(customer_id)
            return self._cancel_events.setdefault(customer_id, Event())

    def _end(self, customer_id: UUID) -> None:
        with self._guard:
            self._active.discard(customer_id)
            self._cancel_events.pop(customer_id, None)

    # ============================================
    # Run
    # ============================================

    def run(self, customer: Customer) -> Customer:
        """
        Drive `customer` from PENDING to RUNNING or ERROR.

        The caller must hold the customer's exclusive section. Step failures
        are recorded on the customer, not raised.
        """
        if customer.status != CustomerStatus.PENDING:
            raise InvalidTransition(
                f"Cannot provision {customer.domain} while {customer.status.value}"
            )

        # Read before PROVISIONING clears it
        resume_at = customer.failed_step if customer.failed_step in STEPS else STEPS[0]
        start = STEPS.index(resume_at)

        cancel_event = self._begin(customer.customer_id)
        try:
            CustomerStateMachine.transition(customer, CustomerStatus.PROVISIONING)
            self._customers.update(customer)
            logger.info(f"[{customer.domain}] provisioning from step '{resume_at}'")

            try:
                for step_name in STEPS[start:]:
                    if cancel_event.is_set():
                        raise Cancelled(f"cancelled before '{step_name}'")
                    if not self._execute(customer, step_name):
                        return customer
            except Cancelled as e:
                logger.warning(f"[{customer.domain}] {e}")
                return self._fail(customer, step_name, CANCELLED_DETAIL)

            CustomerStateMachine.transition(customer, CustomerStatus.RUNNING)
            self._customers.update(customer)
            logger.info(f"[{customer.domain}] ✅ RUNNING on {customer.ports.as_tuple()}")
            return customer
        except StaleRecord as e:
            # Another process took over the record, e.g. crash recovery
            logger.warning(f"[{customer.domain}] run abandoned: {e}")
            return self._customers.get(customer.customer_id) or customer
        finally:
            self._end(customer.customer_id)

    def _execute(self, customer: Customer, step_name: str) -> bool:
        attempt = 1 + sum(1 for h in customer.step_history if h.get("step_name") == step_name)
        step = ProvisioningStep(step_name=step_name, attempt=attempt)

        # Persist the start so a crash mid-step is attributable
        customer.step_history.append(step.to_dict())
        self._customers.update(customer)

        try:
            result = self._steps[step_name](customer)
        except StaleRecord:
            raise
        except Exception as e:
            detail = e.detail if isinstance(e, StepFailed) else str(e) or type(e).__name__
            logger.error(f"[{customer.domain}] ❌ step '{step_name}' failed: {detail}",
                         exc_info=not isinstance(e, StepFailed))
            step.finish(StepResult.FAILED, detail)
            customer.step_history[-1] = step.to_dict()
            self._fail(customer, step_name, detail)
            return False

        step.finish(result)
        customer.step_history[-1] = step.to_dict()
        self._customers.update(customer)
        logger.info(f"[{customer.domain}] step '{step_name}' {result.value}")
        return True

    def _fail(self, customer: Customer, step_name: str, detail: str) -> Customer:
        CustomerStateMachine.transition(customer, CustomerStatus.ERROR)
        customer.failed_step = step_name
        customer.error_detail = detail
        self._customers.update(customer)
        return customer

    # ============================================
    # Steps
    # ============================================

    def _validate(self, customer: Customer) -> StepResult:
        validate_identifier(customer.db_name, "db_name")
        validate_identifier(customer.app_db_user, "app_db_user")

        owner = self._customers.get_by_domain(customer.domain)
        if owner is not None and owner.customer_id != customer.customer_id:
            raise Conflict(f"Domain {customer.domain} is already in use")

        if customer.ports is not None and not self._allocator.is_available(
            customer.ports, owner=customer.customer_id
        ):
            raise Conflict(f"Ports {customer.ports.as_tuple()} are already in use")

        missing = self._stager.missing_templates(customer.template_version)
        if missing:
            raise StepFailed("validate", f"missing templates: {', '.join(missing)}")
        return StepResult.OK

    def _allocate_ports(self, customer: Customer) -> StepResult:
        if customer.ports is not None:
            return StepResult.SKIPPED

        def persist(ports: ServicePorts) -> None:
            customer.ports = ports
            try:
                self._customers.update(customer)
            except Exception:
                customer.ports = None
                raise

        self._allocator.allocate(persist=persist)
        return StepResult.OK

    def _provision_database(self, customer: Customer) -> StepResult:
        outcome = self._databases.create_database(
            customer.db_name, customer.app_db_user, customer.app_db_password
        )
        logger.info(f"[{customer.domain}] database {customer.db_name}: {outcome.value}")
        return StepResult.OK

    def _render_config(self, customer: Customer) -> StepResult:
        self._renderer.write(customer)
        return StepResult.OK

    def _stage_code(self, customer: Customer) -> StepResult:
        self._stager.stage(customer)
        return StepResult.OK

    def _migrate_database(self, customer: Customer) -> StepResult:
        backend = self._renderer.service_dir(customer, "backend")
        self._databases.run_migrations(customer, backend)
        self._databases.seed(customer, SeedKind.ESSENTIAL, backend)

        if customer.demo_pack:
            self._databases.import_demo_pack(
                customer, self.demo_pack_path(customer.demo_pack), backend / "uploads"
            )
        return StepResult.OK

    def demo_pack_path(self, ref: str) -> Path:
        path = Path(ref)
        if not path.is_absolute() and self._demo_packs_path is not None:
            path = self._demo_packs_path / path
        return path

    def _start_services(self, customer: Customer) -> StepResult:
        rendered = self._renderer.render(customer)
        definitions = build_unit_definitions(
            customer, self._renderer.customer_dir(customer), rendered
        )
        for definition in definitions:
            self._supervisor.register(definition)
        for definition in definitions:
            self._supervisor.start(definition.unit_id)
        return StepResult.OK

    def _register_proxy(self, customer: Customer) -> StepResult:
        if customer.is_local:
            return StepResult.SKIPPED
        self._proxy.register(customer.domain, customer.ports)
        return StepResult.OK

    def _health_check(self, customer: Customer) -> StepResult:
        self._health.wait_until_healthy(customer)
        return StepResult.OK

    # ============================================
    # Introspection
    # ============================================

    @staticmethod
    def last_started_step(customer: Customer) -> Optional[str]:
        for entry in reversed(customer.step_history):
            if entry.get("result") is None:
                return entry.get("step_name")
        if customer.step_history:
            return customer.step_history[-1].get("step_name")
        return None

    @staticmethod
    def steps() -> List[str]:
        return list(STEPS)
