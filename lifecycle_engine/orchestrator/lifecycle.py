#lifecycle_engine\orchestrator\lifecycle.py

"""
Customer Lifecycle Manager - public operations on customer stacks.

Every mutating operation runs inside the customer's exclusive section,
so a restart can never interleave with a delete of the same customer.
"""

import logging
import re
import secrets
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import UUID, uuid4

from lifecycle_engine.allocator.ports import PortAllocator
from lifecycle_engine.core.errors import (
    Conflict, CustomerNotFound, InvalidTransition, LifecycleError, PartialFailure,
    StaleRecord, SupervisorUnavailable, ValidationError
)
from lifecycle_engine.core.events import AuditSink, MultiAuditSink
from lifecycle_engine.core.events_model import AuditEvent
from lifecycle_engine.core.locks import KeyedLock
from lifecycle_engine.core.models import (
    SERVICES, Customer, CustomerRequest, CustomerStatus, DeletionReport, infer_mode, utcnow
)
from lifecycle_engine.core.repository import ConfigOverrideRepository, CustomerRepository
from lifecycle_engine.core.state_machine import OPERABLE_STATES, CustomerStateMachine
from lifecycle_engine.core.validation import validate_new_customer
from lifecycle_engine.database.base import DatabaseProvisioner, SeedKind
from lifecycle_engine.environment.renderer import EnvironmentRenderer
from lifecycle_engine.orchestrator.pipeline import ProvisioningPipeline
from lifecycle_engine.proxy.base import ReverseProxyRegistrar
from lifecycle_engine.staging.templates import TemplateStager
from lifecycle_engine.supervisor.base import ProcessSupervisor, UnitState
from lifecycle_engine.supervisor.units import build_unit_definitions, read_unit_logs

logger = logging.getLogger(__name__)


INTERRUPTED_DETAIL = "interrupted"
MAX_LOG_LINES = 5000


def _log_failure(future: Future) -> None:
    error = future.exception()
    if error is not None:
        logger.error(f"Background provisioning failed: {error}", exc_info=error)


def derive_identifier(prefix: str, domain: str) -> str:
    """Database/role name from a domain: `acme.local` -> `db_acme_local`."""
    body = re.sub(r"[^a-z0-9]+", "_", domain.lower()).strip("_")
    return f"{prefix}_{body}"[:63]


class CustomerLifecycleManager:
    def __init__(
        self,
        customers: CustomerRepository,
        overrides: ConfigOverrideRepository,
        pipeline: ProvisioningPipeline,
        allocator: PortAllocator,
        databases: DatabaseProvisioner,
        renderer: EnvironmentRenderer,
        stager: TemplateStager,
        supervisor: ProcessSupervisor,
        proxy: ReverseProxyRegistrar,
        audit: AuditSink | MultiAuditSink,
        reserved_ports: Iterable[int] = (),
        default_template_version: str = "latest",
        provisioning_workers: int = 4,
        lock_timeout: Optional[float] = None,
    ):
        self._customers = customers
        self._overrides = overrides
        self._pipeline = pipeline
        self._allocator = allocator
        self._databases = databases
        self._renderer = renderer
        self._stager = stager
        self._supervisor = supervisor
        self._proxy = proxy
        self._audit = audit if isinstance(audit, MultiAuditSink) else MultiAuditSink([audit])
        self._reserved_ports = frozenset(reserved_ports)
        self._default_template_version = default_template_version
        self._workers = provisioning_workers
        self._lock_timeout = lock_timeout

        self._locks = KeyedLock()
        self._executor: Optional[ThreadPoolExecutor] = None

    # ============================================
    # Helpers
    # ============================================

    def _load(self, customer_id: UUID) -> Customer:
        customer = self._customers.get(customer_id)
        if customer is None:
            raise CustomerNotFound(f"Customer {customer_id} not found")
        return customer

    def _hold(self, customer_id: UUID, timeout: Optional[float] = None):
        return self._locks.hold(customer_id, timeout=self._lock_timeout if timeout is None else timeout)

    def _emit(self, action: str, customer: Customer, actor_id: Optional[str], **metadata: Any) -> None:
        self._audit.emit(AuditEvent.for_customer(action, customer, actor_id, **metadata))

    def _submit(self, fn, *args) -> Future:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._workers, thread_name_prefix="provision"
            )
        future = self._executor.submit(fn, *args)
        future.add_done_callback(_log_failure)
        return future

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def _register_units(self, customer: Customer) -> None:
        """Refresh unit definitions so starts pick up current configuration."""
        rendered = self._renderer.render(customer)
        for definition in build_unit_definitions(
            customer, self._renderer.customer_dir(customer), rendered
        ):
            self._supervisor.register(definition)

    # ============================================
    # Create / Provision
    # ============================================

    def create(self, request: CustomerRequest, actor_id: Optional[str] = None, wait: bool = True) -> Customer:
        """
        Register a customer and provision it.

        With `wait` the call blocks until the pipeline reaches RUNNING or
        ERROR and returns the final record. Without it the record is
        returned in PENDING and provisioning continues in the background.
        """
        validate_new_customer(request, self._reserved_ports)

        if self._customers.get_by_domain(request.domain) is not None:
            raise Conflict(f"Domain {request.domain} is already in use")

        customer = self._build(request)
        self._customers.create(customer)
        logger.info(f"[{customer.domain}] registered as {customer.customer_id} ({customer.mode.value})")
        self._emit("create", customer, actor_id, mode=customer.mode.value, partner_id=customer.partner_id)

        if not wait:
            self._submit(self._provision, customer.customer_id)
            return customer
        return self._provision(customer.customer_id)

    def _build(self, request: CustomerRequest) -> Customer:
        domain = request.domain
        version = request.template_version
        if not version or version == "latest":
            version = self._default_template_version

        return Customer(
            customer_id=uuid4(),
            domain=domain,
            mode=request.mode or infer_mode(domain),
            partner_id=request.partner_id,
            ports=request.ports,
            db_name=request.db_name or derive_identifier("db", domain),
            app_db_user=request.app_db_user or derive_identifier("u", domain),
            app_db_password=request.app_db_password or secrets.token_urlsafe(24),
            redis_host=request.redis_host,
            redis_port=request.redis_port,
            redis_password=request.redis_password,
            template_version=version,
            store_name=request.store_name,
            demo_pack=request.demo_pack,
        )

    def _provision(self, customer_id: UUID) -> Customer:
        with self._hold(customer_id, timeout=-1):
            customer = self._load(customer_id)
            if customer.status != CustomerStatus.PENDING:
                logger.info(f"[{customer.domain}] no longer PENDING, skipping provisioning")
                return customer
            return self._pipeline.run(customer)

    def retry(self, customer_id: UUID, actor_id: Optional[str] = None, wait: bool = True) -> Customer:
        """Re-enter the pipeline at the recorded failed step."""
        with self._hold(customer_id):
            customer = self._load(customer_id)
            CustomerStateMachine.require(customer, {CustomerStatus.ERROR}, "retry")
            failed_step = customer.failed_step
            CustomerStateMachine.transition(customer, CustomerStatus.PENDING)
            self._customers.update(customer)
            self._emit("retry", customer, actor_id, failed_step=failed_step)

        if not wait:
            self._submit(self._provision, customer_id)
            return customer
        return self._provision(customer_id)

    def cancel(self, customer_id: UUID, actor_id: Optional[str] = None) -> bool:
        """
        Signal an in-flight or queued run to stop at the next step boundary.

        Does not take the customer's exclusive section, which the run holds.
        """
        customer = self._load(customer_id)
        CustomerStateMachine.require(
            customer, {CustomerStatus.PENDING, CustomerStatus.PROVISIONING}, "cancel"
        )
        in_flight = self._pipeline.cancel(
            customer_id, queued=customer.status == CustomerStatus.PENDING
        )
        self._emit("cancel", customer, actor_id, in_flight=in_flight)
        return in_flight

    def recover_interrupted(self) -> List[UUID]:
        """
        Move customers left in PROVISIONING by a dead process to ERROR,
        so they can be retried from the step they were in.

        Only the process that runs provisioning may call this, before it
        accepts work. A run that still writes the record wins: the
        version check rejects the recovery write and the customer is
        skipped.
        """
        recovered = []
        for customer in self._customers.list_by_status(CustomerStatus.PROVISIONING):
            if self._pipeline.is_running(customer.customer_id):
                continue
            with self._hold(customer.customer_id):
                customer = self._load(customer.customer_id)
                if customer.status != CustomerStatus.PROVISIONING:
                    continue
                step = ProvisioningPipeline.last_started_step(customer)
                CustomerStateMachine.transition(customer, CustomerStatus.ERROR)
                customer.failed_step = step
                customer.error_detail = INTERRUPTED_DETAIL
                try:
                    self._customers.update(customer)
                except StaleRecord as e:
                    logger.info(f"[{customer.domain}] still being provisioned elsewhere: {e}")
                    continue
                recovered.append(customer.customer_id)
                logger.warning(f"[{customer.domain}] interrupted during '{step}', moved to ERROR")
        return recovered

    # ============================================
    # Read
    # ============================================

    def fetch(self, customer_id: UUID) -> Customer:
        return self._load(customer_id)

    def get(self, customer_id: UUID, include_secrets: bool = False) -> Dict[str, Any]:
        return self._load(customer_id).to_view(include_secrets=include_secrets)

    def list(self, partner_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [c.to_view() for c in self._customers.list(partner_id=partner_id)]

    # ============================================
    # Start / Stop / Restart
    # ============================================

    def start(self, customer_id: UUID, actor_id: Optional[str] = None) -> Customer:
        with self._hold(customer_id):
            customer = self._load(customer_id)
            CustomerStateMachine.require(customer, OPERABLE_STATES, "start")

            self._register_units(customer)
            self._control(customer, "start", self._supervisor.start)

            CustomerStateMachine.transition(customer, CustomerStatus.RUNNING)
            self._customers.update(customer)
            self._emit("start", customer, actor_id)
            logger.info(f"[{customer.domain}] started")
            return customer

    def stop(self, customer_id: UUID, actor_id: Optional[str] = None) -> Customer:
        with self._hold(customer_id):
            customer = self._load(customer_id)
            CustomerStateMachine.require(customer, OPERABLE_STATES, "stop")

            self._control(customer, "stop", self._supervisor.stop)

            CustomerStateMachine.transition(customer, CustomerStatus.STOPPED)
            self._customers.update(customer)
            self._emit("stop", customer, actor_id)
            logger.info(f"[{customer.domain}] stopped")
            return customer

    def restart(self, customer_id: UUID, actor_id: Optional[str] = None) -> Customer:
        with self._hold(customer_id):
            customer = self._load(customer_id)
            CustomerStateMachine.require(customer, OPERABLE_STATES, "restart")

            self._register_units(customer)
            self._control(customer, "restart", self._supervisor.restart)

            CustomerStateMachine.transition(customer, CustomerStatus.RUNNING)
            self._customers.update(customer)
            self._emit("restart", customer, actor_id)
            logger.info(f"[{customer.domain}] restarted")
            return customer

    def restart_service(
        self,
        customer_id: UUID,
        service: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Customer:
        """
        Restart one service, or all three when `service` is None.

        A single service can only be restarted while the customer is
        RUNNING or ERROR. An ERROR customer returns to RUNNING once every
        unit reports running again.
        """
        if service is not None and service not in SERVICES:
            raise ValidationError(f"Unknown service '{service}'", key="service")

        with self._hold(customer_id):
            customer = self._load(customer_id)
            if service is None:
                CustomerStateMachine.require(customer, OPERABLE_STATES, "restart")
            else:
                CustomerStateMachine.require(
                    customer, {CustomerStatus.RUNNING, CustomerStatus.ERROR}, f"restart {service} of"
                )

            services = [service] if service else list(SERVICES)
            self._register_units(customer)
            self._control(customer, "restart", self._supervisor.restart, services)

            if service is None or (
                customer.status == CustomerStatus.ERROR and self._all_units_running(customer)
            ):
                CustomerStateMachine.transition(customer, CustomerStatus.RUNNING)
                self._customers.update(customer)
            self._emit("restart_service", customer, actor_id, services=services)
            return customer

    def _all_units_running(self, customer: Customer) -> bool:
        try:
            return all(
                self._supervisor.status(customer.unit_id(s)).running for s in SERVICES
            )
        except SupervisorUnavailable as e:
            logger.warning(f"[{customer.domain}] supervisor unavailable: {e}")
            return False

    def _control(self, customer: Customer, action: str, call, services: Iterable[str] = SERVICES) -> None:
        """
        Apply a supervisor call to each unit.

        An unreachable supervisor leaves the status untouched. Any other
        failure puts the customer into ERROR before it propagates.
        """
        for service in services:
            unit_id = customer.unit_id(service)
            try:
                call(unit_id)
            except SupervisorUnavailable:
                raise
            except LifecycleError as e:
                CustomerStateMachine.transition(customer, CustomerStatus.ERROR)
                customer.error_detail = f"{action} {service} failed: {e}"
                self._customers.update(customer)
                raise

    # ============================================
    # Delete
    # ============================================

    def soft_delete(self, customer_id: UUID, actor_id: Optional[str] = None) -> Customer:
        """Mark DELETED in the registry only. Files, database and units stay."""
        with self._hold(customer_id):
            customer = self._load(customer_id)
            CustomerStateMachine.transition(customer, CustomerStatus.DELETED)
            self._customers.update(customer)
            self._emit("soft_delete", customer, actor_id)
            logger.info(f"[{customer.domain}] soft deleted")
            return customer

    def hard_delete(self, customer_id: UUID, actor_id: Optional[str] = None) -> DeletionReport:
        """
        Remove every physical resource, then mark DELETED.

        Each sub-operation runs even if an earlier one failed. Failures are
        collected into the report, raised as PartialFailure at the end.

        A soft-deleted record can still be purged, unless a newer customer
        has taken over its domain or database.
        """
        with self._hold(customer_id):
            customer = self._load(customer_id)
            if customer.status == CustomerStatus.PROVISIONING:
                raise InvalidTransition(
                    f"Cannot delete {customer.domain} while PROVISIONING, cancel it first"
                )
            if customer.status == CustomerStatus.DELETED:
                self._assert_unclaimed(customer)

            if customer.status in OPERABLE_STATES:
                CustomerStateMachine.transition(customer, CustomerStatus.DELETING)
                self._customers.update(customer)

            report = DeletionReport(customer_id=customer.customer_id, domain=customer.domain)
            logger.info(f"[{customer.domain}] hard delete started")

            self._attempt(report, "stop_services", lambda: [
                self._supervisor.remove(unit_id) for unit_id in customer.unit_ids()
            ])
            if customer.is_local:
                report.record("remove_proxy", True, "local mode")
            else:
                self._attempt(report, "remove_proxy", lambda: self._proxy.unregister(customer.domain))
            self._attempt(report, "drop_database", lambda: self._databases.drop_database(
                customer.db_name, customer.app_db_user
            ))
            self._attempt(report, "remove_files", lambda: self._stager.remove(customer))
            self._attempt(report, "delete_config", lambda: self._overrides.delete_all(customer.customer_id))
            if customer.ports is not None:
                self._attempt(report, "release_ports", lambda: self._allocator.release(customer.ports))

            def mark_deleted():
                if customer.status != CustomerStatus.DELETED:
                    CustomerStateMachine.transition(customer, CustomerStatus.DELETED)
                    self._customers.update(customer)

            self._attempt(report, "mark_deleted", mark_deleted)
            self._pipeline.forget(customer.customer_id)

            self._emit("hard_delete", customer, actor_id, report=report.to_dict())

            if not report.ok:
                logger.warning(
                    f"[{customer.domain}] hard delete incomplete, manual cleanup needed: "
                    f"{[(r.name, r.detail) for r in report.failures]}"
                )
                raise PartialFailure(report)

            logger.info(f"[{customer.domain}] hard delete complete")
            return report

    def _assert_unclaimed(self, customer: Customer) -> None:
        # Units, files and proxy routes are keyed by domain
        for other in self._customers.list():
            if other.customer_id == customer.customer_id:
                continue
            if other.domain == customer.domain or other.db_name == customer.db_name:
                raise Conflict(
                    f"Resources of deleted {customer.domain} now belong to {other.customer_id}"
                )

    @staticmethod
    def _attempt(report: DeletionReport, name: str, operation) -> None:
        try:
            operation()
        except Exception as e:
            logger.error(f"[{report.domain}] {name} failed: {e}")
            report.record(name, False, str(e))
            return
        report.record(name, True)

    # ============================================
    # Maintenance
    # ============================================

    def run_migrations(self, customer_id: UUID, actor_id: Optional[str] = None) -> Customer:
        """Apply pending schema migrations to an installed customer."""
        with self._hold(customer_id):
            customer = self._load(customer_id)
            CustomerStateMachine.require(customer, OPERABLE_STATES, "migrate")

            self._databases.run_migrations(customer, self._renderer.service_dir(customer, "backend"))
            self._emit("migrate", customer, actor_id)
            logger.info(f"[{customer.domain}] migrations applied")
            return customer

    def seed(
        self,
        customer_id: UUID,
        kind: SeedKind | str = SeedKind.ESSENTIAL,
        actor_id: Optional[str] = None,
    ) -> Customer:
        try:
            kind = SeedKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown seed kind '{kind}'", key="kind")

        with self._hold(customer_id):
            customer = self._load(customer_id)
            CustomerStateMachine.require(customer, OPERABLE_STATES, "seed")

            self._databases.seed(customer, kind, self._renderer.service_dir(customer, "backend"))
            self._emit("seed", customer, actor_id, kind=kind.value)
            logger.info(f"[{customer.domain}] {kind.value} seed applied")
            return customer

    def import_demo_pack(self, customer_id: UUID, pack: str, actor_id: Optional[str] = None) -> Customer:
        """
        Replace an installed customer's data with a demo pack.

        The import is all or nothing, so a failure leaves the status as it was.
        """
        if not pack:
            raise ValidationError("No demo pack given", key="pack")

        with self._hold(customer_id):
            customer = self._load(customer_id)
            CustomerStateMachine.require(customer, OPERABLE_STATES, "import demo data into")

            backend = self._renderer.service_dir(customer, "backend")
            self._databases.import_demo_pack(
                customer, self._pipeline.demo_pack_path(pack), backend / "uploads"
            )
            customer.demo_pack = pack
            self._customers.update(customer)
            self._emit("import_demo", customer, actor_id, pack=pack)
            logger.info(f"[{customer.domain}] demo pack {pack} imported")
            return customer

    def logs(self, customer_id: UUID, service: str = "backend", lines: int = 100) -> Dict[str, Any]:
        """
        Recent output of one service. Read from the supervisor where it
        keeps output itself, otherwise from the unit's log files.
        """
        if service not in SERVICES:
            raise ValidationError(f"Unknown service '{service}'", key="service")
        if not 1 <= lines <= MAX_LOG_LINES:
            raise ValidationError(f"lines must be between 1 and {MAX_LOG_LINES}", key="lines")

        customer = self._load(customer_id)
        unit_id = customer.unit_id(service)
        result: Dict[str, Any] = {"service": service, "unit_id": unit_id}

        try:
            output = self._supervisor.logs(unit_id, lines)
        except SupervisorUnavailable as e:
            logger.warning(f"[{customer.domain}] supervisor unavailable, reading log files: {e}")
            output = None

        if output is not None:
            result.update(source="supervisor", out=output, error=None)
        else:
            files = read_unit_logs(self._renderer.customer_dir(customer), service, lines)
            result.update(source="files", **files)
        return result

    # ============================================
    # Configuration
    # ============================================

    def update_config(
        self,
        customer_id: UUID,
        changes: Mapping[str, Mapping[str, Any]],
        actor_id: Optional[str] = None,
    ) -> Dict[str, List[str]]:
        """
        Save per-service overrides, keyed `{service: {KEY: value}}`.

        All services are validated before anything is saved. Running
        processes pick the values up on their next restart.
        """
        if not isinstance(changes, Mapping) or not changes:
            raise ValidationError("No configuration changes given")

        with self._hold(customer_id):
            customer = self._load(customer_id)
            if customer.status in (CustomerStatus.DELETING, CustomerStatus.DELETED):
                raise InvalidTransition(
                    f"Cannot change configuration of {customer.domain} while {customer.status.value}"
                )

            validated = {
                service: self._renderer.validate_overrides(service, values)
                for service, values in changes.items()
            }
            for service, values in validated.items():
                self._renderer.apply_overrides(customer, service, values)

            changed = {service: sorted(values) for service, values in validated.items()}
            self._emit("config_change", customer, actor_id, keys=changed)
            return changed

    def get_config(self, customer_id: UUID) -> Dict[str, Dict[str, str]]:
        return self._renderer.get_config(self._load(customer_id))

    # ============================================
    # Health
    # ============================================

    def check_health(self, customer_id: UUID) -> Optional[Dict[str, str]]:
        """
        Poll the supervisor for a RUNNING customer and record the outcome.

        Returns per-service states, or None if the customer was busy or the
        supervisor could not be reached.
        """
        try:
            with self._hold(customer_id, timeout=0):
                customer = self._load(customer_id)
                if customer.status != CustomerStatus.RUNNING:
                    return None

                try:
                    states = {
                        service: self._supervisor.status(customer.unit_id(service)).state
                        for service in SERVICES
                    }
                except SupervisorUnavailable as e:
                    logger.warning(f"[{customer.domain}] supervisor unavailable: {e}")
                    return None

                customer.last_health_check_at = utcnow()
                down = [s for s, state in states.items() if state in (UnitState.CRASHED, UnitState.MISSING)]
                if down:
                    CustomerStateMachine.transition(customer, CustomerStatus.ERROR)
                    customer.error_detail = ", ".join(f"{s} crashed" for s in down)
                    logger.warning(f"[{customer.domain}] {customer.error_detail}")
                self._customers.update(customer)
                return {service: state.value for service, state in states.items()}
        except Conflict:
            # Busy here, or written by another process since it was read
            logger.debug(f"{customer_id} busy or changed, health check skipped")
            return None
