#tests\test_lifecycle.py

"""Test customer lifecycle manager scenarios."""

import threading
from uuid import uuid4

import pytest

from lifecycle_engine.core.errors import (
    Conflict, CustomerNotFound, InvalidTransition, PartialFailure, StaleRecord, StepFailed,
    SupervisorUnavailable, ValidationError
)
from lifecycle_engine.core.models import SERVICES, CustomerRequest, CustomerStatus, ServicePorts
from lifecycle_engine.database.base import SeedKind
from lifecycle_engine.orchestrator.lifecycle import (
    INTERRUPTED_DETAIL, CustomerLifecycleManager, derive_identifier
)
from lifecycle_engine.orchestrator.pipeline import ProvisioningPipeline
from lifecycle_engine.supervisor.base import UnitState


@pytest.fixture
def other_manager(repository, overrides, allocator, databases, renderer, stager, supervisor,
                  proxy, health, audit):
    """A second process on the same registry and hosts, with its own locks and runs."""
    pipeline = ProvisioningPipeline(
        customers=repository, allocator=allocator, databases=databases, renderer=renderer,
        stager=stager, supervisor=supervisor, proxy=proxy, health=health,
    )
    manager = CustomerLifecycleManager(
        customers=repository, overrides=overrides, pipeline=pipeline, allocator=allocator,
        databases=databases, renderer=renderer, stager=stager, supervisor=supervisor,
        proxy=proxy, audit=audit, default_template_version="2.4.0", lock_timeout=5,
    )
    yield manager
    manager.shutdown()


class TestCreate:
    """Test registration and provisioning."""

    def test_acme_local_full_lifecycle(self, manager, repository, databases, supervisor, stager, audit):
        """Test create, stop, start, hard delete and port reuse of a local customer."""
        customer = manager.create(CustomerRequest(domain="acme.local"), actor_id="ops")

        assert customer.status == CustomerStatus.RUNNING
        assert customer.ports == ServicePorts(4000, 4001, 4002)
        assert customer.db_name == "db_acme_local"
        assert customer.template_version == "2.4.0"
        assert "db_acme_local" in databases.databases

        stopped = manager.stop(customer.customer_id)
        assert stopped.status == CustomerStatus.STOPPED
        assert supervisor.states["acme.local-backend"] == UnitState.STOPPED

        started = manager.start(customer.customer_id)
        assert started.status == CustomerStatus.RUNNING
        assert supervisor.states["acme.local-store"] == UnitState.RUNNING

        report = manager.hard_delete(customer.customer_id, actor_id="ops")
        assert report.ok
        assert [r.name for r in report.results] == [
            "stop_services", "remove_proxy", "drop_database", "remove_files",
            "delete_config", "release_ports", "mark_deleted",
        ]
        assert repository.get(customer.customer_id).status == CustomerStatus.DELETED
        assert databases.databases == {}
        assert supervisor.definitions == {}
        assert stager.removed == ["acme.local"]

        again = manager.create(CustomerRequest(domain="acme.local"))
        assert again.customer_id != customer.customer_id
        assert again.ports == ServicePorts(4000, 4001, 4002)

        assert audit.actions()[:4] == [
            "customer.create", "customer.stop", "customer.start", "customer.hard_delete",
        ]
        assert audit.events[0].actor_id == "ops"

    def test_second_customer_gets_next_triple(self, manager):
        """Test customers never share ports."""
        manager.create(CustomerRequest(domain="acme.local"))
        second = manager.create(CustomerRequest(domain="beta.local"))

        assert second.ports == ServicePorts(4010, 4011, 4012)

    def test_duplicate_domain(self, manager):
        """Test an active domain cannot be registered twice."""
        manager.create(CustomerRequest(domain="acme.local"))

        with pytest.raises(Conflict):
            manager.create(CustomerRequest(domain="ACME.local"))

    def test_concurrent_create_same_domain(self, manager):
        """Test two parallel creates of one domain yield exactly one Conflict."""
        barrier = threading.Barrier(2)
        outcomes = []

        def create():
            barrier.wait()
            try:
                outcomes.append(manager.create(CustomerRequest(domain="foo.test")))
            except Conflict as e:
                outcomes.append(e)

        threads = [threading.Thread(target=create) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        conflicts = [o for o in outcomes if isinstance(o, Conflict)]
        created = [o for o in outcomes if not isinstance(o, Conflict)]
        assert len(conflicts) == 1
        assert len(created) == 1
        assert created[0].status == CustomerStatus.RUNNING

    def test_invalid_request_mutates_nothing(self, manager, repository):
        """Test validation failures leave the registry empty."""
        with pytest.raises(ValidationError):
            manager.create(CustomerRequest(domain="not a domain"))

        assert list(repository.list(include_deleted=True)) == []

    def test_failed_create_then_retry(self, manager, databases):
        """Test retry resumes at the failed step with the same ports."""
        databases.fail("run_migrations", "migration 0042 failed")

        customer = manager.create(CustomerRequest(domain="acme.local"))
        assert customer.status == CustomerStatus.ERROR
        assert customer.failed_step == "migrate_database"

        databases.heal()
        retried = manager.retry(customer.customer_id)

        assert retried.status == CustomerStatus.RUNNING
        assert retried.ports == customer.ports
        names = [h["step_name"] for h in retried.step_history]
        assert names.count("allocate_ports") == 1
        assert names.count("migrate_database") == 2

    def test_retry_requires_error(self, manager):
        """Test retry is only for failed customers."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        with pytest.raises(InvalidTransition):
            manager.retry(customer.customer_id)

    def test_background_create(self, manager):
        """Test wait=False returns PENDING and finishes asynchronously."""
        customer = manager.create(CustomerRequest(domain="acme.local"), wait=False)
        assert customer.status == CustomerStatus.PENDING

        manager.shutdown(wait=True)

        assert manager.fetch(customer.customer_id).status == CustomerStatus.RUNNING

    def test_derive_identifier(self):
        """Test database names are derived from the domain."""
        assert derive_identifier("db", "shop.example-store.com") == "db_shop_example_store_com"


class TestCancelAndRecovery:
    """Test cancellation and crash recovery."""

    def test_cancel_pending(self, manager, repository, make_customer, audit):
        """Test cancelling a queued customer makes its run stop at once."""
        customer = make_customer(ports=None)
        repository.create(customer)

        assert manager.cancel(customer.customer_id, actor_id="ops") is False
        result = manager._provision(customer.customer_id)

        assert result.status == CustomerStatus.ERROR
        assert result.error_detail == "cancelled"
        assert audit.actions() == ["customer.cancel"]

    def test_cancel_running_rejected(self, manager):
        """Test a finished customer cannot be cancelled."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        with pytest.raises(InvalidTransition):
            manager.cancel(customer.customer_id)

    def test_recover_interrupted(self, manager, repository, make_customer):
        """Test PROVISIONING leftovers move to ERROR at their last step."""
        customer = make_customer(status=CustomerStatus.PROVISIONING)
        customer.step_history = [
            {"step_name": "validate", "result": "ok"},
            {"step_name": "allocate_ports", "result": "skipped"},
            {"step_name": "provision_database", "result": "ok"},
            {"step_name": "render_config", "result": "ok"},
            {"step_name": "stage_code", "result": None},
        ]
        repository.create(customer)

        assert manager.recover_interrupted() == [customer.customer_id]

        recovered = manager.fetch(customer.customer_id)
        assert recovered.status == CustomerStatus.ERROR
        assert recovered.failed_step == "stage_code"
        assert recovered.error_detail == INTERRUPTED_DETAIL

        retried = manager.retry(customer.customer_id)
        assert retried.status == CustomerStatus.RUNNING


class TestProcessControl:
    """Test start/stop/restart and the health check."""

    def test_restart_single_service(self, manager, supervisor):
        """Test one unit restarts without touching the others."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        manager.restart_service(customer.customer_id, "admin")

        assert supervisor.restarts == {"acme.local-admin": 1}

    def test_restart_unknown_service(self, manager):
        """Test restart_service validates the service name."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        with pytest.raises(ValidationError):
            manager.restart_service(customer.customer_id, "worker")

    def test_stop_failure_marks_error(self, manager, supervisor):
        """Test a supervisor failure puts the customer into ERROR."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        supervisor.fail("stop:acme.local-admin", "pm2 exited 1")

        with pytest.raises(StepFailed):
            manager.stop(customer.customer_id)

        stored = manager.fetch(customer.customer_id)
        assert stored.status == CustomerStatus.ERROR
        assert "stop admin failed" in stored.error_detail

    def test_supervisor_unavailable_keeps_status(self, manager, supervisor):
        """Test an unreachable supervisor never changes customer status."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        supervisor.unavailable = True

        with pytest.raises(SupervisorUnavailable):
            manager.stop(customer.customer_id)
        assert manager.check_health(customer.customer_id) is None

        assert manager.fetch(customer.customer_id).status == CustomerStatus.RUNNING

    def test_health_check_detects_crash(self, manager, supervisor):
        """Test a crashed unit moves the customer to ERROR."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        supervisor.crash("acme.local-store")

        states = manager.check_health(customer.customer_id)

        assert states["store"] == "crashed"
        stored = manager.fetch(customer.customer_id)
        assert stored.status == CustomerStatus.ERROR
        assert stored.error_detail == "store crashed"
        assert stored.last_health_check_at is not None

    def test_health_check_all_running(self, manager):
        """Test a healthy customer stays RUNNING."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        states = manager.check_health(customer.customer_id)

        assert set(states.values()) == {"running"}
        assert manager.fetch(customer.customer_id).status == CustomerStatus.RUNNING

    def test_start_from_error_recovers(self, manager, supervisor):
        """Test start brings an ERROR customer back to RUNNING."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        supervisor.crash("acme.local-store")
        manager.check_health(customer.customer_id)

        started = manager.start(customer.customer_id)

        assert started.status == CustomerStatus.RUNNING
        assert started.error_detail is None

    def test_unknown_customer(self, manager):
        """Test operations on unknown ids raise CustomerNotFound."""
        with pytest.raises(CustomerNotFound):
            manager.start(uuid4())

    def test_restart_single_service_while_stopped_rejected(self, manager, supervisor):
        """Test one service cannot be brought up behind a STOPPED record."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        manager.stop(customer.customer_id)

        with pytest.raises(InvalidTransition):
            manager.restart_service(customer.customer_id, "backend")

        assert supervisor.restarts == {}
        assert supervisor.states["acme.local-backend"] == UnitState.STOPPED
        assert manager.fetch(customer.customer_id).status == CustomerStatus.STOPPED

    def test_restart_crashed_service_recovers(self, manager, supervisor):
        """Test restarting the only crashed unit brings ERROR back to RUNNING."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        supervisor.crash("acme.local-store")
        manager.check_health(customer.customer_id)

        restarted = manager.restart_service(customer.customer_id, "store")

        assert restarted.status == CustomerStatus.RUNNING
        assert restarted.error_detail is None

    def test_restart_one_of_two_crashed_stays_error(self, manager, supervisor):
        """Test ERROR is kept while another unit is still down."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        supervisor.crash("acme.local-store")
        supervisor.crash("acme.local-admin")
        manager.check_health(customer.customer_id)

        restarted = manager.restart_service(customer.customer_id, "store")

        assert restarted.status == CustomerStatus.ERROR


class TestDelete:
    """Test soft and hard delete."""

    def test_soft_delete_keeps_resources(self, manager, databases, stager):
        """Test soft delete only flips the registry record."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        deleted = manager.soft_delete(customer.customer_id)

        assert deleted.status == CustomerStatus.DELETED
        assert "db_acme_local" in databases.databases
        assert stager.removed == []

    def test_partial_failure_still_deleted(self, manager, databases, stager):
        """Test a failing sub-step is reported while the rest still run."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        databases.fail("drop_database", "connection refused")

        with pytest.raises(PartialFailure) as exc:
            manager.hard_delete(customer.customer_id)

        report = exc.value.report
        assert [r.name for r in report.failures] == ["drop_database"]
        assert stager.removed == ["acme.local"]
        assert manager.fetch(customer.customer_id).status == CustomerStatus.DELETED

    def test_hard_delete_production_unregisters_proxy(self, manager, proxy):
        """Test production routes are removed."""
        customer = manager.create(CustomerRequest(domain="shop.example.com"))
        assert "shop.example.com" in proxy.sites

        manager.hard_delete(customer.customer_id)

        assert proxy.sites == {}

    def test_hard_delete_while_provisioning_rejected(self, manager, repository, make_customer):
        """Test a running pipeline must be cancelled first."""
        customer = make_customer(status=CustomerStatus.PROVISIONING)
        repository.create(customer)

        with pytest.raises(InvalidTransition):
            manager.hard_delete(customer.customer_id)

    def test_deleted_customer_cannot_start(self, manager):
        """Test DELETED is terminal for process control."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        manager.soft_delete(customer.customer_id)

        with pytest.raises(InvalidTransition):
            manager.start(customer.customer_id)

    def test_hard_delete_after_stop_releases_ports(self, manager, allocator, supervisor):
        """Test a stopped customer is fully removed and its triple reused."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        manager.stop(customer.customer_id)

        report = manager.hard_delete(customer.customer_id)

        assert report.ok
        assert supervisor.definitions == {}
        assert allocator.allocate() == ServicePorts(4000, 4001, 4002)

    def test_hard_delete_after_soft_delete(self, manager, databases, stager):
        """Test a soft-deleted record can still have its resources purged."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        manager.soft_delete(customer.customer_id)

        report = manager.hard_delete(customer.customer_id)

        assert report.ok
        assert databases.databases == {}
        assert stager.removed == ["acme.local"]

    def test_hard_delete_of_reclaimed_record_rejected(self, manager, databases, supervisor, stager):
        """Test purging an old record never touches the customer that reused its domain."""
        old = manager.create(CustomerRequest(domain="acme.local"))
        manager.soft_delete(old.customer_id)
        new = manager.create(CustomerRequest(domain="acme.local"))
        assert new.status == CustomerStatus.RUNNING

        with pytest.raises(Conflict):
            manager.hard_delete(old.customer_id)

        assert "db_acme_local" in databases.databases
        assert supervisor.states["acme.local-backend"] == UnitState.RUNNING
        assert stager.removed == []
        assert manager.fetch(new.customer_id).status == CustomerStatus.RUNNING

    def test_hard_delete_drops_queued_cancel(self, manager, pipeline, repository, make_customer):
        """Test a cancel for a run that never started does not outlive the customer."""
        customer = make_customer(ports=None)
        repository.create(customer)
        manager.cancel(customer.customer_id)

        manager.hard_delete(customer.customer_id)

        assert pipeline._cancel_events == {}
        assert manager.fetch(customer.customer_id).status == CustomerStatus.DELETED


class TestSharedRegistry:
    """Test two managers writing one registry, as the API and monitor processes do."""

    def test_stale_health_write_does_not_revert_stop(self, manager, other_manager, supervisor,
                                                     monkeypatch):
        """Test a health check that read RUNNING cannot overwrite a newer stop."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        poll = supervisor.status
        stopped = []

        def status_racing_stop(unit_id):
            if not stopped:
                stopped.append(unit_id)
                other_manager.stop(customer.customer_id)
            return poll(unit_id)

        monkeypatch.setattr(supervisor, "status", status_racing_stop)

        assert manager.check_health(customer.customer_id) is None
        assert manager.fetch(customer.customer_id).status == CustomerStatus.STOPPED

    def test_recovery_elsewhere_ends_live_run(self, manager, other_manager, stager, databases,
                                              monkeypatch):
        """Test a run whose record was recovered by another process stops writing."""
        recovered = []
        stage = stager.stage

        def stage_then_recover(customer, services=SERVICES):
            root = stage(customer, services)
            recovered.extend(other_manager.recover_interrupted())
            return root

        monkeypatch.setattr(stager, "stage", stage_then_recover)

        customer = manager.create(CustomerRequest(domain="acme.local"))

        assert recovered == [customer.customer_id]
        assert customer.status == CustomerStatus.ERROR
        assert customer.failed_step == "stage_code"
        assert customer.error_detail == INTERRUPTED_DETAIL
        assert databases.migrated == []

        monkeypatch.undo()
        assert manager.retry(customer.customer_id).status == CustomerStatus.RUNNING

    def test_stale_copy_rejected(self, manager, repository):
        """Test a write based on an outdated read raises StaleRecord."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        stale = repository.get(customer.customer_id)
        manager.stop(customer.customer_id)

        stale.error_detail = "overwritten"
        with pytest.raises(StaleRecord):
            repository.update(stale)

        stored = repository.get(customer.customer_id)
        assert stored.status == CustomerStatus.STOPPED
        assert stored.error_detail is None


class TestMaintenance:
    """Test on-demand database work and logs for installed customers."""

    def test_run_migrations(self, manager, databases, audit):
        """Test migrations run again for an installed customer and are audited."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        manager.run_migrations(customer.customer_id, actor_id="ops")

        assert databases.migrated == ["db_acme_local", "db_acme_local"]
        assert audit.actions()[-1] == "customer.migrate"
        assert audit.events[-1].actor_id == "ops"

    def test_seed_demo(self, manager, databases, audit):
        """Test the demo seed can be applied on request."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        manager.seed(customer.customer_id, "demo")

        assert databases.seeded[-1] == ("db_acme_local", SeedKind.DEMO)
        assert audit.events[-1].metadata["kind"] == "demo"

    def test_seed_unknown_kind(self, manager):
        """Test seed kinds are validated."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        with pytest.raises(ValidationError):
            manager.seed(customer.customer_id, "everything")

    def test_import_demo_pack(self, manager, databases, audit):
        """Test a demo pack import is recorded on the customer."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        updated = manager.import_demo_pack(customer.customer_id, "/packs/fashion.zip")

        assert databases.imported == [("db_acme_local", "fashion.zip")]
        assert manager.fetch(customer.customer_id).demo_pack == "/packs/fashion.zip"
        assert updated.status == CustomerStatus.RUNNING
        assert audit.actions()[-1] == "customer.import_demo"

    def test_failed_import_keeps_status(self, manager, databases):
        """Test a rejected import leaves the customer as it was."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        databases.fail("import_demo_pack", "no .sql dump in demo pack")

        with pytest.raises(StepFailed):
            manager.import_demo_pack(customer.customer_id, "/packs/broken.zip")

        stored = manager.fetch(customer.customer_id)
        assert stored.status == CustomerStatus.RUNNING
        assert stored.demo_pack is None

    def test_maintenance_requires_installed_customer(self, manager, repository, make_customer):
        """Test database work waits until provisioning has finished."""
        customer = make_customer()
        repository.create(customer)

        with pytest.raises(InvalidTransition):
            manager.run_migrations(customer.customer_id)

    def test_logs_from_files(self, manager, renderer):
        """Test logs fall back to the tail of the unit's log files."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        logs = renderer.customer_dir(customer) / "logs"
        logs.mkdir(parents=True, exist_ok=True)
        (logs / "backend-out.log").write_text("one\ntwo\nthree\n")

        result = manager.logs(customer.customer_id, "backend", lines=2)

        assert result == {
            "service": "backend",
            "unit_id": "acme.local-backend",
            "source": "files",
            "out": "two\nthree\n",
            "error": None,
        }

    def test_logs_from_supervisor(self, manager, supervisor, monkeypatch):
        """Test supervisor-kept output is preferred."""
        customer = manager.create(CustomerRequest(domain="acme.local"))
        monkeypatch.setattr(supervisor, "logs", lambda unit_id, lines: f"{unit_id} x{lines}")

        result = manager.logs(customer.customer_id, "store", lines=5)

        assert result["source"] == "supervisor"
        assert result["out"] == "acme.local-store x5"

    @pytest.mark.parametrize("service,lines", [("worker", 10), ("backend", 0), ("backend", 10000)])
    def test_logs_validation(self, manager, service, lines):
        """Test service names and line counts are checked."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        with pytest.raises(ValidationError):
            manager.logs(customer.customer_id, service, lines=lines)


class TestConfiguration:
    """Test configuration updates."""

    def test_update_allowed_key(self, manager, renderer, audit):
        """Test an allowed override reaches the env file."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        changed = manager.update_config(
            customer.customer_id, {"backend": {"SMTP_HOST": "mail.acme.test"}}, actor_id="ops"
        )

        assert changed == {"backend": ["SMTP_HOST"]}
        env = renderer.env_path(customer, "backend").read_text()
        assert "SMTP_HOST=mail.acme.test" in env
        assert audit.events[-1].metadata["keys"] == {"backend": ["SMTP_HOST"]}

    def test_update_managed_key_rejected(self, manager, overrides):
        """Test system-owned keys are refused and nothing is saved."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        with pytest.raises(ValidationError) as exc:
            manager.update_config(customer.customer_id, {
                "backend": {"SMTP_HOST": "mail.acme.test"},
                "admin": {"PORT": "5000"},
            })

        assert exc.value.key == "PORT"
        assert overrides.get_overrides(customer.customer_id, "backend") == {}

    def test_update_ports_rejected(self, manager):
        """Test the port triple cannot be changed through config."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        with pytest.raises(ValidationError):
            manager.update_config(customer.customer_id, {"backend": {"ports.backend": 5000}})

    def test_get_config_is_redacted(self, manager):
        """Test the config view masks the database URL."""
        customer = manager.create(CustomerRequest(domain="acme.local"))

        config = manager.get_config(customer.customer_id)

        assert config["backend"]["DATABASE_URL"] == "********"
        assert config["store"]["PORT"] == "4002"

    def test_list_and_get(self, manager):
        """Test listing filters by partner and hides secrets."""
        manager.create(CustomerRequest(domain="acme.local", partner_id="p1"))
        other = manager.create(CustomerRequest(domain="beta.local", partner_id="p2"))

        views = manager.list(partner_id="p2")

        assert [v["domain"] for v in views] == ["beta.local"]
        assert "app_db_password" not in views[0]
        assert "app_db_password" in manager.get(other.customer_id, include_secrets=True)
