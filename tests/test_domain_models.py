#tests\test_domain_models.py

"""Test domain models, state machine and input validation."""

import pytest
from uuid import uuid4

from lifecycle_engine.core.errors import InvalidTransition, ValidationError
from lifecycle_engine.core.models import (
    Customer, CustomerMode, CustomerRequest, CustomerStatus, DeletionReport,
    ProvisioningStep, ServicePorts, StepResult, infer_mode
)
from lifecycle_engine.core.state_machine import CustomerStateMachine, can_transition
from lifecycle_engine.core.validation import (
    validate_domain, validate_identifier, validate_new_customer, validate_ports
)


class TestCustomerStateMachine:
    """Test allowed and forbidden transitions."""

    @pytest.mark.parametrize("current,target", [
        (CustomerStatus.PENDING, CustomerStatus.PROVISIONING),
        (CustomerStatus.PROVISIONING, CustomerStatus.RUNNING),
        (CustomerStatus.PROVISIONING, CustomerStatus.ERROR),
        (CustomerStatus.RUNNING, CustomerStatus.STOPPED),
        (CustomerStatus.STOPPED, CustomerStatus.RUNNING),
        (CustomerStatus.ERROR, CustomerStatus.PENDING),
        (CustomerStatus.RUNNING, CustomerStatus.DELETING),
        (CustomerStatus.DELETING, CustomerStatus.DELETED),
    ])
    def test_allowed(self, current, target):
        """Test lifecycle edges are permitted."""
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (CustomerStatus.PENDING, CustomerStatus.RUNNING),
        (CustomerStatus.PROVISIONING, CustomerStatus.STOPPED),
        (CustomerStatus.PROVISIONING, CustomerStatus.DELETED),
        (CustomerStatus.DELETED, CustomerStatus.PENDING),
        (CustomerStatus.DELETED, CustomerStatus.RUNNING),
        (CustomerStatus.DELETING, CustomerStatus.RUNNING),
    ])
    def test_forbidden(self, current, target):
        """Test skipping or leaving terminal states is rejected."""
        assert not can_transition(current, target)

    def test_deleted_is_terminal(self, make_customer):
        """Test no transition leaves DELETED."""
        customer = make_customer(status=CustomerStatus.DELETED)

        with pytest.raises(InvalidTransition):
            CustomerStateMachine.transition(customer, CustomerStatus.PENDING)

    def test_transition_to_provisioning_clears_failure(self, make_customer):
        """Test re-entering the pipeline clears the previous error."""
        customer = make_customer(status=CustomerStatus.PENDING)
        customer.failed_step = "stage_code"
        customer.error_detail = "boom"

        CustomerStateMachine.transition(customer, CustomerStatus.PROVISIONING)

        assert customer.failed_step is None
        assert customer.error_detail is None
        assert customer.status == CustomerStatus.PROVISIONING

    def test_transition_to_deleted_stamps_time(self, make_customer):
        """Test DELETED records when it happened."""
        customer = make_customer(status=CustomerStatus.STOPPED)

        CustomerStateMachine.transition(customer, CustomerStatus.DELETED)

        assert customer.deleted_at is not None

    def test_same_status_is_noop(self, make_customer):
        """Test transition to the current status changes nothing."""
        customer = make_customer(status=CustomerStatus.RUNNING)

        CustomerStateMachine.transition(customer, CustomerStatus.RUNNING)

        assert customer.version == 0

    def test_require(self, make_customer):
        """Test require rejects statuses outside the allowed set."""
        customer = make_customer(status=CustomerStatus.PROVISIONING)

        with pytest.raises(InvalidTransition):
            CustomerStateMachine.require(customer, {CustomerStatus.RUNNING}, "stop")


class TestModels:
    """Test value types."""

    @pytest.mark.parametrize("domain,mode", [
        ("acme.local", CustomerMode.LOCAL),
        ("localhost", CustomerMode.LOCAL),
        ("devbox", CustomerMode.LOCAL),
        ("shop.example.com", CustomerMode.PRODUCTION),
        ("foo.test", CustomerMode.PRODUCTION),
    ])
    def test_infer_mode(self, domain, mode):
        """Test pseudo-domains run locally."""
        assert infer_mode(domain) == mode

    def test_unit_ids(self):
        """Test unit names combine domain and service."""
        customer = Customer(customer_id=uuid4(), domain="acme.local")

        assert customer.unit_ids() == ["acme.local-backend", "acme.local-admin", "acme.local-store"]
        assert customer.slug == "acme-local"

    def test_view_hides_secrets(self):
        """Test secrets appear only when explicitly requested."""
        customer = Customer(
            customer_id=uuid4(), domain="acme.local",
            app_db_password="hunter2-hunter2", redis_password="cache-pass",
        )

        assert "app_db_password" not in customer.to_view()
        assert customer.to_view(include_secrets=True)["app_db_password"] == "hunter2-hunter2"

    def test_provisioning_step_round_trip(self):
        """Test step records survive serialization."""
        step = ProvisioningStep(step_name="stage_code", attempt=2)
        step.finish(StepResult.FAILED, "zip missing")

        restored = ProvisioningStep.from_dict(step.to_dict())

        assert restored.step_name == "stage_code"
        assert restored.attempt == 2
        assert restored.result == StepResult.FAILED
        assert restored.error_detail == "zip missing"

    def test_deletion_report(self):
        """Test report aggregates failures."""
        report = DeletionReport(customer_id=uuid4(), domain="acme.local")
        report.record("stop_services", True)
        report.record("drop_database", False, "connection refused")

        assert not report.ok
        assert [r.name for r in report.failures] == ["drop_database"]
        assert report.to_dict()["results"][1]["detail"] == "connection refused"


class TestValidation:
    """Test input validation."""

    def test_domain_is_normalized(self):
        """Test case and trailing dot are dropped."""
        assert validate_domain(" Acme.Local. ") == "acme.local"

    @pytest.mark.parametrize("domain", ["", "-acme.local", "acme..local", "acme_shop.com", "a" * 64 + ".com"])
    def test_invalid_domains(self, domain):
        """Test malformed hostnames are rejected."""
        with pytest.raises(ValidationError) as exc:
            validate_domain(domain)
        assert exc.value.key == "domain"

    def test_identifier(self):
        """Test SQL identifiers must be plain."""
        assert validate_identifier("db_acme_local", "db_name") == "db_acme_local"
        with pytest.raises(ValidationError):
            validate_identifier('db"; DROP', "db_name")
        with pytest.raises(ValidationError):
            validate_identifier("1db", "db_name")

    def test_ports(self):
        """Test pinned ports must be distinct, unprivileged and unreserved."""
        validate_ports(ServicePorts(4000, 4001, 4002))

        with pytest.raises(ValidationError):
            validate_ports(ServicePorts(4000, 4000, 4002))
        with pytest.raises(ValidationError):
            validate_ports(ServicePorts(80, 4001, 4002))
        with pytest.raises(ValidationError):
            validate_ports(ServicePorts(5432, 4001, 4002), reserved={5432})

    def test_new_customer_short_password(self):
        """Test weak database passwords are rejected."""
        request = CustomerRequest(domain="acme.local", app_db_password="short")

        with pytest.raises(ValidationError) as exc:
            validate_new_customer(request)
        assert exc.value.key == "app_db_password"
