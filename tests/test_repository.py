"""Test SQLAlchemy repository implementation (SQLite)."""

import pytest
from uuid import uuid4

from lifecycle_engine.core.errors import Conflict, CustomerNotFound, StaleRecord
from lifecycle_engine.core.models import CustomerStatus, ServicePorts
from lifecycle_engine.core.state_machine import CustomerStateMachine
from lifecycle_engine.infrastructure.memory.repository import InMemoryCustomerRepository
from lifecycle_engine.infrastructure.postgres.repository import (
    PostgresConfigOverrideRepository,
    PostgresCustomerRepository,
)


@pytest.fixture
def sql_repository(sql_session_factory):
    return PostgresCustomerRepository(session_factory=sql_session_factory)


@pytest.fixture
def sql_overrides(sql_session_factory):
    return PostgresConfigOverrideRepository(session_factory=sql_session_factory)


class TestPostgresCustomerRepository:
    """Test repository operations."""

    # -------------------------
    # CREATE TESTS
    # -------------------------

    def test_create_and_get(self, sql_repository, make_customer):
        """Test creating and retrieving a customer."""
        customer = make_customer(partner_id="p1")
        customer.step_history = [{"step_name": "validate", "result": "ok"}]
        sql_repository.create(customer)

        retrieved = sql_repository.get(customer.customer_id)

        assert retrieved is not None
        assert retrieved.domain == "acme.local"
        assert retrieved.ports == ServicePorts(4000, 4001, 4002)
        assert retrieved.status == CustomerStatus.PENDING
        assert retrieved.step_history == [{"step_name": "validate", "result": "ok"}]
        assert retrieved.created_at.tzinfo is not None

    def test_create_duplicate_domain_fails(self, sql_repository, make_customer):
        """Test a second active customer with the same domain is rejected."""
        sql_repository.create(make_customer(ports=(4000, 4001, 4002)))

        with pytest.raises(Conflict):
            sql_repository.create(make_customer(ports=(4010, 4011, 4012)))

    def test_create_overlapping_ports_fails(self, sql_repository, make_customer):
        """Test port overlap across columns is rejected."""
        sql_repository.create(make_customer(domain="acme.local", ports=(4000, 4001, 4002)))

        with pytest.raises(Conflict):
            sql_repository.create(make_customer(domain="beta.local", ports=(4002, 4003, 4004)))

    def test_deleted_customer_releases_domain(self, sql_repository, make_customer):
        """Test uniqueness only binds non-deleted customers."""
        first = make_customer()
        sql_repository.create(first)
        CustomerStateMachine.transition(first, CustomerStatus.DELETED)
        sql_repository.update(first)

        second = make_customer()
        sql_repository.create(second)

        assert sql_repository.get_by_domain("acme.local").customer_id == second.customer_id

    # -------------------------
    # READ TESTS
    # -------------------------

    def test_get_nonexistent(self, sql_repository):
        """Test getting a customer that doesn't exist."""
        assert sql_repository.get(uuid4()) is None

    def test_update(self, sql_repository, make_customer):
        """Test status changes are persisted."""
        customer = make_customer()
        sql_repository.create(customer)

        CustomerStateMachine.transition(customer, CustomerStatus.PROVISIONING)
        customer.step_history.append({"step_name": "validate", "result": None})
        sql_repository.update(customer)

        retrieved = sql_repository.get(customer.customer_id)
        assert retrieved.status == CustomerStatus.PROVISIONING
        assert retrieved.version == 1
        assert len(retrieved.step_history) == 1

    def test_update_advances_version(self, sql_repository, make_customer):
        """Test each write moves the version on, in the row and on the caller's copy."""
        customer = make_customer()
        sql_repository.create(customer)

        sql_repository.update(customer)
        sql_repository.update(customer)

        assert customer.version == 2
        assert sql_repository.get(customer.customer_id).version == 2

    def test_stale_update_rejected(self, sql_repository, make_customer):
        """Test a write from an outdated read changes nothing."""
        customer = make_customer(status=CustomerStatus.RUNNING)
        sql_repository.create(customer)
        first = sql_repository.get(customer.customer_id)
        second = sql_repository.get(customer.customer_id)

        CustomerStateMachine.transition(first, CustomerStatus.STOPPED)
        sql_repository.update(first)

        second.error_detail = "store crashed"
        with pytest.raises(StaleRecord):
            sql_repository.update(second)

        stored = sql_repository.get(customer.customer_id)
        assert stored.status == CustomerStatus.STOPPED
        assert stored.error_detail is None
        assert second.version == 0

    def test_update_unknown_customer(self, sql_repository, make_customer):
        """Test updating a row that was never created."""
        with pytest.raises(CustomerNotFound):
            sql_repository.update(make_customer())

    def test_list_filters(self, sql_repository, make_customer):
        """Test listing by partner and excluding deleted records."""
        sql_repository.create(make_customer(domain="a.local", ports=(4000, 4001, 4002), partner_id="p1"))
        sql_repository.create(make_customer(domain="b.local", ports=(4010, 4011, 4012), partner_id="p2"))
        gone = make_customer(domain="c.local", ports=(4020, 4021, 4022), partner_id="p1",
                             status=CustomerStatus.DELETED)
        sql_repository.create(gone)

        assert {c.domain for c in sql_repository.list(partner_id="p1")} == {"a.local"}
        assert len(list(sql_repository.list(include_deleted=True))) == 3

    def test_list_by_status(self, sql_repository, make_customer):
        """Test status listing."""
        sql_repository.create(make_customer(status=CustomerStatus.RUNNING))

        running = list(sql_repository.list_by_status(CustomerStatus.RUNNING))

        assert [c.domain for c in running] == ["acme.local"]
        assert list(sql_repository.list_by_status(CustomerStatus.ERROR)) == []

    def test_used_ports(self, sql_repository, make_customer):
        """Test used ports cover active customers only."""
        kept = make_customer(domain="a.local", ports=(4000, 4001, 4002))
        sql_repository.create(kept)
        sql_repository.create(make_customer(domain="b.local", ports=None))
        sql_repository.create(make_customer(domain="c.local", ports=(4010, 4011, 4012),
                                            status=CustomerStatus.DELETED))

        assert sql_repository.used_ports() == {4000, 4001, 4002}
        assert sql_repository.used_ports(exclude=kept.customer_id) == set()

    def test_purge(self, sql_repository, make_customer):
        """Test purge removes the row."""
        customer = make_customer()
        sql_repository.create(customer)

        assert sql_repository.purge(customer.customer_id)
        assert sql_repository.get(customer.customer_id) is None


class TestPostgresConfigOverrideRepository:
    """Test override storage."""

    def test_save_merges_keys(self, sql_repository, sql_overrides, make_customer):
        """Test saving twice updates and extends the stored keys."""
        customer = make_customer()
        sql_repository.create(customer)

        sql_overrides.save_overrides(customer.customer_id, "backend", {"LOG_LEVEL": "info"})
        sql_overrides.save_overrides(customer.customer_id, "backend", {"LOG_LEVEL": "debug", "SMTP_HOST": "m"})

        assert sql_overrides.get_overrides(customer.customer_id, "backend") == {
            "LOG_LEVEL": "debug", "SMTP_HOST": "m",
        }
        assert sql_overrides.get_overrides(customer.customer_id, "store") == {}

    def test_delete_all(self, sql_repository, sql_overrides, make_customer):
        """Test every service's overrides are removed."""
        customer = make_customer()
        sql_repository.create(customer)
        sql_overrides.save_overrides(customer.customer_id, "backend", {"LOG_LEVEL": "info"})
        sql_overrides.save_overrides(customer.customer_id, "admin", {"NEXT_PUBLIC_GA_ID": "G-1"})

        sql_overrides.delete_all(customer.customer_id)

        assert sql_overrides.get_overrides(customer.customer_id, "backend") == {}
        assert sql_overrides.get_overrides(customer.customer_id, "admin") == {}


class TestInMemoryCustomerRepository:
    """Test the in-memory registry keeps the same write contract."""

    def test_stale_update_rejected(self, make_customer):
        """Test a write from an outdated read changes nothing."""
        repository = InMemoryCustomerRepository()
        customer = make_customer(status=CustomerStatus.RUNNING)
        repository.create(customer)
        first = repository.get(customer.customer_id)
        second = repository.get(customer.customer_id)

        CustomerStateMachine.transition(first, CustomerStatus.STOPPED)
        repository.update(first)

        with pytest.raises(StaleRecord):
            repository.update(second)

        assert repository.get(customer.customer_id).status == CustomerStatus.STOPPED
        assert first.version == 1

    def test_update_unknown_customer(self, make_customer):
        """Test updating a record that was never created."""
        with pytest.raises(CustomerNotFound):
            InMemoryCustomerRepository().update(make_customer())
