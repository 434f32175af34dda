#tests\conftest.py

"""Pytest configuration and fixtures."""

import pytest
from uuid import uuid4

from lifecycle_engine.allocator.ports import PortAllocator
from lifecycle_engine.core.events import InMemoryAuditSink
from lifecycle_engine.core.models import Customer, CustomerMode, CustomerStatus, ServicePorts
from lifecycle_engine.environment.renderer import EnvironmentRenderer
from lifecycle_engine.infrastructure.memory.collaborators import (
    InMemoryDatabaseProvisioner,
    InMemoryProxyRegistrar,
    InMemorySupervisor,
    InMemoryTemplateStager,
    ScriptedHealthChecker,
)
from lifecycle_engine.infrastructure.memory.repository import (
    InMemoryConfigOverrideRepository,
    InMemoryCustomerRepository,
)
from lifecycle_engine.infrastructure.postgres.database import (
    create_db_engine, drop_db, get_session_factory, init_db
)
from lifecycle_engine.orchestrator.lifecycle import CustomerLifecycleManager
from lifecycle_engine.orchestrator.pipeline import ProvisioningPipeline


RESERVED = {5432, 6379}


# -------------------------
# Registry
# -------------------------

@pytest.fixture
def repository():
    return InMemoryCustomerRepository()


@pytest.fixture
def overrides():
    return InMemoryConfigOverrideRepository()


@pytest.fixture
def allocator(repository):
    return PortAllocator(repository, base_port=4000, max_port=4999, stride=10, reserved=RESERVED)


# -------------------------
# Collaborators
# -------------------------

@pytest.fixture
def customers_path(tmp_path):
    path = tmp_path / "customers"
    path.mkdir()
    return path


@pytest.fixture
def databases():
    return InMemoryDatabaseProvisioner()


@pytest.fixture
def supervisor():
    return InMemorySupervisor()


@pytest.fixture
def proxy():
    return InMemoryProxyRegistrar()


@pytest.fixture
def stager(customers_path):
    return InMemoryTemplateStager(customers_path)


@pytest.fixture
def health():
    return ScriptedHealthChecker()


@pytest.fixture
def audit():
    return InMemoryAuditSink()


@pytest.fixture
def renderer(overrides, customers_path):
    return EnvironmentRenderer(overrides, customers_path)


# -------------------------
# Orchestration
# -------------------------

@pytest.fixture
def pipeline(repository, allocator, databases, renderer, stager, supervisor, proxy, health):
    return ProvisioningPipeline(
        customers=repository,
        allocator=allocator,
        databases=databases,
        renderer=renderer,
        stager=stager,
        supervisor=supervisor,
        proxy=proxy,
        health=health,
    )


@pytest.fixture
def manager(repository, overrides, pipeline, allocator, databases, renderer,
            stager, supervisor, proxy, audit):
    manager = CustomerLifecycleManager(
        customers=repository,
        overrides=overrides,
        pipeline=pipeline,
        allocator=allocator,
        databases=databases,
        renderer=renderer,
        stager=stager,
        supervisor=supervisor,
        proxy=proxy,
        audit=audit,
        reserved_ports=RESERVED,
        default_template_version="2.4.0",
        lock_timeout=5,
    )
    yield manager
    manager.shutdown()


# -------------------------
# Control-plane database (SQLite)
# -------------------------

@pytest.fixture
def sql_engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    drop_db(engine)
    engine.dispose()


@pytest.fixture
def sql_session_factory(sql_engine):
    return get_session_factory(sql_engine)


# -------------------------
# Samples
# -------------------------

@pytest.fixture
def make_customer():
    """Factory for customer records that have not been through the pipeline."""

    def _make(domain="acme.local", ports=(4000, 4001, 4002), status=CustomerStatus.PENDING, **kwargs):
        slug = domain.replace(".", "_").replace("-", "_")
        mode = CustomerMode.LOCAL if domain.endswith(".local") else CustomerMode.PRODUCTION
        return Customer(
            customer_id=kwargs.pop("customer_id", uuid4()),
            domain=domain,
            mode=kwargs.pop("mode", mode),
            ports=ServicePorts(*ports) if ports else None,
            db_name=kwargs.pop("db_name", f"db_{slug}"),
            app_db_user=kwargs.pop("app_db_user", f"u_{slug}"),
            app_db_password=kwargs.pop("app_db_password", "s3cret-password-123"),
            template_version=kwargs.pop("template_version", "2.4.0"),
            status=status,
            **kwargs,
        )

    return _make
