#lifecycle_engine\container.py

"""Dependency injection container - wires all services together."""

from lifecycle_engine.allocator.ports import PortAllocator
from lifecycle_engine.config import OrchestratorSettings, settings
from lifecycle_engine.core.events import LoggingAuditSink, MultiAuditSink
from lifecycle_engine.database.base import SeedKind
from lifecycle_engine.database.postgres import PostgresDatabaseProvisioner
from lifecycle_engine.environment.renderer import EnvironmentRenderer
from lifecycle_engine.health_checker.checker import ServiceHealthChecker
from lifecycle_engine.health_checker.monitor import HealthMonitor
from lifecycle_engine.infrastructure.postgres.repository import (
    PostgresConfigOverrideRepository,
    PostgresCustomerRepository,
)
from lifecycle_engine.orchestrator.lifecycle import CustomerLifecycleManager
from lifecycle_engine.orchestrator.pipeline import ProvisioningPipeline
from lifecycle_engine.proxy.nginx import NginxRegistrar
from lifecycle_engine.staging.templates import ZipTemplateStager
from lifecycle_engine.supervisor.base import ProcessSupervisor
from lifecycle_engine.supervisor.docker_runtime import DockerSupervisor
from lifecycle_engine.supervisor.pm2 import Pm2Supervisor


def build_supervisor(config: OrchestratorSettings) -> ProcessSupervisor:
    if config.supervisor_backend == "docker":
        return DockerSupervisor(image=config.docker_image, network=config.docker_network)
    if config.supervisor_backend == "pm2":
        return Pm2Supervisor(pm2_bin=config.pm2_bin, timeout=config.command_timeout_seconds)
    raise ValueError(f"Unknown supervisor backend: {config.supervisor_backend}")


# ============================================
# REPOSITORIES
# ============================================

customer_repository = PostgresCustomerRepository()
override_repository = PostgresConfigOverrideRepository()


# ============================================
# COLLABORATORS
# ============================================

port_allocator = PortAllocator(
    customer_repository,
    base_port=settings.port_base,
    max_port=settings.port_max,
    stride=settings.port_stride,
    reserved=settings.reserved_ports,
)

database_provisioner = PostgresDatabaseProvisioner(
    admin_url=settings.customer_admin_url,
    migrate_command=settings.migrate_command,
    seed_commands={
        SeedKind.ESSENTIAL: settings.seed_essential_command,
        SeedKind.DEMO: settings.seed_demo_command,
    },
    command_timeout=settings.command_timeout_seconds,
)

environment_renderer = EnvironmentRenderer(
    override_repository,
    settings.customers_path,
    db_host=settings.customer_db_host,
    db_port=settings.customer_db_port,
    redis_host=settings.redis_host,
    redis_port=settings.redis_port,
    defaults=settings.env_defaults,
)

template_stager = ZipTemplateStager(
    settings.templates_path,
    settings.customers_path,
    settings.default_template_version,
)

process_supervisor = build_supervisor(settings)

proxy_registrar = NginxRegistrar(
    settings.nginx_sites_available,
    settings.nginx_sites_enabled,
    test_command=settings.nginx_test_command,
    reload_command=settings.nginx_reload_command,
    cert_root=settings.nginx_cert_root,
)

health_checker = ServiceHealthChecker(
    attempts=settings.health_check_attempts,
    interval_seconds=settings.health_check_interval_seconds,
    request_timeout_seconds=settings.health_check_timeout_seconds,
    total_timeout_seconds=settings.health_check_total_timeout_seconds,
)


# ============================================
# EVENTS
# ============================================

audit_sinks = MultiAuditSink([
    LoggingAuditSink()
])


# ============================================
# SERVICES
# ============================================

provisioning_pipeline = ProvisioningPipeline(
    customers=customer_repository,
    allocator=port_allocator,
    databases=database_provisioner,
    renderer=environment_renderer,
    stager=template_stager,
    supervisor=process_supervisor,
    proxy=proxy_registrar,
    health=health_checker,
    demo_packs_path=settings.demo_packs_path,
)

lifecycle_manager = CustomerLifecycleManager(
    customers=customer_repository,
    overrides=override_repository,
    pipeline=provisioning_pipeline,
    allocator=port_allocator,
    databases=database_provisioner,
    renderer=environment_renderer,
    stager=template_stager,
    supervisor=process_supervisor,
    proxy=proxy_registrar,
    audit=audit_sinks,
    reserved_ports=settings.reserved_ports,
    default_template_version=settings.default_template_version,
    provisioning_workers=settings.provisioning_workers,
)

health_monitor = HealthMonitor(
    manager=lifecycle_manager,
    customers=customer_repository,
    check_interval=settings.health_monitor_interval_seconds,
)
