#lifecycle_engine\config.py

from typing import Dict, List, Set

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL


class OrchestratorSettings(BaseSettings):
    """Orchestrator configuration from environment variables (LIFECYCLE_*)."""

    model_config = SettingsConfigDict(
        env_prefix="LIFECYCLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Filesystem
    customers_path: str = "/var/lifecycle/customers"
    templates_path: str = "/var/lifecycle/templates"
    default_template_version: str = "2.4.0"

    # Port space
    port_base: int = 4000
    port_max: int = 4999
    port_stride: int = 10
    reserved_ports: Set[int] = Field(default_factory=lambda: {5432, 6379})

    # Customer database engine (admin role, create/drop only)
    customer_db_host: str = "localhost"
    customer_db_port: int = 5432
    customer_db_admin_user: str = "postgres"
    customer_db_admin_password: str = "postgres"
    customer_db_admin_database: str = "postgres"

    # Cache defaults
    redis_host: str = "localhost"
    redis_port: int = 6379

    # Process supervisor
    supervisor_backend: str = "pm2"
    pm2_bin: str = "pm2"
    docker_image: str = "node:20-alpine"
    docker_network: str | None = None

    # Reverse proxy
    nginx_sites_available: str = "/etc/nginx/sites-available"
    nginx_sites_enabled: str = "/etc/nginx/sites-enabled"
    nginx_test_command: List[str] = Field(default_factory=lambda: ["nginx", "-t"])
    nginx_reload_command: List[str] = Field(default_factory=lambda: ["nginx", "-s", "reload"])
    nginx_cert_root: str = "/etc/letsencrypt/live"

    # Health checks
    health_check_attempts: int = 5
    health_check_interval_seconds: float = 2.0
    health_check_timeout_seconds: float = 5.0
    health_check_total_timeout_seconds: float = 60.0
    health_monitor_interval_seconds: int = 30

    # Migrations / seeding (argv, run inside the staged backend directory)
    migrate_command: List[str] = Field(default_factory=lambda: ["npx", "prisma", "migrate", "deploy"])
    seed_essential_command: List[str] = Field(default_factory=lambda: ["npx", "prisma", "db", "seed"])
    seed_demo_command: List[str] = Field(default_factory=lambda: ["npm", "run", "seed:demo"])
    command_timeout_seconds: int = 600
    demo_packs_path: str | None = None

    # Global per-service env defaults merged under customer identity
    env_defaults: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    # Asynchronous create
    provisioning_workers: int = 4

    @property
    def customer_admin_url(self) -> str:
        return URL.create(
            "postgresql",
            username=self.customer_db_admin_user,
            password=self.customer_db_admin_password,
            host=self.customer_db_host,
            port=self.customer_db_port,
            database=self.customer_db_admin_database,
        ).render_as_string(hide_password=False)


settings = OrchestratorSettings()
