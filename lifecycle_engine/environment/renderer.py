#lifecycle_engine\environment\renderer.py

"""
Per-service configuration for a customer stack.

Three layers are merged, lowest first:
    1. global per-service defaults
    2. saved per-service overrides (allow-listed keys only)
    3. customer identity: domain, ports, credentials, URLs

Identity keys are owned by the system and can never be overridden.
"""

import logging
import secrets
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, Optional

from lifecycle_engine.core.errors import ValidationError
from lifecycle_engine.core.models import SERVICES, Customer
from lifecycle_engine.core.repository import ConfigOverrideRepository
from lifecycle_engine.database.base import build_database_url
from lifecycle_engine.environment.envfile import merge_env_file, read_env

logger = logging.getLogger(__name__)


# ============================================
# Key policy
# ============================================

# Record-level identity, addressed with dotted names by API callers
SYSTEM_KEYS = frozenset({
    "domain",
    "mode",
    "ports.backend",
    "ports.admin",
    "ports.store",
    "db_name",
    "app_db_user",
    "app_db_password",
    "redis_host",
    "redis_port",
    "redis_password",
})

MANAGED_KEYS: Dict[str, frozenset] = {
    "backend": frozenset({
        "NODE_ENV", "PORT", "DATABASE_URL",
        "REDIS_HOST", "REDIS_PORT", "REDIS_PASSWORD", "REDIS_PREFIX",
        "AUTO_DETECT_DOMAIN", "PROD_DOMAIN", "BEHIND_REVERSE_PROXY",
        "APP_URL", "STORE_URL", "ADMIN_URL",
        "JWT_ACCESS_SECRET", "JWT_REFRESH_SECRET", "SESSION_SECRET",
    }),
    "admin": frozenset({
        "PORT", "NEXT_PUBLIC_API_URL", "NEXT_PUBLIC_AUTO_DETECT_DOMAIN",
        "NEXT_PUBLIC_PROD_DOMAIN", "NEXT_PUBLIC_PROD_API_URL",
        "NEXT_PUBLIC_PROD_APP_URL", "NEXT_PUBLIC_PROD_STORE_URL",
    }),
    "store": frozenset({
        "PORT", "NEXT_PUBLIC_API_URL", "NEXT_PUBLIC_AUTO_DETECT_DOMAIN",
        "NEXT_PUBLIC_PROD_DOMAIN", "NEXT_PUBLIC_PROD_API_URL",
        "NEXT_PUBLIC_PROD_SITE_URL", "NEXT_PUBLIC_PROD_ADMIN_URL",
    }),
}

ALLOWED_OVERRIDE_KEYS: Dict[str, frozenset] = {
    "backend": frozenset({
        "STORE_NAME", "LOG_LEVEL", "CORS_ORIGINS",
        "SMTP_HOST", "SMTP_PORT", "SMTP_SECURE", "SMTP_USER", "SMTP_PASS", "SMTP_FROM",
        "JWT_ACCESS_EXPIRES_IN", "JWT_REFRESH_EXPIRES_IN",
        "RATE_LIMIT_MAX", "UPLOAD_MAX_SIZE", "DEFAULT_CURRENCY", "DEFAULT_LOCALE",
    }),
    "admin": frozenset({
        "NEXT_PUBLIC_SITE_NAME", "NEXT_PUBLIC_DEFAULT_LOCALE", "NEXT_PUBLIC_GA_ID",
    }),
    "store": frozenset({
        "NEXT_PUBLIC_SITE_NAME", "NEXT_PUBLIC_DEFAULT_LOCALE", "NEXT_PUBLIC_DEFAULT_CURRENCY",
        "NEXT_PUBLIC_GA_ID", "NEXT_PUBLIC_GTM_ID",
    }),
}

SECRET_KEYS = frozenset({
    "DATABASE_URL", "REDIS_PASSWORD", "SMTP_PASS",
    "JWT_ACCESS_SECRET", "JWT_REFRESH_SECRET", "SESSION_SECRET",
})

GENERATED_SECRETS = ("JWT_ACCESS_SECRET", "JWT_REFRESH_SECRET", "SESSION_SECRET")
MIN_SECRET_LENGTH = 32
REDACTED = "********"


def _flag(value: bool) -> str:
    return "true" if value else "false"


def service_urls(customer: Customer) -> Dict[str, str]:
    ports = customer.ports
    if customer.is_local:
        return {
            "app": f"http://localhost:{ports.store}",
            "store": f"http://localhost:{ports.store}",
            "admin": f"http://localhost:{ports.admin}",
            "api": f"http://localhost:{ports.backend}/api",
        }
    base = f"https://{customer.domain}"
    return {
        "app": base,
        "store": base,
        "admin": f"{base}/qpanel",
        "api": f"{base}/api",
    }


class EnvironmentRenderer:
    def __init__(
        self,
        overrides: ConfigOverrideRepository,
        customers_path: str | Path,
        db_host: str = "localhost",
        db_port: int = 5432,
        redis_host: str = "localhost",
        redis_port: int = 6379,
        defaults: Optional[Mapping[str, Mapping[str, str]]] = None,
        extra_allowed: Optional[Mapping[str, Iterable[str]]] = None,
        secret_factory: Callable[[], str] = lambda: secrets.token_hex(32),
    ):
        self._overrides = overrides
        self._customers_path = Path(customers_path)
        self._db_host = db_host
        self._db_port = db_port
        self._redis_host = redis_host
        self._redis_port = redis_port
        self._defaults = {s: dict(v) for s, v in (defaults or {}).items()}
        self._allowed = {
            service: keys | frozenset((extra_allowed or {}).get(service, ()))
            for service, keys in ALLOWED_OVERRIDE_KEYS.items()
        }
        self._new_secret = secret_factory

    # -------------------------
    # Paths
    # -------------------------

    def customer_dir(self, customer: Customer) -> Path:
        return self._customers_path / customer.slug

    def service_dir(self, customer: Customer, service: str) -> Path:
        return self.customer_dir(customer) / service

    def env_path(self, customer: Customer, service: str) -> Path:
        return self.service_dir(customer, service) / ".env"

    # -------------------------
    # Render
    # -------------------------

    def render(self, customer: Customer) -> Dict[str, Dict[str, str]]:
        """Full configuration of every service, secrets included."""
        if customer.ports is None:
            raise ValidationError(f"{customer.domain} has no ports allocated", key="ports")

        return {service: self._render_service(customer, service) for service in SERVICES}

    def _render_service(self, customer: Customer, service: str) -> Dict[str, str]:
        existing = read_env(self.env_path(customer, service))

        values: Dict[str, str] = {}
        values.update(self._soft_defaults(customer, service, existing))
        values.update(self._defaults.get(service, {}))
        values.update(self._overrides.get_overrides(customer.customer_id, service))
        values.update(self._identity(customer, service, existing))
        return values

    def _soft_defaults(self, customer: Customer, service: str, existing: Mapping[str, str]) -> Dict[str, str]:
        """Values written once and then left to the operator."""
        if service != "backend":
            return {}

        local = customer.is_local
        soft = {
            "SMTP_HOST": "localhost" if local else f"smtp.{customer.domain}",
            "SMTP_PORT": "1025" if local else "587",
            "SMTP_SECURE": "false",
            "SMTP_USER": f"noreply@{customer.domain}",
            "SMTP_FROM": f"noreply@{customer.domain}",
            "STORE_NAME": customer.store_name or customer.domain,
        }
        return {key: existing.get(key) or value for key, value in soft.items()}

    def _identity(self, customer: Customer, service: str, existing: Mapping[str, str]) -> Dict[str, str]:
        ports = customer.ports
        urls = service_urls(customer)
        local = customer.is_local

        if service == "backend":
            identity = {
                "NODE_ENV": "development" if local else "production",
                "PORT": str(ports.backend),
                "DATABASE_URL": build_database_url(
                    customer.app_db_user, customer.app_db_password,
                    self._db_host, self._db_port, customer.db_name,
                ),
                "REDIS_HOST": customer.redis_host or self._redis_host,
                "REDIS_PORT": str(customer.redis_port or self._redis_port),
                "REDIS_PREFIX": customer.domain.replace(".", "_"),
                "AUTO_DETECT_DOMAIN": _flag(not local),
                "PROD_DOMAIN": customer.domain,
                "BEHIND_REVERSE_PROXY": _flag(not local),
                "APP_URL": urls["app"],
                "STORE_URL": urls["store"],
                "ADMIN_URL": urls["admin"],
            }
            if customer.redis_password:
                identity["REDIS_PASSWORD"] = customer.redis_password

            for key in GENERATED_SECRETS:
                current = existing.get(key, "")
                identity[key] = current if len(current) >= MIN_SECRET_LENGTH else self._new_secret()
            return identity

        identity = {
            "PORT": str(ports.for_service(service)),
            "NEXT_PUBLIC_AUTO_DETECT_DOMAIN": _flag(not local),
            "NEXT_PUBLIC_PROD_DOMAIN": customer.domain,
            "NEXT_PUBLIC_PROD_API_URL": urls["api"],
        }
        if service == "admin":
            identity["NEXT_PUBLIC_PROD_APP_URL"] = urls["admin"]
            identity["NEXT_PUBLIC_PROD_STORE_URL"] = urls["store"]
        else:
            identity["NEXT_PUBLIC_PROD_SITE_URL"] = urls["store"]
            identity["NEXT_PUBLIC_PROD_ADMIN_URL"] = urls["admin"]
        if local:
            identity["NEXT_PUBLIC_API_URL"] = urls["api"]
        return identity

    def write(self, customer: Customer, services: Iterable[str] = SERVICES) -> Dict[str, bool]:
        """Merge rendered values into each service's `.env`. Returns changed flags."""
        rendered = self.render(customer)
        changed = {}
        for service in services:
            changed[service] = merge_env_file(self.env_path(customer, service), rendered[service])
            if changed[service]:
                logger.info(f"[{customer.domain}] {service} configuration written")
        return changed

    # -------------------------
    # Overrides
    # -------------------------

    def validate_overrides(self, service: str, changes: Mapping[str, object]) -> Dict[str, str]:
        """Check `changes` against the service allow-list. Nothing is saved."""
        if service not in SERVICES:
            raise ValidationError(f"Unknown service '{service}'", key=service)
        if not isinstance(changes, Mapping) or not changes:
            raise ValidationError(f"No changes given for {service}", key=service)

        clean = {}
        for key, value in changes.items():
            if key in SYSTEM_KEYS or key in MANAGED_KEYS[service]:
                raise ValidationError(f"'{key}' is managed by the system and cannot be changed", key=key)
            if key not in self._allowed[service]:
                raise ValidationError(f"'{key}' is not a configurable {service} setting", key=key)
            if isinstance(value, bool):
                value = _flag(value)
            elif isinstance(value, (int, float)):
                value = str(value)
            elif not isinstance(value, str):
                raise ValidationError(f"'{key}' must be a string", key=key)
            if "\n" in value or "\r" in value:
                raise ValidationError(f"'{key}' must be a single line", key=key)
            clean[key] = value
        return clean

    def apply_overrides(self, customer: Customer, service: str, changes: Mapping[str, object]) -> Dict[str, str]:
        """
        Persist validated overrides for one service.

        The service's env file is refreshed if it has been staged already.
        The running process keeps its old values until it is restarted.
        """
        clean = self.validate_overrides(service, changes)
        self._overrides.save_overrides(customer.customer_id, service, clean)
        logger.info(f"[{customer.domain}] {service} overrides saved: {sorted(clean)}")

        if customer.ports is not None and self.service_dir(customer, service).is_dir():
            self.write(customer, services=[service])
        return clean

    # -------------------------
    # Views
    # -------------------------

    def get_config(self, customer: Customer) -> Dict[str, Dict[str, str]]:
        """Rendered configuration with secret values masked."""
        if customer.ports is None:
            return {service: {} for service in SERVICES}

        view = {}
        for service, values in self.render(customer).items():
            view[service] = {
                key: (REDACTED if key in SECRET_KEYS else value)
                for key, value in sorted(values.items())
            }
        return view
