#lifecycle_engine\core\validation.py
import re

from lifecycle_engine.core.errors import ValidationError
from lifecycle_engine.core.models import CustomerRequest, ServicePorts


_LABEL = r"(?!-)[a-z0-9-]{1,63}(?<!-)"
DOMAIN_RE = re.compile(rf"^{_LABEL}(\.{_LABEL})*$")
IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def normalize_domain(domain: str) -> str:
    return (domain or "").strip().lower().rstrip(".")


def validate_domain(domain: str) -> str:
    domain = normalize_domain(domain)

    if not domain:
        raise ValidationError("domain is required", key="domain")

    if len(domain) > 253:
        raise ValidationError("domain is too long", key="domain")

    if not DOMAIN_RE.match(domain):
        raise ValidationError(f"'{domain}' is not a valid hostname", key="domain")

    return domain


def validate_identifier(value: str, key: str) -> str:
    """Database and role names end up quoted in DDL; keep them boring."""
    if not value or not IDENTIFIER_RE.match(value):
        raise ValidationError(
            f"{key} must start with a letter or underscore and contain only "
            f"letters, digits and underscores (max 63)",
            key=key,
        )
    return value


def validate_ports(ports: ServicePorts, reserved: frozenset | set = frozenset()) -> None:
    values = ports.as_tuple()

    for port in values:
        if not 1024 <= port <= 65535:
            raise ValidationError(f"port {port} is outside 1024-65535", key="ports")
        if port in reserved:
            raise ValidationError(f"port {port} is reserved by the system", key="ports")

    if len(set(values)) != 3:
        raise ValidationError("backend, admin and store ports must be distinct", key="ports")


def validate_new_customer(request: CustomerRequest, reserved_ports: frozenset | set = frozenset()) -> None:
    # -------------------------
    # Identity
    # -------------------------
    request.domain = validate_domain(request.domain)

    # -------------------------
    # Database
    # -------------------------
    if request.db_name is not None:
        validate_identifier(request.db_name, "db_name")

    if request.app_db_user is not None:
        validate_identifier(request.app_db_user, "app_db_user")

    if request.app_db_password is not None and len(request.app_db_password) < 12:
        raise ValidationError("app_db_password must be at least 12 characters", key="app_db_password")

    # -------------------------
    # Cache
    # -------------------------
    if request.redis_port is not None and not 1 <= request.redis_port <= 65535:
        raise ValidationError("redis_port is outside 1-65535", key="redis_port")

    # -------------------------
    # Network
    # -------------------------
    if request.ports is not None:
        validate_ports(request.ports, reserved_ports)

    if request.store_name is not None and ("\n" in request.store_name or "\r" in request.store_name):
        raise ValidationError("store_name must be a single line", key="store_name")
