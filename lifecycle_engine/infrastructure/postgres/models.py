#lifecycle_engine\infrastructure\postgres\models.py
"""SQLAlchemy ORM models for control-plane tables."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, DateTime, JSON, Enum as SQLEnum, Index, Text, ForeignKey, Uuid, text
)

from lifecycle_engine.core.models import CustomerMode, CustomerStatus
from lifecycle_engine.infrastructure.postgres.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Uniqueness only binds customers that still hold resources.
_ACTIVE = text("status <> 'DELETED'")


# ============================================
# CUSTOMERS
# ============================================

class CustomerORM(Base):
    """
    Customer table - the control-plane registry.

    Indexes:
    - Partial unique index on domain for non-deleted rows
    - Partial unique index on each port column for non-deleted rows
    - Index on (partner_id, status) for tenant-owner listings
    """

    __tablename__ = "customers"

    # Primary key
    customer_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4, nullable=False)

    # Identity
    domain = Column(String(253), nullable=False, index=True)
    mode = Column(SQLEnum(CustomerMode, name="customer_mode"), nullable=False, default=CustomerMode.LOCAL)
    partner_id = Column(String(100), nullable=True)

    # Network
    port_backend = Column(Integer, nullable=True)
    port_admin = Column(Integer, nullable=True)
    port_store = Column(Integer, nullable=True)

    # Storage
    db_name = Column(String(63), nullable=False)
    app_db_user = Column(String(63), nullable=False)
    app_db_password = Column(String(255), nullable=False)
    redis_host = Column(String(255), nullable=True)
    redis_port = Column(Integer, nullable=True)
    redis_password = Column(String(255), nullable=True)

    # Code
    template_version = Column(String(50), nullable=False, default="latest")
    store_name = Column(String(255), nullable=True)
    demo_pack = Column(String(500), nullable=True)

    # State
    status = Column(
        SQLEnum(CustomerStatus, name="customer_status"),
        nullable=False,
        default=CustomerStatus.PENDING,
        index=True
    )
    failed_step = Column(String(50), nullable=True)
    error_detail = Column(Text, nullable=True)
    step_history = Column(JSON, nullable=False, default=list)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    last_health_check_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index('uq_customers_domain_active', 'domain', unique=True,
              postgresql_where=_ACTIVE, sqlite_where=_ACTIVE),
        Index('uq_customers_port_backend_active', 'port_backend', unique=True,
              postgresql_where=_ACTIVE, sqlite_where=_ACTIVE),
        Index('uq_customers_port_admin_active', 'port_admin', unique=True,
              postgresql_where=_ACTIVE, sqlite_where=_ACTIVE),
        Index('uq_customers_port_store_active', 'port_store', unique=True,
              postgresql_where=_ACTIVE, sqlite_where=_ACTIVE),
        Index('ix_customers_partner_status', 'partner_id', 'status'),
    )

    def __repr__(self) -> str:
        return (
            f"<CustomerORM(customer_id={self.customer_id}, "
            f"domain={self.domain}, "
            f"status={self.status.value})>"
        )


# ============================================
# CONFIG OVERRIDES
# ============================================

class ConfigOverrideORM(Base):
    """Per-service configuration overrides keyed by (customer, service, key)."""

    __tablename__ = "config_overrides"

    customer_id = Column(
        Uuid(as_uuid=True),
        ForeignKey('customers.customer_id', ondelete="CASCADE"),
        primary_key=True,
    )
    service = Column(String(20), primary_key=True)
    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
