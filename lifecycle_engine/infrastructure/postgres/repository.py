#lifecycle_engine\infrastructure\postgres\repository.py

"""SQLAlchemy repository implementations for the control-plane registry."""

import logging
from datetime import timezone
from typing import Dict, Iterable, Optional, Set
from uuid import UUID

from sqlalchemy import inspect, or_
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from lifecycle_engine.core.repository import ConfigOverrideRepository, CustomerRepository
from lifecycle_engine.core.models import Customer, CustomerStatus, ServicePorts
from lifecycle_engine.core.errors import (
    Conflict, CustomerNotFound, DatabaseConnectionError, LifecycleError, StaleRecord
)
from lifecycle_engine.infrastructure.postgres.database import get_db_session, get_session_factory
from lifecycle_engine.infrastructure.postgres.models import ConfigOverrideORM, CustomerORM

logger = logging.getLogger(__name__)


# ============================================
# Mapping Functions
# ============================================

def _aware(value):
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def orm_to_domain(orm: CustomerORM) -> Customer:
    """Convert ORM model to domain model."""
    ports = None
    if orm.port_backend is not None:
        ports = ServicePorts(
            backend=orm.port_backend,
            admin=orm.port_admin,
            store=orm.port_store,
        )

    return Customer(
        customer_id=orm.customer_id,
        domain=orm.domain,
        mode=orm.mode,
        partner_id=orm.partner_id,
        ports=ports,
        db_name=orm.db_name,
        app_db_user=orm.app_db_user,
        app_db_password=orm.app_db_password,
        redis_host=orm.redis_host,
        redis_port=orm.redis_port,
        redis_password=orm.redis_password,
        template_version=orm.template_version,
        store_name=orm.store_name,
        demo_pack=orm.demo_pack,
        status=orm.status,
        failed_step=orm.failed_step,
        error_detail=orm.error_detail,
        step_history=list(orm.step_history or []),
        created_at=_aware(orm.created_at),
        updated_at=_aware(orm.updated_at),
        last_health_check_at=_aware(orm.last_health_check_at),
        deleted_at=_aware(orm.deleted_at),
        version=orm.version,
    )


def domain_to_orm(customer: Customer) -> CustomerORM:
    """Convert domain model to ORM model."""
    ports = customer.ports
    return CustomerORM(
        customer_id=customer.customer_id,
        domain=customer.domain,
        mode=customer.mode,
        partner_id=customer.partner_id,
        port_backend=ports.backend if ports else None,
        port_admin=ports.admin if ports else None,
        port_store=ports.store if ports else None,
        db_name=customer.db_name,
        app_db_user=customer.app_db_user,
        app_db_password=customer.app_db_password,
        redis_host=customer.redis_host,
        redis_port=customer.redis_port,
        redis_password=customer.redis_password,
        template_version=customer.template_version,
        store_name=customer.store_name,
        demo_pack=customer.demo_pack,
        status=customer.status,
        failed_step=customer.failed_step,
        error_detail=customer.error_detail,
        step_history=customer.step_history,
        created_at=customer.created_at,
        updated_at=customer.updated_at,
        last_health_check_at=customer.last_health_check_at,
        deleted_at=customer.deleted_at,
        version=customer.version,
    )


def _active(query):
    return query.filter(CustomerORM.status != CustomerStatus.DELETED)


# ============================================
# Customer Repository
# ============================================

class PostgresCustomerRepository(CustomerRepository):
    """SQLAlchemy implementation with dependency-injected session factory."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """
        Initialize repository with optional session factory.

        Args:
            session_factory: SQLAlchemy session factory. If None, uses default production factory.
        """
        self._session_factory = session_factory

    def _get_session(self) -> Session:
        """Get new session from the injected factory."""
        return (self._session_factory or get_session_factory())()

    # -------------------------
    # WRITE
    # -------------------------

    def create(self, customer: Customer) -> None:
        """Create a new customer."""
        self._write(customer, "create", lambda session, orm: session.add(orm))

    def update(self, customer: Customer) -> None:
        """Persist updated customer state if nobody wrote it since it was read."""
        expected = customer.version

        def compare_and_set(session: Session, orm: CustomerORM) -> None:
            values = {
                attr.key: getattr(orm, attr.key)
                for attr in inspect(CustomerORM).column_attrs
                if attr.key != "customer_id"
            }
            values["version"] = expected + 1
            matched = session.query(CustomerORM).filter(
                CustomerORM.customer_id == customer.customer_id,
                CustomerORM.version == expected,
            ).update(values, synchronize_session=False)

            if matched == 0:
                if session.get(CustomerORM, customer.customer_id) is None:
                    raise CustomerNotFound(f"Customer {customer.customer_id} not found")
                raise StaleRecord(f"{customer.domain} changed since version {expected} was read")

        self._write(customer, "update", compare_and_set)
        customer.version = expected + 1

    def _write(self, customer: Customer, operation: str, apply) -> None:
        session = self._get_session()
        try:
            if customer.status != CustomerStatus.DELETED:
                self._assert_unique(session, customer)
            apply(session, domain_to_orm(customer))
            session.commit()
            logger.debug(f"[control-db] {operation} {customer.domain} -> {customer.status.value}")
        except IntegrityError as e:
            session.rollback()
            raise Conflict(
                f"Domain or ports of {customer.domain} are already in use"
            ) from e
        except OperationalError as e:
            session.rollback()
            raise DatabaseConnectionError(f"Control database unavailable: {e}") from e
        except LifecycleError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise DatabaseConnectionError(f"Failed to {operation} customer: {e}") from e
        finally:
            session.close()

    def _assert_unique(self, session: Session, customer: Customer) -> None:
        """Cross-column port collisions are not covered by the unique indexes."""
        others = _active(session.query(CustomerORM)).filter(
            CustomerORM.customer_id != customer.customer_id
        )

        if others.filter(CustomerORM.domain == customer.domain).first():
            raise Conflict(f"Domain {customer.domain} is already in use")

        if customer.ports:
            ports = list(customer.ports)
            clash = others.filter(or_(
                CustomerORM.port_backend.in_(ports),
                CustomerORM.port_admin.in_(ports),
                CustomerORM.port_store.in_(ports),
            )).first()
            if clash:
                raise Conflict(
                    f"Ports {ports} of {customer.domain} overlap with {clash.domain}"
                )

    # -------------------------
    # READ
    # -------------------------

    def get(self, customer_id: UUID) -> Optional[Customer]:
        session = self._get_session()
        try:
            orm = session.get(CustomerORM, customer_id)
            return orm_to_domain(orm) if orm else None
        except OperationalError as e:
            raise DatabaseConnectionError(f"Control database unavailable: {e}") from e
        finally:
            session.close()

    def get_by_domain(self, domain: str) -> Optional[Customer]:
        session = self._get_session()
        try:
            orm = _active(session.query(CustomerORM)).filter(
                CustomerORM.domain == domain
            ).first()
            return orm_to_domain(orm) if orm else None
        finally:
            session.close()

    def list(
        self,
        partner_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Iterable[Customer]:
        session = self._get_session()
        try:
            query = session.query(CustomerORM)
            if not include_deleted:
                query = _active(query)
            if partner_id:
                query = query.filter(CustomerORM.partner_id == partner_id)
            query = query.order_by(CustomerORM.created_at.desc())
            return [orm_to_domain(orm) for orm in query.all()]
        finally:
            session.close()

    def list_by_status(self, status: CustomerStatus) -> Iterable[Customer]:
        session = self._get_session()
        try:
            rows = session.query(CustomerORM).filter(CustomerORM.status == status).all()
            return [orm_to_domain(orm) for orm in rows]
        finally:
            session.close()

    def used_ports(self, exclude: Optional[UUID] = None) -> Set[int]:
        session = self._get_session()
        try:
            query = _active(session.query(
                CustomerORM.port_backend,
                CustomerORM.port_admin,
                CustomerORM.port_store,
            )).filter(CustomerORM.port_backend.isnot(None))
            if exclude:
                query = query.filter(CustomerORM.customer_id != exclude)

            used = set()
            for backend, admin, store in query.all():
                used.update((backend, admin, store))
            return used
        except OperationalError as e:
            raise DatabaseConnectionError(f"Control database unavailable: {e}") from e
        finally:
            session.close()

    # -------------------------
    # PURGE
    # -------------------------

    def purge(self, customer_id: UUID) -> bool:
        session = self._get_session()
        try:
            session.query(ConfigOverrideORM).filter(
                ConfigOverrideORM.customer_id == customer_id
            ).delete()
            deleted = session.query(CustomerORM).filter(
                CustomerORM.customer_id == customer_id
            ).delete()
            session.commit()
            return deleted > 0
        except SQLAlchemyError as e:
            session.rollback()
            raise DatabaseConnectionError(f"Failed to purge customer {customer_id}: {e}") from e
        finally:
            session.close()


# ============================================
# Config Override Repository
# ============================================

class PostgresConfigOverrideRepository(ConfigOverrideRepository):
    """Overrides stored one row per (customer, service, key)."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    def get_overrides(self, customer_id: UUID, service: str) -> Dict[str, str]:
        with get_db_session(self._session_factory) as session:
            rows = session.query(ConfigOverrideORM).filter(
                ConfigOverrideORM.customer_id == customer_id,
                ConfigOverrideORM.service == service,
            ).all()
            return {row.key: row.value for row in rows}

    def save_overrides(self, customer_id: UUID, service: str, changes: Dict[str, str]) -> None:
        try:
            with get_db_session(self._session_factory) as session:
                for key, value in changes.items():
                    session.merge(ConfigOverrideORM(
                        customer_id=customer_id,
                        service=service,
                        key=key,
                        value=value,
                    ))
        except SQLAlchemyError as e:
            raise DatabaseConnectionError(f"Failed to save overrides: {e}") from e

    def delete_all(self, customer_id: UUID) -> None:
        with get_db_session(self._session_factory) as session:
            session.query(ConfigOverrideORM).filter(
                ConfigOverrideORM.customer_id == customer_id
            ).delete()
