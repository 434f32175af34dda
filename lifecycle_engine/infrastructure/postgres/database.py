#lifecycle_engine\infrastructure\postgres\database.py

"""
Control-plane database: engine, sessions and schema helpers.

The default engine is built on first use, so importing the repositories
never opens a pool against the configured server.
"""

from contextlib import contextmanager
from threading import Lock
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from lifecycle_engine.infrastructure.postgres.config import settings


# ============================================
# Base for ORM models
# ============================================
Base = declarative_base()


# ============================================
# Engines
# ============================================
def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """Engine for the registry. SQLite URLs get a single shared connection."""
    url = database_url or settings.database_url

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=settings.echo_sql,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        @event.listens_for(engine, "connect")
        def enable_foreign_keys(dbapi_conn, connection_record):
            # Override rows cascade with their customer
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        url,
        echo=settings.echo_sql,
        pool_pre_ping=True,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_recycle=settings.pool_recycle,
        connect_args={"options": "-c search_path=public"},
    )


_default_engine: Optional[Engine] = None
_default_factory: Optional[sessionmaker] = None
_init_lock = Lock()


def default_engine() -> Engine:
    global _default_engine
    with _init_lock:
        if _default_engine is None:
            _default_engine = create_db_engine()
        return _default_engine


def get_session_factory(engine_instance: Optional[Engine] = None) -> sessionmaker:
    """
    Session factory bound to `engine_instance`, or to the shared
    production factory when none is given. Tests pass their own engine.
    """
    global _default_factory
    if engine_instance is not None:
        return sessionmaker(bind=engine_instance, autoflush=False, expire_on_commit=False)

    engine_instance = default_engine()
    with _init_lock:
        if _default_factory is None:
            _default_factory = sessionmaker(bind=engine_instance, autoflush=False, expire_on_commit=False)
        return _default_factory


# ============================================
# Session management
# ============================================
@contextmanager
def get_db_session(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Session scope: commits on success, rolls back on any error.

        with get_db_session(factory) as session:
            session.merge(ConfigOverrideORM(...))
    """
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ============================================
# Schema (tests and local runs; Alembic elsewhere)
# ============================================
def init_db(engine_instance: Optional[Engine] = None) -> None:
    Base.metadata.create_all(bind=engine_instance or default_engine())


def drop_db(engine_instance: Optional[Engine] = None) -> None:
    Base.metadata.drop_all(bind=engine_instance or default_engine())
