"""Engine and session factory shared by the API, the workers and the scripts.

``DATABASE_URL`` (falling back to ``TEST_DATABASE_URL``) must be a PostgreSQL DSN
unless ``DATABASE_ALLOW_NON_POSTGRES=1``. Billing writes are short transactions
retried on ``OperationalError``; sqlite connections therefore wait on a locked
database for ``DATABASE_BUSY_TIMEOUT_MS`` before raising.
"""

from __future__ import annotations

from typing import Callable, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from core.env import env_bool, env_int, env_str, load_dotenv_if_available

load_dotenv_if_available()

SessionFactory = Callable[[], Session]


def is_postgres_url(url: str) -> bool:
    return url.lower().startswith("postgresql")


def resolve_database_url() -> str:
    url = env_str("DATABASE_URL") or env_str("TEST_DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL or TEST_DATABASE_URL must be set.")
    if not is_postgres_url(url) and not env_bool("DATABASE_ALLOW_NON_POSTGRES", False):
        raise RuntimeError(f"DATABASE_URL must be a PostgreSQL DSN. Current value: {url}")
    return url


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        sqlite_engine = create_engine(url, connect_args={"check_same_thread": False})
        busy_timeout_ms = env_int("DATABASE_BUSY_TIMEOUT_MS", 5000, minimum=0)

        @event.listens_for(sqlite_engine, "connect")
        def _set_busy_timeout(dbapi_connection, _connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
            cursor.close()

        return sqlite_engine

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=env_int("DATABASE_POOL_SIZE", 5, minimum=1),
        max_overflow=env_int("DATABASE_MAX_OVERFLOW", 10, minimum=0),
        pool_recycle=env_int("DATABASE_POOL_RECYCLE_SECONDS", 1800, minimum=-1),
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    # Records are read back after commit by the serializers and the post-commit effects.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


DATABASE_URL = resolve_database_url()
IS_POSTGRES = is_postgres_url(DATABASE_URL)

engine = build_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session for FastAPI dependencies."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


__all__ = [
    "Base",
    "DATABASE_URL",
    "IS_POSTGRES",
    "SessionFactory",
    "SessionLocal",
    "build_engine",
    "build_session_factory",
    "engine",
    "get_db",
    "is_postgres_url",
    "resolve_database_url",
]
