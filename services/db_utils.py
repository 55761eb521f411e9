"""Small SQLAlchemy helpers shared by billing stores."""

from __future__ import annotations

from typing import Any, Callable

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def dialect_insert(db: Session) -> Callable[[Any], Any]:
    """Return the dialect ``insert`` construct that supports ``ON CONFLICT``."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")


__all__ = ["dialect_insert"]
