"""Durable key/value store with TTL for retry counters and other billing state."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from functools import lru_cache
from typing import Any, Dict, Optional, Protocol

import redis
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError

import database
from core.billing_settings import get_billing_settings
from core.clock import ensure_utc, utcnow
from models.payments import BillingStateEntry
from services.db_utils import dialect_insert

logger = logging.getLogger(__name__)


class BillingStateStore(Protocol):
    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    def set(self, key: str, value: Dict[str, Any], *, ttl_seconds: int) -> None: ...

    def set_if_absent(self, key: str, value: Dict[str, Any], *, ttl_seconds: int) -> bool: ...

    def delete(self, key: str) -> None: ...

    def purge_expired(self) -> int: ...

    def keys(self, prefix: str) -> list[str]: ...


class SqlStateStore:
    """TTL entries persisted in ``billing_state_entries``."""

    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory

    def _session(self):
        factory = self._session_factory or database.SessionLocal
        return factory()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        session = self._session()
        try:
            entry = session.get(BillingStateEntry, key)
            if entry is None:
                return None
            expires_at = ensure_utc(entry.expires_at)
            if expires_at is not None and expires_at <= utcnow():
                return None
            return dict(entry.value or {})
        finally:
            session.close()

    def set(self, key: str, value: Dict[str, Any], *, ttl_seconds: int) -> None:
        expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        session = self._session()
        try:
            insert = dialect_insert(session)
            statement = insert(BillingStateEntry).values(key=key, value=value, expires_at=expires_at, updated_at=utcnow())
            statement = statement.on_conflict_do_update(
                index_elements=[BillingStateEntry.key],
                set_={"value": value, "expires_at": expires_at, "updated_at": utcnow()},
            )
            session.execute(statement)
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Failed to persist billing state key=%s", key)
            raise
        finally:
            session.close()

    def set_if_absent(self, key: str, value: Dict[str, Any], *, ttl_seconds: int) -> bool:
        now = utcnow()
        session = self._session()
        try:
            session.execute(
                delete(BillingStateEntry).where(
                    BillingStateEntry.key == key,
                    BillingStateEntry.expires_at.is_not(None),
                    BillingStateEntry.expires_at <= now,
                )
            )
            insert = dialect_insert(session)
            statement = (
                insert(BillingStateEntry)
                .values(key=key, value=value, expires_at=now + timedelta(seconds=ttl_seconds), updated_at=now)
                .on_conflict_do_nothing(index_elements=[BillingStateEntry.key])
            )
            result = session.execute(statement)
            session.commit()
            return bool(result.rowcount)
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Failed to claim billing state key=%s", key)
            raise
        finally:
            session.close()

    def delete(self, key: str) -> None:
        session = self._session()
        try:
            session.execute(delete(BillingStateEntry).where(BillingStateEntry.key == key))
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Failed to delete billing state key=%s", key)
            raise
        finally:
            session.close()

    def purge_expired(self) -> int:
        session = self._session()
        try:
            result = session.execute(
                delete(BillingStateEntry).where(
                    BillingStateEntry.expires_at.is_not(None),
                    BillingStateEntry.expires_at <= utcnow(),
                )
            )
            session.commit()
            return int(result.rowcount or 0)
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Failed to purge expired billing state.")
            raise
        finally:
            session.close()

    def keys(self, prefix: str) -> list[str]:
        session = self._session()
        try:
            rows = session.execute(
                select(BillingStateEntry.key).where(
                    BillingStateEntry.key.startswith(prefix),
                    or_(BillingStateEntry.expires_at.is_(None), BillingStateEntry.expires_at > utcnow()),
                )
            )
            return [row[0] for row in rows]
        finally:
            session.close()


class RedisStateStore:
    """TTL entries kept as JSON strings in Redis."""

    def __init__(self, client: "redis.Redis", *, prefix: str = "billing") -> None:
        self._client = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._client.get(self._key(key))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable billing state key=%s", key)
            return None
        return value if isinstance(value, dict) else None

    def set(self, key: str, value: Dict[str, Any], *, ttl_seconds: int) -> None:
        self._client.set(self._key(key), json.dumps(value), ex=ttl_seconds)

    def set_if_absent(self, key: str, value: Dict[str, Any], *, ttl_seconds: int) -> bool:
        return bool(self._client.set(self._key(key), json.dumps(value), ex=ttl_seconds, nx=True))

    def delete(self, key: str) -> None:
        self._client.delete(self._key(key))

    def purge_expired(self) -> int:
        # Redis expires keys on its own.
        return 0

    def keys(self, prefix: str) -> list[str]:
        offset = len(self._prefix) + 1
        found = []
        for raw in self._client.scan_iter(match=f"{self._key(prefix)}*"):
            name = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            found.append(name[offset:])
        return found


@lru_cache(maxsize=1)
def get_state_store() -> BillingStateStore:
    settings = get_billing_settings()
    if settings.redis_url:
        logger.info("Using Redis billing state store.")
        return RedisStateStore(redis.Redis.from_url(settings.redis_url, decode_responses=False))
    return SqlStateStore()


__all__ = ["BillingStateStore", "RedisStateStore", "SqlStateStore", "get_state_store"]
