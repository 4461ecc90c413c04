"""Per-entity non-blocking locks plus the append-only operation log.

Every contract and appointment transition runs through ``with_entity_lock``:
the lock is keyed by a stable hash of the entity id, acquisition never
waits, and each guarded operation appends a ``started`` row followed by
exactly one ``success`` or ``failed`` row.
"""
from __future__ import annotations

import hashlib
import logging
import secrets
import threading
from typing import Any, Callable, TypeVar
from uuid import UUID

import redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..domain_errors import Busy, DomainError
from ..models import OperationLog

logger = logging.getLogger(__name__)

T = TypeVar("T")


def stable_lock_key(entity_id: UUID | str) -> int:
    """Signed 64-bit key, identical across processes (unlike ``hash()``)."""
    digest = hashlib.blake2b(str(entity_id).encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class MemoryLockBackend:
    """Process-local locks. Suitable for a single worker process and for tests."""

    name = "memory"

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._held: set[int] = set()

    def try_acquire(self, db: Session, key: int) -> bool:  # noqa: ARG002
        with self._mutex:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, db: Session, key: int) -> None:  # noqa: ARG002
        with self._mutex:
            self._held.discard(key)

    def is_held(self, key: int) -> bool:
        with self._mutex:
            return key in self._held


class PostgresAdvisoryLockBackend:
    """Transaction-scoped advisory locks; released by PostgreSQL on commit/rollback."""

    name = "postgres"

    def try_acquire(self, db: Session, key: int) -> bool:
        return bool(db.execute(text("SELECT pg_try_advisory_xact_lock(:key)"), {"key": key}).scalar())

    def release(self, db: Session, key: int) -> None:
        return None


_REDIS_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_redis_client = None


def _get_redis():
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


class RedisLockBackend:
    """Cross-process locks via SET NX PX; release only deletes our own token."""

    name = "redis"

    def __init__(self, client_factory: Callable[[], Any] = _get_redis, ttl_ms: int | None = None) -> None:
        self._client_factory = client_factory
        self._ttl_ms = ttl_ms or settings.LOCK_TTL_MS
        self._tokens: dict[int, str] = {}
        self._mutex = threading.Lock()

    @staticmethod
    def _redis_key(key: int) -> str:
        return f"lessonhub:lock:{key}"

    def try_acquire(self, db: Session, key: int) -> bool:  # noqa: ARG002
        token = secrets.token_hex(16)
        try:
            acquired = self._client_factory().set(self._redis_key(key), token, nx=True, px=self._ttl_ms)
        except RedisError:
            # Fail closed: without the lock service we cannot serialize writers.
            logger.exception("Redis error while acquiring entity lock %s", key)
            return False
        if not acquired:
            return False
        with self._mutex:
            self._tokens[key] = token
        return True

    def release(self, db: Session, key: int) -> None:  # noqa: ARG002
        with self._mutex:
            token = self._tokens.pop(key, None)
        if token is None:
            return
        try:
            self._client_factory().eval(_REDIS_RELEASE_SCRIPT, 1, self._redis_key(key), token)
        except RedisError:
            logger.exception("Redis error while releasing entity lock %s (expires after TTL)", key)


_memory_backend = MemoryLockBackend()
_postgres_backend = PostgresAdvisoryLockBackend()
_redis_backend: RedisLockBackend | None = None


def get_lock_backend(db: Session):
    """Resolve the configured lock backend for this session's engine."""
    global _redis_backend
    choice = settings.LOCK_BACKEND.lower()
    if choice == "auto":
        bind = db.get_bind()
        choice = "postgres" if bind is not None and bind.dialect.name == "postgresql" else "memory"
    if choice == "postgres":
        return _postgres_backend
    if choice == "redis":
        if _redis_backend is None:
            _redis_backend = RedisLockBackend()
        return _redis_backend
    if choice == "memory":
        return _memory_backend
    raise RuntimeError(f"Unknown LOCK_BACKEND: {settings.LOCK_BACKEND}")


def append_operation_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: UUID,
    operation: str,
    outcome: str,
    actor_id: UUID | None = None,
    error_message: str | None = None,
    details: dict[str, Any] | None = None,
) -> OperationLog:
    entry = OperationLog(
        entity_type=entity_type,
        entity_id=entity_id,
        operation=operation,
        outcome=outcome,
        actor_id=actor_id,
        error_message=error_message,
        details=details,
    )
    db.add(entry)
    return entry


def _record_failure(
    db: Session,
    *,
    entity_type: str,
    entity_id: UUID,
    operation: str,
    actor_id: UUID | None,
    exc: Exception,
) -> None:
    details: dict[str, Any] | None = None
    if isinstance(exc, DomainError):
        details = {"code": exc.code}
    try:
        append_operation_log(
            db,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            outcome="started",
            actor_id=actor_id,
        )
        append_operation_log(
            db,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            outcome="failed",
            actor_id=actor_id,
            error_message=str(exc)[:2000],
            details=details,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to write operation log for %s %s (%s)", entity_type, entity_id, operation)


def with_entity_lock(
    db: Session,
    *,
    entity_type: str,
    entity_id: UUID,
    operation: str,
    actor_id: UUID | None,
    fn: Callable[[], T],
    backend=None,
) -> T:
    """Run ``fn`` as one atomic unit of work while holding the entity's lock.

    Raises ``Busy`` immediately when another operation holds the lock.
    Commits on success; on failure rolls back, appends started+failed log
    rows in a fresh transaction and re-raises.
    """
    lock_backend = backend or get_lock_backend(db)
    key = stable_lock_key(entity_id)

    if not lock_backend.try_acquire(db, key):
        db.rollback()
        logger.warning("entity_lock.busy entity=%s:%s op=%s", entity_type, entity_id, operation)
        raise Busy(
            f"{entity_type.capitalize()} {entity_id} is being modified by another operation. Please try again.",
            details={"entity_type": entity_type, "entity_id": str(entity_id), "operation": operation},
        )

    try:
        append_operation_log(
            db,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            outcome="started",
            actor_id=actor_id,
        )
        result = fn()
        append_operation_log(
            db,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            outcome="success",
            actor_id=actor_id,
        )
        db.commit()
        return result
    except Exception as exc:
        db.rollback()
        _record_failure(
            db,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            actor_id=actor_id,
            exc=exc,
        )
        raise
    finally:
        lock_backend.release(db, key)
