"""
Cross-host mutual exclusion per pool.

The strategy is picked once from the storage backend:

- PostgreSQL: session-level advisory locks (pg_try_advisory_lock). Released
  automatically by the server if the holding connection dies.
- Any other SQL database: one row per lock key in pool_autoscaler_locks.
  Rows older than the staleness threshold are treated as abandoned.
- No database: an in-process lock table. Only coordinates within one process.

A lock that is already held is a normal outcome (try_acquire returns False).
A failing backend raises LockError.
"""
import logging
import os
import socket
import threading
import time
import uuid
import zlib
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, NamedTuple, Optional

from sqlalchemy import delete, insert, text
from sqlalchemy.exc import IntegrityError, ProgrammingError, SQLAlchemyError

from pool_autoscaler.common.timestamps import utcnow
from pool_autoscaler.errors import LockError
from pool_autoscaler.state import schema

DEFAULT_STALE_AFTER_SECONDS = 300
DEFAULT_POLL_INTERVAL = 0.5


def lock_id_for(key: str) -> int:
    """Deterministic 31-bit lock slot for a lock key (CRC32, stable across processes)."""
    return zlib.crc32(str(key).encode('utf-8')) & 0x7FFFFFFF


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LockHandle(NamedTuple):
    key: str
    lock_id: int
    holder_id: str
    acquired_at: datetime


class LockStrategy(ABC):
    """Common interface for the lock backends."""
    name = 'base'

    @abstractmethod
    def try_acquire(self, key: str, lock_id: int, holder_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def release(self, key: str, lock_id: int, holder_id: str) -> bool:
        raise NotImplementedError


class InProcessLockStrategy(LockStrategy):
    """Lock table kept in memory. Share one instance between controllers in a process."""
    name = 'in_process'

    def __init__(self):
        self._mutex = threading.Lock()
        self._holders: Dict[str, str] = {}

    def try_acquire(self, key: str, lock_id: int, holder_id: str) -> bool:
        with self._mutex:
            if key in self._holders:
                return False
            self._holders[key] = holder_id
            return True

    def release(self, key: str, lock_id: int, holder_id: str) -> bool:
        with self._mutex:
            if self._holders.get(key) != holder_id:
                return False
            del self._holders[key]
            return True


class AdvisoryLockStrategy(LockStrategy):
    """
    PostgreSQL session-level advisory locks.

    The lock belongs to the database session that took it, so the connection
    used for pg_try_advisory_lock is checked out of the pool and kept until
    release.
    """
    name = 'advisory'

    def __init__(self, engine):
        self._engine = engine
        self._mutex = threading.Lock()
        self._connections = {}

    def try_acquire(self, key: str, lock_id: int, holder_id: str) -> bool:
        try:
            conn = self._engine.connect()
        except SQLAlchemyError as e:
            raise LockError(f"Could not connect to lock backend for '{key}': {e}") from e

        try:
            acquired = conn.execute(text("SELECT pg_try_advisory_lock(:lock_id)"), {'lock_id': lock_id}).scalar()
            # End the implicit transaction; the session-level lock survives the commit
            conn.commit()
        except SQLAlchemyError as e:
            conn.close()
            raise LockError(f"Advisory lock query failed for '{key}' (id: {lock_id}): {e}") from e

        if acquired in (True, 't'):
            with self._mutex:
                self._connections[(key, holder_id)] = conn
            return True

        conn.close()
        return False

    def release(self, key: str, lock_id: int, holder_id: str) -> bool:
        with self._mutex:
            conn = self._connections.pop((key, holder_id), None)
        if conn is None:
            return False

        try:
            released = conn.execute(text("SELECT pg_advisory_unlock(:lock_id)"), {'lock_id': lock_id}).scalar()
            conn.commit()
        except SQLAlchemyError as e:
            # Dropping the session is the only other way to free a session-level lock
            conn.invalidate()
            raise LockError(f"Advisory unlock failed for '{key}' (id: {lock_id}), connection dropped: {e}") from e
        finally:
            conn.close()

        return released in (True, 't')


class TableLockStrategy(LockStrategy):
    """Row-per-key lock table for databases without advisory locks."""
    name = 'table'

    def __init__(self, engine, stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS):
        self._engine = engine
        self.stale_after_seconds = stale_after_seconds
        self._table_ready = False
        self._mutex = threading.Lock()
        # Used while the lock table cannot be created
        self._fallback = InProcessLockStrategy()

    def _ensure_table(self) -> bool:
        """
        Create the lock table on first use.

        Returns False when the database is reachable but refuses the DDL
        (e.g. missing CREATE privilege); locks are then coordinated in-process.

        Raises:
            LockError: If the database cannot be reached
        """
        with self._mutex:
            if self._table_ready:
                return True
            try:
                with self._engine.connect():
                    pass
            except SQLAlchemyError as e:
                raise LockError(f"Could not connect to lock backend: {e}") from e

            try:
                schema.create_tables(self._engine, locks=True, cooldowns=False, events=False)
            except ProgrammingError as e:
                logging.warning(f"Lock table {schema.LOCKS_TABLE} cannot be created, using in-process locks: {e}")
                return False
            except SQLAlchemyError as e:
                raise LockError(f"Could not create lock table {schema.LOCKS_TABLE}: {e}") from e
            self._table_ready = True
            return True

    def _cutoff(self) -> datetime:
        return utcnow() - timedelta(seconds=self.stale_after_seconds)

    def try_acquire(self, key: str, lock_id: int, holder_id: str) -> bool:
        if not self._ensure_table():
            return self._fallback.try_acquire(key, lock_id, holder_id)
        locks = schema.locks

        try:
            with self._engine.begin() as conn:
                reclaimed = conn.execute(
                    delete(locks).where(locks.c.key == key, locks.c.acquired_at < self._cutoff())
                ).rowcount
                if reclaimed:
                    logging.warning(f"Reclaimed stale lock '{key}' older than {self.stale_after_seconds}s")
                conn.execute(insert(locks).values(
                    key=key, lock_id=lock_id, holder_id=holder_id, acquired_at=utcnow()
                ))
            return True
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise LockError(f"Lock table query failed for '{key}': {e}") from e

    def release(self, key: str, lock_id: int, holder_id: str) -> bool:
        if self._fallback.release(key, lock_id, holder_id):
            return True

        locks = schema.locks
        try:
            with self._engine.begin() as conn:
                deleted = conn.execute(
                    delete(locks).where(locks.c.key == key, locks.c.holder_id == holder_id)
                ).rowcount
        except SQLAlchemyError as e:
            raise LockError(f"Lock table release failed for '{key}': {e}") from e

        if not deleted:
            logging.warning(f"Lock '{key}' was no longer owned by {holder_id} at release")
        return bool(deleted)

    def sweep_stale(self) -> int:
        """Delete every lock row older than the staleness threshold. Returns the number removed."""
        if not self._ensure_table():
            return 0
        try:
            with self._engine.begin() as conn:
                removed = conn.execute(delete(schema.locks).where(schema.locks.c.acquired_at < self._cutoff())).rowcount
        except SQLAlchemyError as e:
            raise LockError(f"Stale lock sweep failed: {e}") from e

        if removed:
            logging.info(f"Swept {removed} stale lock(s)")
        return removed


def resolve_lock_strategy(engine=None, stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS) -> LockStrategy:
    """
    Pick the lock strategy for a storage backend. Call once at wiring time.

    Args:
        engine: SQLAlchemy engine, or None when no durable store is configured
        stale_after_seconds: Staleness threshold for the table-based strategy

    Returns:
        LockStrategy: Strategy instance to share between controllers
    """
    if engine is None:
        logging.info("No durable store configured, using in-process locks")
        return InProcessLockStrategy()

    if engine.dialect.name == 'postgresql':
        logging.info("Using PostgreSQL advisory locks")
        return AdvisoryLockStrategy(engine)

    logging.info(f"Using table-based locks on {engine.dialect.name}")
    return TableLockStrategy(engine, stale_after_seconds=stale_after_seconds)


class DistributedLock:
    """
    Holds at most one pool lock at a time for its owner.

    Example:
        lock = DistributedLock(resolve_lock_strategy(engine))
        if lock.try_acquire('pool_autoscaler_default'):
            try:
                ...
            finally:
                lock.release()
    """

    def __init__(self, strategy: LockStrategy, holder_id: str = None):
        self.strategy = strategy
        self.holder_id = holder_id or default_holder_id()
        self._handle: Optional[LockHandle] = None

    @property
    def locked(self) -> bool:
        return self._handle is not None

    @property
    def handle(self) -> Optional[LockHandle]:
        return self._handle

    def try_acquire(self, key: str) -> bool:
        """
        Non-blocking acquire.

        Returns:
            bool: True if acquired, False if held elsewhere or already held by this instance

        Raises:
            LockError: If the lock backend fails
        """
        if self._handle is not None:
            return False

        lock_id = lock_id_for(key)
        if not self.strategy.try_acquire(key, lock_id, self.holder_id):
            logging.debug(f"Lock '{key}' (id: {lock_id}) is held by another instance")
            return False

        self._handle = LockHandle(key=key, lock_id=lock_id, holder_id=self.holder_id, acquired_at=utcnow())
        logging.debug(f"Acquired lock '{key}' (id: {lock_id}) as {self.holder_id} via {self.strategy.name}")
        return True

    def acquire_or_wait(self, key: str, timeout: float, poll_interval: float = DEFAULT_POLL_INTERVAL) -> bool:
        """Poll try_acquire until the lock is taken or the timeout expires."""
        deadline = time.monotonic() + timeout
        while True:
            if self.try_acquire(key):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(poll_interval, remaining))

    def release(self) -> bool:
        """
        Release the held lock. Safe to call repeatedly; returns False when nothing is held.
        """
        handle = self._handle
        if handle is None:
            return False

        self._handle = None
        try:
            released = self.strategy.release(handle.key, handle.lock_id, handle.holder_id)
        except LockError as e:
            logging.error(f"Error releasing lock '{handle.key}': {e}")
            return False

        logging.debug(f"Released lock '{handle.key}' (id: {handle.lock_id})")
        return released

    @contextmanager
    def hold(self, key: str, timeout: float = None):
        """
        Hold the lock for the duration of a with-block.

        Raises:
            LockError: If the lock cannot be acquired
        """
        acquired = self.acquire_or_wait(key, timeout) if timeout else self.try_acquire(key)
        if not acquired:
            raise LockError(f"Could not acquire lock '{key}' (id: {lock_id_for(key)})")
        try:
            yield self._handle
        finally:
            self.release()
