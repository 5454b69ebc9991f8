"""
Per-pool, per-direction cooldown tracking.

Durable storage (a SQL table or an S3 bucket) is preferred so cooldowns survive
restarts and are shared across hosts. When the durable backend is missing or
failing, the in-process map keeps cooldowns working for this process only.
Only the lock holder for a pool writes that pool's state.
"""
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, NamedTuple, Optional, Tuple, Union

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pool_autoscaler.common.timestamps import from_epoch, now_epoch, readable, to_epoch, utcnow
from pool_autoscaler.config import DIRECTIONS
from pool_autoscaler.errors import CooldownActiveError
from pool_autoscaler.state import schema

DEFAULT_AVAILABILITY_TTL = 300


def _check_direction(direction: str) -> None:
    if direction not in DIRECTIONS:
        raise ValueError(f"Unknown scaling direction: {direction}")


class CooldownState(NamedTuple):
    key: str
    last_scale_up_at: Optional[float]
    last_scale_down_at: Optional[float]

    def last_action_at(self, direction: str) -> Optional[float]:
        return self.last_scale_up_at if direction == 'up' else self.last_scale_down_at


class CooldownBackend(ABC):
    """Durable storage for cooldown timestamps."""
    name = 'base'
    errors: Tuple[type, ...] = ()

    @abstractmethod
    def available(self) -> bool:
        """Whether the backing store exists. May be slow; callers cache the answer."""
        raise NotImplementedError

    @abstractmethod
    def read(self, pool: str) -> Tuple[Any, Any]:
        """Return raw (last_scale_up_at, last_scale_down_at) values for a pool."""
        raise NotImplementedError

    @abstractmethod
    def write(self, pool: str, direction: str, at: float) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, pool: str = None) -> None:
        raise NotImplementedError


class SqlCooldownBackend(CooldownBackend):
    """Cooldown rows in the pool_autoscaler_state table."""
    name = 'sql'
    errors = (SQLAlchemyError,)

    def __init__(self, engine):
        self._engine = engine

    def available(self) -> bool:
        return schema.table_exists(self._engine, schema.STATE_TABLE)

    def read(self, pool: str) -> Tuple[Any, Any]:
        state = schema.state
        with self._engine.connect() as conn:
            row = conn.execute(
                select(state.c.last_scale_up_at, state.c.last_scale_down_at).where(state.c.key == pool)
            ).first()
        if row is None:
            return None, None
        return row[0], row[1]

    def write(self, pool: str, direction: str, at: float) -> None:
        state = schema.state
        column = 'last_scale_up_at' if direction == 'up' else 'last_scale_down_at'
        values = {column: from_epoch(at), 'updated_at': utcnow()}

        with self._engine.begin() as conn:
            updated = conn.execute(update(state).where(state.c.key == pool).values(**values)).rowcount
            if updated:
                return
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(state).values(key=pool, **values))
        except IntegrityError:
            # Row appeared between the update and the insert
            with self._engine.begin() as conn:
                conn.execute(update(state).where(state.c.key == pool).values(**values))

    def delete(self, pool: str = None) -> None:
        statement = delete(schema.state)
        if pool is not None:
            statement = statement.where(schema.state.c.key == pool)
        with self._engine.begin() as conn:
            conn.execute(statement)


class S3CooldownBackend(CooldownBackend):
    """One JSON object per pool in an S3 bucket."""
    name = 's3'
    errors = (ClientError, BotoCoreError)

    def __init__(self, aws_wrapper, bucket: str, prefix: str = 'autoscaling-state'):
        self._aws = aws_wrapper
        self.bucket = bucket
        self.prefix = prefix.rstrip('/')

    def _state_key(self, pool: str) -> str:
        return f"{self.prefix}/{pool}/cooldown-state.json"

    def available(self) -> bool:
        return self._aws.bucket_exists(self.bucket)

    def _read_document(self, pool: str) -> Dict[str, Any]:
        state_key = self._state_key(pool)
        try:
            content = self._aws.get_file_content_from_s3_bucket(self.bucket, state_key)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('NoSuchKey', '404'):
                logging.debug(f"No previous scaling state found at s3://{self.bucket}/{state_key}")
                return {}
            raise

        try:
            document = json.loads(content.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logging.warning(f"Error parsing JSON state data at s3://{self.bucket}/{state_key}: {e}")
            return {}
        return document if isinstance(document, dict) else {}

    def read(self, pool: str) -> Tuple[Any, Any]:
        document = self._read_document(pool)
        return document.get('last_scale_up_at'), document.get('last_scale_down_at')

    def write(self, pool: str, direction: str, at: float) -> None:
        document = self._read_document(pool)
        document.update({
            'pool': pool,
            f"last_scale_{direction}_at": at,
            'updated_at': now_epoch(),
        })
        self._aws.upload_bytes_to_s3(
            bucket=self.bucket,
            file_path=self._state_key(pool),
            content=json.dumps(document).encode('utf-8'),
            metadata={'pool': pool}
        )

    def delete(self, pool: str = None) -> None:
        if pool is not None:
            self._aws.delete_s3_objects(self.bucket, [self._state_key(pool)])
        else:
            keys = self._aws.list_s3_keys(self.bucket, f"{self.prefix}/")
            self._aws.delete_s3_objects(self.bucket, [k for k in keys if k.endswith('/cooldown-state.json')])


class CooldownStore:
    """
    Gates repeated same-direction scaling for each pool.

    Example:
        store = CooldownStore(SqlCooldownBackend(engine))
        if store.remaining('default', 'down', window=120) == 0:
            ...
            store.record('default', 'down')
    """

    def __init__(self, backend: CooldownBackend = None, availability_ttl: float = DEFAULT_AVAILABILITY_TTL):
        self._backend = backend
        self._availability_ttl = availability_ttl
        self._mutex = threading.Lock()
        self._memory: Dict[str, Dict[str, float]] = {}
        self._available: Optional[bool] = None
        self._checked_at: Optional[float] = None

    def invalidate_availability(self) -> None:
        """Forget the cached backend availability, e.g. after creating the state table."""
        with self._mutex:
            self._available = None
            self._checked_at = None

    def durable_available(self) -> bool:
        if self._backend is None:
            return False

        with self._mutex:
            if self._available is not None and time.monotonic() - self._checked_at < self._availability_ttl:
                return self._available

        try:
            available = bool(self._backend.available())
        except self._backend.errors as e:
            logging.warning(f"Cooldown backend {self._backend.name} availability check failed: {e}")
            available = False

        if not available:
            logging.info(f"Cooldown backend {self._backend.name} unavailable, using in-process cooldowns")

        with self._mutex:
            self._available = available
            self._checked_at = time.monotonic()
        return available

    def _memory_value(self, pool: str, direction: str) -> Optional[float]:
        with self._mutex:
            return self._memory.get(pool, {}).get(direction)

    def state(self, pool: str) -> CooldownState:
        """Last action times for a pool, merged from the durable store and this process."""
        durable_up = durable_down = None
        if self.durable_available():
            try:
                raw_up, raw_down = self._backend.read(pool)
                durable_up, durable_down = to_epoch(raw_up), to_epoch(raw_down)
            except self._backend.errors as e:
                logging.warning(f"[{pool}] Error reading cooldown state from {self._backend.name}: {e}")

        return CooldownState(
            key=pool,
            last_scale_up_at=_latest(durable_up, self._memory_value(pool, 'up')),
            last_scale_down_at=_latest(durable_down, self._memory_value(pool, 'down')),
        )

    def remaining(self, pool: str, direction: str, window: float) -> float:
        """
        Seconds left in the cooldown window for a pool and direction (0 when inactive).
        """
        _check_direction(direction)
        last = self.state(pool).last_action_at(direction)
        if last is None:
            return 0.0

        elapsed = now_epoch() - last
        remaining = max(0.0, window - elapsed)
        if remaining > 0:
            logging.info(f"[{pool}] In cooldown period for {direction} scaling. Last action: {readable(last)}, "
                         f"Remaining: {remaining:.2f}s")
        return remaining

    def check(self, pool: str, direction: str, window: float, current: int) -> float:
        """
        Like remaining(), except that scaling up from zero capacity is never blocked.
        """
        if direction == 'up' and current == 0:
            logging.info(f"[{pool}] Bypassing scale-up cooldown: pool is at zero capacity")
            return 0.0
        return self.remaining(pool, direction, window)

    def enforce(self, pool: str, direction: str, window: float, current: int) -> None:
        """
        Raises:
            CooldownActiveError: If the cooldown for this direction is still running
        """
        remaining = self.check(pool, direction, window, current)
        if remaining > 0:
            raise CooldownActiveError(remaining)

    def record(self, pool: str, direction: str, at: Union[float, datetime, str] = None) -> None:
        """Record a scaling action. Always mirrored in memory so it takes effect immediately."""
        _check_direction(direction)
        timestamp = now_epoch() if at is None else to_epoch(at)
        if timestamp is None:
            raise ValueError(f"Invalid timestamp for cooldown record: {at!r}")

        with self._mutex:
            self._memory.setdefault(pool, {})[direction] = timestamp

        if self.durable_available():
            try:
                self._backend.write(pool, direction, timestamp)
                logging.info(f"[{pool}] Saved {direction} scaling state to {self._backend.name} "
                             f"with timestamp {timestamp} ({readable(timestamp)})")
            except self._backend.errors as e:
                logging.warning(f"[{pool}] Error writing cooldown state to {self._backend.name}: {e}")

    def reset(self, pool: str = None) -> None:
        """Clear cooldowns for one pool, or for every pool when pool is None."""
        with self._mutex:
            if pool is None:
                self._memory.clear()
            else:
                self._memory.pop(pool, None)

        if self.durable_available():
            try:
                self._backend.delete(pool)
            except self._backend.errors as e:
                logging.warning(f"Error resetting cooldown state in {self._backend.name}: {e}")


def _latest(*values: Optional[float]) -> Optional[float]:
    present = [v for v in values if v is not None]
    return max(present) if present else None
