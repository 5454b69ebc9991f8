"""
Best-effort audit trail of scaling outcomes.

Events are append-only. They are only removed by the retention sweep
(EventRecorder.cleanup). Recording never raises: failures are logged and the
cycle carries on.
"""
import json
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import SQLAlchemyError

from pool_autoscaler.common.timestamps import utcnow
from pool_autoscaler.metrics import QueueSnapshot
from pool_autoscaler.state import schema

ACTIONS = ('scale_up', 'scale_down', 'no_change', 'skipped', 'error')
AVAILABILITY_TTL = 300


class ScaleEvent(NamedTuple):
    id: Optional[int]
    pool: str
    action: str
    from_count: int
    to_count: int
    reason: str
    queue_depth: int
    latency_seconds: float
    snapshot_json: Optional[str]
    dry_run: bool
    created_at: datetime

    @property
    def scaled(self) -> bool:
        return self.action in ('scale_up', 'scale_down')

    @property
    def snapshot(self) -> Optional[Dict[str, Any]]:
        if not self.snapshot_json:
            return None
        try:
            return json.loads(self.snapshot_json)
        except json.JSONDecodeError:
            return None


def _event_from_row(row) -> ScaleEvent:
    return ScaleEvent(
        id=row.id,
        pool=row.pool,
        action=row.action,
        from_count=int(row.from_count),
        to_count=int(row.to_count),
        reason=row.reason,
        queue_depth=int(row.queue_depth or 0),
        latency_seconds=float(row.latency_seconds or 0.0),
        snapshot_json=row.snapshot_json,
        dry_run=bool(row.dry_run),
        created_at=row.created_at,
    )


def _default_stats() -> Dict[str, Any]:
    stats = {'total': 0, 'avg_queue_depth': 0.0, 'avg_latency': 0.0}
    for action in ACTIONS:
        stats[f"{action}_count"] = 0
    return stats


class EventRecorder:
    """Writes ScaleEvents to the pool_autoscaler_events table when it exists."""

    def __init__(self, engine):
        self._engine = engine
        self._mutex = threading.Lock()
        self._available: Optional[bool] = None
        self._checked_at: Optional[float] = None

    def invalidate_availability(self) -> None:
        with self._mutex:
            self._available = None
            self._checked_at = None

    @property
    def available(self) -> bool:
        with self._mutex:
            if self._available is not None and time.monotonic() - self._checked_at < AVAILABILITY_TTL:
                return self._available

        available = schema.table_exists(self._engine, schema.EVENTS_TABLE)
        if not available:
            logging.info(f"Table {schema.EVENTS_TABLE} not found, event recording disabled")

        with self._mutex:
            self._available = available
            self._checked_at = time.monotonic()
        return available

    def append(self, pool: str, action: str, from_count: int, to_count: int, reason: str,
               snapshot: QueueSnapshot = None, dry_run: bool = False, at: datetime = None) -> Optional[ScaleEvent]:
        """
        Append one event.

        Returns:
            ScaleEvent: The stored event, or None if recording is disabled or failed
        """
        if action not in ACTIONS:
            logging.warning(f"[{pool}] Not recording event with unknown action: {action}")
            return None
        if not self.available:
            return None

        created_at = at or utcnow()
        values = {
            'pool': pool,
            'action': action,
            'from_count': from_count,
            'to_count': to_count,
            'reason': reason,
            'queue_depth': snapshot.queue_depth if snapshot else 0,
            'latency_seconds': snapshot.oldest_job_age_seconds if snapshot else 0.0,
            'snapshot_json': json.dumps(snapshot.to_dict()) if snapshot else None,
            'dry_run': bool(dry_run),
            'created_at': created_at,
        }

        try:
            with self._engine.begin() as conn:
                result = conn.execute(insert(schema.events).values(**values))
                event_id = result.inserted_primary_key[0] if result.inserted_primary_key else None
        except SQLAlchemyError as e:
            logging.warning(f"[{pool}] Failed to record {action} event: {e}")
            return None

        return ScaleEvent(id=event_id, **values)

    def recent(self, limit: int = 50, pool: str = None) -> List[ScaleEvent]:
        events = schema.events
        statement = select(events).order_by(events.c.created_at.desc(), events.c.id.desc()).limit(int(limit))
        if pool is not None:
            statement = statement.where(events.c.pool == pool)
        return self._fetch(statement)

    def by_action(self, action: str, limit: int = 50) -> List[ScaleEvent]:
        events = schema.events
        statement = (select(events).where(events.c.action == action)
                     .order_by(events.c.created_at.desc(), events.c.id.desc()).limit(int(limit)))
        return self._fetch(statement)

    def _fetch(self, statement) -> List[ScaleEvent]:
        if not self.available:
            return []
        try:
            with self._engine.connect() as conn:
                return [_event_from_row(row) for row in conn.execute(statement)]
        except SQLAlchemyError as e:
            logging.warning(f"Failed to query scale events: {e}")
            return []

    def count(self, since: datetime = None) -> int:
        if not self.available:
            return 0
        events = schema.events
        statement = select(func.count()).select_from(events)
        if since is not None:
            statement = statement.where(events.c.created_at >= since)
        try:
            with self._engine.connect() as conn:
                return int(conn.execute(statement).scalar() or 0)
        except SQLAlchemyError as e:
            logging.warning(f"Failed to count scale events: {e}")
            return 0

    def stats(self, since: datetime = None, pool: str = None) -> Dict[str, Any]:
        """Per-action counts and weighted averages of queue depth and latency over a period."""
        stats = _default_stats()
        if not self.available:
            return stats

        events = schema.events
        since = since or utcnow() - timedelta(hours=24)
        statement = (select(events.c.action,
                            func.count().label('event_count'),
                            func.avg(events.c.queue_depth).label('avg_queue_depth'),
                            func.avg(events.c.latency_seconds).label('avg_latency'))
                     .where(events.c.created_at >= since)
                     .group_by(events.c.action))
        if pool is not None:
            statement = statement.where(events.c.pool == pool)

        try:
            with self._engine.connect() as conn:
                rows = conn.execute(statement).all()
        except SQLAlchemyError as e:
            logging.warning(f"Failed to compute scale event stats: {e}")
            return stats

        for row in rows:
            count = int(row.event_count)
            stats['total'] += count
            stats[f"{row.action}_count"] = count
            stats['avg_queue_depth'] += float(row.avg_queue_depth or 0) * count
            stats['avg_latency'] += float(row.avg_latency or 0) * count

        if stats['total']:
            stats['avg_queue_depth'] /= stats['total']
            stats['avg_latency'] /= stats['total']
        return stats

    def cleanup(self, keep_days: int = 30) -> int:
        """Retention sweep: delete events older than keep_days. Returns the number deleted."""
        if not self.available:
            return 0
        cutoff = utcnow() - timedelta(days=keep_days)
        try:
            with self._engine.begin() as conn:
                deleted = conn.execute(delete(schema.events).where(schema.events.c.created_at < cutoff)).rowcount
        except SQLAlchemyError as e:
            logging.warning(f"Failed to clean up scale events: {e}")
            return 0

        logging.info(f"Deleted {deleted} scale event(s) older than {keep_days} days")
        return deleted
