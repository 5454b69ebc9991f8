"""
Queue metrics snapshot and the provider interface.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from pool_autoscaler.errors import MetricsError

_COUNT_FIELDS = ('queue_depth', 'jobs_per_minute', 'claimed_jobs', 'failed_jobs', 'blocked_jobs', 'active_workers')


@dataclass(frozen=True)
class QueueSnapshot:
    """A point-in-time read of queue metrics for one pool."""
    queue_depth: int = 0
    oldest_job_age_seconds: float = 0.0
    jobs_per_minute: int = 0
    claimed_jobs: int = 0
    failed_jobs: int = 0
    blocked_jobs: int = 0
    active_workers: int = 0
    queues_breakdown: Dict[str, int] = field(default_factory=dict, hash=False, compare=False)
    collected_at: Optional[datetime] = None

    def __post_init__(self):
        for name in _COUNT_FIELDS:
            value = getattr(self, name)
            if value is None or value < 0:
                raise MetricsError(f"{name} must be >= 0, got {value!r}")
        if self.oldest_job_age_seconds is None or self.oldest_job_age_seconds < 0:
            raise MetricsError(f"oldest_job_age_seconds must be >= 0, got {self.oldest_job_age_seconds!r}")
        # Freeze a private copy so callers cannot mutate the snapshot through their dict
        object.__setattr__(self, 'queues_breakdown', dict(self.queues_breakdown or {}))
        if self.collected_at is None:
            object.__setattr__(self, 'collected_at', datetime.now(timezone.utc))

    @property
    def idle(self) -> bool:
        """True when there is neither pending nor claimed work."""
        return self.queue_depth == 0 and self.claimed_jobs == 0

    @property
    def latency_seconds(self) -> float:
        return self.oldest_job_age_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            'queue_depth': self.queue_depth,
            'oldest_job_age_seconds': self.oldest_job_age_seconds,
            'jobs_per_minute': self.jobs_per_minute,
            'claimed_jobs': self.claimed_jobs,
            'failed_jobs': self.failed_jobs,
            'blocked_jobs': self.blocked_jobs,
            'active_workers': self.active_workers,
            'queues_breakdown': dict(self.queues_breakdown),
            'collected_at': self.collected_at.isoformat() if self.collected_at else None,
        }


class MetricsProvider(ABC):
    """Source of queue snapshots for one pool."""

    @abstractmethod
    def collect(self) -> QueueSnapshot:
        """
        Collect a fresh snapshot.

        Raises:
            MetricsError: If the metrics source cannot be read
        """
        raise NotImplementedError


class StaticMetricsProvider(MetricsProvider):
    """Returns the same snapshot on every call. Useful for dry runs and tests."""

    def __init__(self, snapshot: QueueSnapshot = None, **counts):
        self._snapshot = snapshot or QueueSnapshot(**counts)

    def collect(self) -> QueueSnapshot:
        return self._snapshot
