"""
Scaling decisions.

decide() is a pure function of (pool config, queue snapshot, current capacity):
it performs no I/O and returns the same decision for the same inputs.
"""
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from pool_autoscaler.config import PoolConfig
from pool_autoscaler.metrics import QueueSnapshot


class ScalingAction(str, Enum):
    SCALE_UP = 'scale_up'
    SCALE_DOWN = 'scale_down'
    NO_CHANGE = 'no_change'


@dataclass(frozen=True)
class ScalingDecision:
    """The outcome of one evaluation. Never mutated; use with_target() to derive a new one."""
    action: ScalingAction
    from_count: int
    to_count: int
    reason: str

    @property
    def scale_up(self) -> bool:
        return self.action == ScalingAction.SCALE_UP

    @property
    def scale_down(self) -> bool:
        return self.action == ScalingAction.SCALE_DOWN

    @property
    def no_change(self) -> bool:
        return self.action == ScalingAction.NO_CHANGE

    @property
    def delta(self) -> int:
        return self.to_count - self.from_count

    @property
    def direction(self) -> Optional[str]:
        """'up', 'down' or None, as used by the cooldown store."""
        if self.scale_up:
            return 'up'
        if self.scale_down:
            return 'down'
        return None

    def with_target(self, to_count: int) -> 'ScalingDecision':
        return replace(self, to_count=to_count)

    def to_dict(self):
        return {
            'action': self.action.value,
            'from': self.from_count,
            'to': self.to_count,
            'reason': self.reason,
        }


def _no_change(current: int, reason: str) -> ScalingDecision:
    return ScalingDecision(action=ScalingAction.NO_CHANGE, from_count=current, to_count=current, reason=reason)


def clamp(value: int, config: PoolConfig) -> int:
    """Clamp a worker count to the pool's [min_workers, max_workers] range."""
    return max(config.min_workers, min(config.max_workers, value))


def scale_up_thresholds(config: PoolConfig, current: int):
    """Return (queue_depth, latency_seconds) thresholds, using the scale-from-zero pair at zero capacity."""
    if current == 0:
        return config.scale_from_zero_queue_depth, config.scale_from_zero_latency_seconds
    return config.scale_up_queue_depth, config.scale_up_latency_seconds


def _format_seconds(value: float) -> str:
    return f"{round(value)}s"


def should_scale_up(config: PoolConfig, snapshot: QueueSnapshot, current: int) -> bool:
    """True when ANY high-water condition holds."""
    up_depth, up_latency = scale_up_thresholds(config, current)
    return snapshot.queue_depth >= up_depth or snapshot.oldest_job_age_seconds >= up_latency


def should_scale_down(config: PoolConfig, snapshot: QueueSnapshot) -> bool:
    """True when ALL low-water conditions hold, or the queue is idle."""
    if snapshot.idle:
        return True
    return (snapshot.queue_depth <= config.scale_down_queue_depth and
            snapshot.oldest_job_age_seconds <= config.scale_down_latency_seconds)


def workers_to_add(config: PoolConfig, snapshot: QueueSnapshot, current: int) -> int:
    """Number of workers a scale-up adds under the configured strategy."""
    if config.scaling_strategy != 'proportional':
        return config.scale_up_increment

    up_depth, up_latency = scale_up_thresholds(config, current)

    jobs_over_threshold = max(snapshot.queue_depth - up_depth, 0)
    workers_for_depth = math.ceil(jobs_over_threshold / config.scale_up_jobs_per_worker)

    latency_over_threshold = max(snapshot.oldest_job_age_seconds - up_latency, 0)
    workers_for_latency = math.ceil(latency_over_threshold / config.scale_up_latency_per_worker)

    return max(workers_for_depth, workers_for_latency, 1)


def workers_to_remove(config: PoolConfig, snapshot: QueueSnapshot, current: int) -> int:
    """Number of workers a scale-down removes under the configured strategy."""
    if config.scaling_strategy != 'proportional':
        return config.scale_down_decrement

    # An idle queue drops straight to the floor
    if snapshot.idle:
        return max(current - config.min_workers, config.scale_down_decrement)

    jobs_under_capacity = max(config.scale_down_queue_depth - snapshot.queue_depth, 0)
    removable = math.ceil(jobs_under_capacity / config.scale_down_jobs_per_worker)
    return max(removable, config.scale_down_decrement)


def _scale_up_reason(config: PoolConfig, snapshot: QueueSnapshot, current: int, delta: int) -> str:
    up_depth, up_latency = scale_up_thresholds(config, current)
    reasons = []
    if snapshot.queue_depth >= up_depth:
        reasons.append(f"queue_depth={snapshot.queue_depth} >= {up_depth}")
    if snapshot.oldest_job_age_seconds >= up_latency:
        reasons.append(f"latency={_format_seconds(snapshot.oldest_job_age_seconds)} >= "
                       f"{_format_seconds(up_latency)}")

    reason = ', '.join(reasons)
    if current == 0:
        reason += ' [scale-from-zero]'
    if config.scaling_strategy == 'proportional':
        reason += f" [proportional: +{delta} workers]"
    return reason


def _scale_down_reason(config: PoolConfig, snapshot: QueueSnapshot, delta: int) -> str:
    if snapshot.idle:
        reason = 'queue is idle (no pending or claimed jobs)'
    else:
        reason = (f"queue_depth={snapshot.queue_depth} <= {config.scale_down_queue_depth}, "
                  f"latency={_format_seconds(snapshot.oldest_job_age_seconds)} <= "
                  f"{_format_seconds(config.scale_down_latency_seconds)}")
    if config.scaling_strategy == 'proportional':
        reason += f" [proportional: -{delta} workers]"
    return reason


def decide(config: PoolConfig, snapshot: QueueSnapshot, current: int) -> ScalingDecision:
    """
    Decide how the pool should be scaled.

    Scale-up is evaluated before scale-down, so when both the high-water and
    the low-water conditions hold (possible with overlapping thresholds or the
    idle shortcut at zero capacity) scale-up wins.

    Args:
        config: Pool configuration
        snapshot: Current queue metrics
        current: Current worker count reported by the platform

    Returns:
        ScalingDecision: target always within [min_workers, max_workers] for an enabled pool
    """
    if not config.enabled:
        return _no_change(current, 'disabled')

    # Capacity changed outside the autoscaler; bring it back inside the configured range
    if current > config.max_workers:
        return ScalingDecision(ScalingAction.SCALE_DOWN, current, config.max_workers,
                               f"current={current} above max_workers ({config.max_workers})")
    if current < config.min_workers:
        return ScalingDecision(ScalingAction.SCALE_UP, current, config.min_workers,
                               f"current={current} below min_workers ({config.min_workers})")

    if should_scale_up(config, snapshot, current):
        if current >= config.max_workers:
            return _no_change(current, f"at max_workers ({config.max_workers})")
        target = clamp(current + workers_to_add(config, snapshot, current), config)
        if target == current:
            return _no_change(current, f"at max_workers ({config.max_workers})")
        return ScalingDecision(ScalingAction.SCALE_UP, current, target,
                               _scale_up_reason(config, snapshot, current, target - current))

    if should_scale_down(config, snapshot):
        if current <= config.min_workers:
            return _no_change(current, f"at min_workers ({config.min_workers})")
        target = clamp(current - workers_to_remove(config, snapshot, current), config)
        if target == current:
            return _no_change(current, f"at min_workers ({config.min_workers})")
        return ScalingDecision(ScalingAction.SCALE_DOWN, current, target,
                               _scale_down_reason(config, snapshot, current - target))

    return _no_change(current, f"metrics within normal range (depth={snapshot.queue_depth}, "
                               f"latency={_format_seconds(snapshot.oldest_job_age_seconds)})")
