"""
One autoscaling cycle for one pool.

A cycle walks a fixed sequence: lock, collect metrics, read capacity,
decide, check cooldown, apply, record. Every failure collapses into a
CycleOutcome and the pool lock is released on every path.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from pool_autoscaler.adapters import ScaleAdapter, build_adapter
from pool_autoscaler.aws.wrapper import AWSWrapper
from pool_autoscaler.config import PoolConfig, Settings
from pool_autoscaler.decision import ScalingDecision, clamp, decide
from pool_autoscaler.errors import CooldownActiveError
from pool_autoscaler.metrics import MetricsProvider, QueueSnapshot
from pool_autoscaler.queue_metrics import build_metrics_provider
from pool_autoscaler.state.cooldown import CooldownStore, S3CooldownBackend, SqlCooldownBackend
from pool_autoscaler.state.events import EventRecorder
from pool_autoscaler.state.lock import DistributedLock, LockStrategy, resolve_lock_strategy


class CycleStatus(str, Enum):
    SUCCESS = 'success'
    SKIPPED = 'skipped'
    ERROR = 'error'


@dataclass(frozen=True)
class CycleOutcome:
    """Result of one controller cycle."""
    status: CycleStatus
    pool: str
    decision: Optional[ScalingDecision] = None
    snapshot: Optional[QueueSnapshot] = None
    reason: Optional[str] = None
    error: Optional[BaseException] = None
    executed_at: Optional[datetime] = None
    # Count handed to the platform, None when nothing was applied
    actuated_count: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == CycleStatus.SUCCESS

    @property
    def skipped(self) -> bool:
        return self.status == CycleStatus.SKIPPED

    @property
    def scaled(self) -> bool:
        return self.succeeded and self.decision is not None and not self.decision.no_change

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'pool': self.pool,
            'decision': self.decision.to_dict() if self.decision else None,
            'snapshot': self.snapshot.to_dict() if self.snapshot else None,
            'reason': self.reason,
            'error': f"{type(self.error).__name__}: {self.error}" if self.error else None,
            'executed_at': self.executed_at.isoformat() if self.executed_at else None,
            'actuated_count': self.actuated_count,
            'scaled': self.scaled,
        }


class Controller:
    """
    Runs scaling cycles for one pool.

    Args:
        config: Pool configuration
        metrics_provider: Source of queue snapshots
        adapter: Platform adapter that reads and sets capacity
        lock: Lock owned by this controller
        cooldowns: Cooldown store, usually shared between pools
        events: Optional event recorder
    """

    def __init__(self, config: PoolConfig, metrics_provider: MetricsProvider, adapter: ScaleAdapter,
                 lock: DistributedLock, cooldowns: CooldownStore, events: EventRecorder = None):
        self.config = config
        self.metrics_provider = metrics_provider
        self.adapter = adapter
        self.lock = lock
        self.cooldowns = cooldowns
        self.events = events

    @property
    def pool(self) -> str:
        return self.config.name

    def run(self, wait: bool = False) -> CycleOutcome:
        """
        Run one cycle. Never raises.

        Args:
            wait: Wait up to lock_timeout_seconds for the pool lock instead of
                skipping straight away when another instance holds it
        """
        if not self.config.enabled:
            return self._skipped('disabled')

        try:
            if wait:
                acquired = self.lock.acquire_or_wait(self.config.lock_key, self.config.lock_timeout_seconds)
            else:
                acquired = self.lock.try_acquire(self.config.lock_key)
        except Exception as e:
            return self._error(e)

        if not acquired:
            return self._skipped('lock held')

        try:
            return self._execute()
        except Exception as e:
            return self._error(e)
        finally:
            self.lock.release()

    def _execute(self) -> CycleOutcome:
        config = self.config

        snapshot = self.metrics_provider.collect()
        current = self.adapter.current_count()
        decision = decide(config, snapshot, current)

        logging.info(f"[{self.pool}] Evaluated: action={decision.action.value} "
                     f"workers={decision.from_count}->{decision.to_count} "
                     f"queue_depth={snapshot.queue_depth} latency={round(snapshot.latency_seconds)}s "
                     f"reason=\"{decision.reason}\"")

        if decision.no_change:
            if config.record_all_events:
                self._record(decision.action.value, decision.from_count, decision.to_count, decision.reason, snapshot)
            return self._outcome(CycleStatus.SUCCESS, decision=decision, snapshot=snapshot, reason=decision.reason)

        direction = decision.direction
        try:
            self.cooldowns.enforce(self.pool, direction, config.effective_cooldown(direction), current)
        except CooldownActiveError as e:
            return self._skipped(f"cooldown, {round(e.remaining_seconds)} s remaining",
                                 decision=decision, snapshot=snapshot)

        # Another instance may have scaled since the decision was made
        verified = self.adapter.current_count()
        if verified != decision.from_count:
            logging.warning(f"[{self.pool}] Worker count changed during decision: "
                            f"expected={decision.from_count}, actual={verified}")
            if decision.scale_up and verified >= config.max_workers:
                return self._skipped(f"aborted scale_up: already at max_workers ({verified})",
                                     decision=decision, snapshot=snapshot)
            if decision.scale_down and verified <= config.min_workers:
                return self._skipped(f"aborted scale_down: already at min_workers ({verified})",
                                     decision=decision, snapshot=snapshot)

        target = clamp(decision.to_count, config)
        if target != decision.to_count:
            logging.warning(f"[{self.pool}] Clamping target from {decision.to_count} to {target} "
                            f"(limits: {config.min_workers}-{config.max_workers})")
            decision = decision.with_target(target)

        actuated = self.adapter.apply(target)
        self.cooldowns.record(self.pool, direction)
        self._record(decision.action.value, decision.from_count, decision.to_count, decision.reason, snapshot)

        prefix = '[DRY RUN] ' if config.dry_run else ''
        logging.info(f"{prefix}[{self.pool}] Scaling {decision.action.value}: "
                     f"{decision.from_count} -> {decision.to_count} workers ({decision.reason})")

        return self._outcome(CycleStatus.SUCCESS, decision=decision, snapshot=snapshot,
                             reason=decision.reason, actuated_count=actuated)

    def _outcome(self, status: CycleStatus, **kwargs) -> CycleOutcome:
        return CycleOutcome(status=status, pool=self.pool, executed_at=datetime.now(timezone.utc), **kwargs)

    def _skipped(self, reason: str, decision: ScalingDecision = None, snapshot: QueueSnapshot = None) -> CycleOutcome:
        logging.info(f"[{self.pool}] Skipped: {reason}")
        self._record('skipped',
                     decision.from_count if decision else 0,
                     decision.to_count if decision else 0,
                     reason, snapshot)
        return self._outcome(CycleStatus.SKIPPED, decision=decision, snapshot=snapshot, reason=reason)

    def _error(self, error: Exception) -> CycleOutcome:
        reason = f"{type(error).__name__}: {error}"
        logging.error(f"[{self.pool}] Error: {reason}", exc_info=True)
        self._record('error', 0, 0, reason, None)
        return self._outcome(CycleStatus.ERROR, reason=reason, error=error)

    def _record(self, action: str, from_count: int, to_count: int, reason: str,
                snapshot: Optional[QueueSnapshot]) -> None:
        if self.events is None or not self.config.record_events:
            return
        try:
            self.events.append(self.pool, action, from_count, to_count, reason,
                               snapshot=snapshot, dry_run=self.config.dry_run)
        except Exception as e:
            logging.warning(f"[{self.pool}] Failed to record {action} event: {e}")


def build_cooldown_store(settings: Settings, engine=None, aws_wrapper: AWSWrapper = None) -> CooldownStore:
    """
    Cooldown store for the configured backing: database first, then S3, then in-process only.
    """
    if engine is not None:
        backend = SqlCooldownBackend(engine)
    elif settings.s3_state_bucket:
        backend = S3CooldownBackend(aws_wrapper or AWSWrapper(sso_profile_name=settings.sso_profile,
                                                               region_name=settings.region),
                                    settings.s3_state_bucket, settings.s3_state_prefix)
    else:
        backend = None
    return CooldownStore(backend, availability_ttl=settings.state_cache_ttl_seconds)


def build_controller(config: PoolConfig, settings: Settings, engine=None, lock_strategy: LockStrategy = None,
                     cooldowns: CooldownStore = None, events: EventRecorder = None,
                     aws_wrapper: AWSWrapper = None) -> Controller:
    """
    Wire a controller for one pool.

    Shared pieces (lock strategy, cooldown store, event recorder, AWS wrapper)
    should be passed in when building several pools so that they are created
    once.

    Raises:
        ConfigurationError: If the adapter or metrics provider is misconfigured
    """
    if aws_wrapper is None and (config.adapter_type.lower() == 'ecs' or config.metrics_type.lower() == 'sqs'):
        aws_wrapper = AWSWrapper(sso_profile_name=settings.sso_profile, region_name=settings.region)

    if lock_strategy is None:
        lock_strategy = resolve_lock_strategy(engine, stale_after_seconds=settings.lock_stale_after_seconds)
    if cooldowns is None:
        cooldowns = build_cooldown_store(settings, engine=engine, aws_wrapper=aws_wrapper)
    if events is None and engine is not None:
        events = EventRecorder(engine)

    return Controller(
        config=config,
        metrics_provider=build_metrics_provider(config, aws_wrapper),
        adapter=build_adapter(config, aws_wrapper=aws_wrapper),
        lock=DistributedLock(lock_strategy),
        cooldowns=cooldowns,
        events=events,
    )


def run_all(controllers: Iterable[Controller]) -> Dict[str, CycleOutcome]:
    """Run one cycle per pool. Pools are independent: one failing does not stop the others."""
    outcomes = {}
    for controller in controllers:
        outcome = controller.run()
        outcomes[controller.pool] = outcome
        logging.info(f"[{controller.pool}] Cycle finished with status {outcome.status.value}"
                     + (f": {outcome.reason}" if outcome.reason else ""))
    return outcomes
