import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from retry.api import retry_call

from pool_autoscaler.errors import ConfigurationError, TransientPlatformAPIError

# Transient failures: 3 attempts, sleeping 1s then 2s between them
RETRY_TRIES = 3
RETRY_DELAY = 1
RETRY_BACKOFF = 2


class ScaleAdapter(ABC):
    """
    Actuates worker capacity for one pool on a specific platform.

    Subclasses implement current_count(), _apply() and configuration_errors().
    Transient failures are raised as TransientPlatformAPIError from inside
    with_retry() so they are retried; any other PlatformAPIError is surfaced
    immediately.
    """
    name = 'base'

    def __init__(self, adapter_config: Dict[str, Any] = None, dry_run: bool = False, pool: str = 'default'):
        self.adapter_config = dict(adapter_config or {})
        self.dry_run = dry_run
        self.pool = pool

    def validate(self) -> None:
        """
        Raises:
            ConfigurationError: If required adapter settings are missing
        """
        errors = self.configuration_errors()
        if errors:
            raise ConfigurationError(f"{self.name} adapter for pool '{self.pool}' is misconfigured: "
                                     f"{', '.join(errors)}")

    def configuration_errors(self) -> List[str]:
        return []

    @property
    def configured(self) -> bool:
        return not self.configuration_errors()

    @abstractmethod
    def current_count(self) -> int:
        """Current worker count. A resource removed at zero capacity reports 0."""
        raise NotImplementedError

    @abstractmethod
    def _apply(self, target: int) -> int:
        raise NotImplementedError

    def apply(self, target: int) -> int:
        """
        Scale to the target worker count.

        In dry-run mode the read-only calls still run, but nothing is changed.

        Returns:
            int: The resulting (or, in dry-run mode, would-be) worker count
        """
        if isinstance(target, bool) or not isinstance(target, int) or target < 0:
            raise ValueError(f"Target worker count must be a non-negative integer, got {target!r}")

        if self.dry_run:
            current = self.current_count()
            logging.info(f"[DRY RUN] [{self.pool}] Would scale {self.describe_target()} from {current} to {target}")
            return target

        result = self._apply(target)
        logging.info(f"[{self.pool}] Scaled {self.describe_target()} to {result}")
        return result

    def describe_target(self) -> str:
        """Human readable name of the scaled resource, for log lines."""
        return self.name

    def with_retry(self, func, *args, **kwargs):
        return retry_call(
            func,
            fargs=args,
            fkwargs=kwargs,
            exceptions=TransientPlatformAPIError,
            tries=RETRY_TRIES,
            delay=RETRY_DELAY,
            backoff=RETRY_BACKOFF,
            logger=logging.getLogger(__name__),
        )
