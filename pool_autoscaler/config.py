import os
import re
from dataclasses import dataclass, field, fields
from typing import Dict, Any, List, Optional, NamedTuple

from pool_autoscaler.errors import ConfigurationError

VALID_SCALING_STRATEGIES = ('fixed', 'proportional')
DIRECTIONS = ('up', 'down')

_QUOTED_SYMBOL = re.compile(r'^:[A-Za-z_][A-Za-z0-9_]*$')


def normalize_pool_name(value: Any) -> str:
    """
    Normalize a pool identifier to its canonical string form.

    Pool names arrive from config files, environment variables and trigger
    payloads. A value such as ":default" is almost always a YAML/JSON symbol
    that was quoted by mistake, so it is rejected rather than guessed at.

    Args:
        value: Raw pool identifier

    Returns:
        str: Canonical pool name

    Raises:
        ConfigurationError: If the identifier is empty, not a string, or a quoted symbol
    """
    if not isinstance(value, str):
        raise ConfigurationError(f"Pool name must be a string, got {type(value).__name__}: {value!r}")

    name = value.strip()
    if not name:
        raise ConfigurationError("Pool name cannot be empty")

    if _QUOTED_SYMBOL.match(name):
        bare = name[1:]
        raise ConfigurationError(
            f'Invalid pool name: received string "{name}" instead of pool name "{bare}". '
            f'Remove the leading colon in your trigger payload or config, change:\n'
            f'  - "{name}"\n'
            f'to:\n'
            f'  - {bare}'
        )

    return name


@dataclass(frozen=True)
class PoolConfig:
    """Scaling configuration for one worker pool. Validated on construction."""
    name: str

    # Capacity limits
    min_workers: int = 1
    max_workers: int = 10

    # Scale-up thresholds
    scale_up_queue_depth: int = 100
    scale_up_latency_seconds: float = 300
    scale_up_increment: int = 1

    # Scale-down thresholds
    scale_down_queue_depth: int = 10
    scale_down_latency_seconds: float = 30
    scale_down_decrement: int = 1

    # Lower thresholds used only when the pool is at zero capacity
    scale_from_zero_queue_depth: int = 1
    scale_from_zero_latency_seconds: float = 1.0

    # Strategy
    scaling_strategy: str = 'fixed'
    scale_up_jobs_per_worker: int = 50
    scale_up_latency_per_worker: float = 60
    scale_down_jobs_per_worker: int = 50

    # Cooldowns
    cooldown_seconds: float = 120
    scale_up_cooldown_seconds: Optional[float] = None
    scale_down_cooldown_seconds: Optional[float] = None

    # Locking
    lock_key: Optional[str] = None
    lock_timeout_seconds: float = 30

    # Behaviour
    enabled: bool = True
    dry_run: bool = False
    record_events: bool = True
    record_all_events: bool = False

    # Platform and metrics source
    adapter_type: str = 'heroku'
    adapter_config: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    metrics_type: str = 'sqs'
    metrics_config: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'name', normalize_pool_name(self.name))
        object.__setattr__(self, 'scaling_strategy', str(self.scaling_strategy).lower())
        if not self.lock_key:
            object.__setattr__(self, 'lock_key', f"pool_autoscaler_{self.name}")
        self._validate()

    def _validate(self) -> None:
        errors = []

        # Range checks below need real numbers
        for name in sorted(_INT_FIELDS | _FLOAT_FIELDS):
            value = getattr(self, name)
            if value is None and name in _NULLABLE_FIELDS:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f"{name} must be a number, got {value!r}")
        if errors:
            raise ConfigurationError(f"Invalid configuration for pool '{self.name}': {', '.join(errors)}")

        if self.min_workers < 0:
            errors.append('min_workers must be >= 0')
        if self.max_workers <= 0:
            errors.append('max_workers must be > 0')
        if self.min_workers > self.max_workers:
            errors.append('min_workers cannot exceed max_workers')

        if self.scale_up_queue_depth <= 0:
            errors.append('scale_up_queue_depth must be > 0')
        if self.scale_up_latency_seconds <= 0:
            errors.append('scale_up_latency_seconds must be > 0')
        if self.scale_up_increment <= 0:
            errors.append('scale_up_increment must be > 0')

        if self.scale_down_queue_depth < 0:
            errors.append('scale_down_queue_depth must be >= 0')
        if self.scale_down_latency_seconds < 0:
            errors.append('scale_down_latency_seconds must be >= 0')
        if self.scale_down_decrement <= 0:
            errors.append('scale_down_decrement must be > 0')

        if self.scale_from_zero_queue_depth < 0:
            errors.append('scale_from_zero_queue_depth must be >= 0')
        if self.scale_from_zero_latency_seconds < 0:
            errors.append('scale_from_zero_latency_seconds must be >= 0')

        if self.scaling_strategy not in VALID_SCALING_STRATEGIES:
            errors.append(f"scaling_strategy must be one of: {', '.join(VALID_SCALING_STRATEGIES)}")
        if self.scale_up_jobs_per_worker <= 0:
            errors.append('scale_up_jobs_per_worker must be > 0')
        if self.scale_up_latency_per_worker <= 0:
            errors.append('scale_up_latency_per_worker must be > 0')
        if self.scale_down_jobs_per_worker <= 0:
            errors.append('scale_down_jobs_per_worker must be > 0')

        if self.cooldown_seconds < 0:
            errors.append('cooldown_seconds must be >= 0')
        if self.scale_up_cooldown_seconds is not None and self.scale_up_cooldown_seconds < 0:
            errors.append('scale_up_cooldown_seconds must be >= 0')
        if self.scale_down_cooldown_seconds is not None and self.scale_down_cooldown_seconds < 0:
            errors.append('scale_down_cooldown_seconds must be >= 0')

        if self.lock_timeout_seconds <= 0:
            errors.append('lock_timeout_seconds must be > 0')

        if errors:
            raise ConfigurationError(f"Invalid configuration for pool '{self.name}': {', '.join(errors)}")

    def effective_cooldown(self, direction: str) -> float:
        """Cooldown window in seconds for 'up' or 'down' scaling."""
        if direction == 'up':
            override = self.scale_up_cooldown_seconds
        elif direction == 'down':
            override = self.scale_down_cooldown_seconds
        else:
            raise ValueError(f"Unknown scaling direction: {direction}")
        return self.cooldown_seconds if override is None else override

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PoolConfig':
        """
        Create a PoolConfig from a mapping, coercing string values.

        Raises:
            ConfigurationError: On unknown keys or values that cannot be coerced
        """
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ConfigurationError(f"Unknown pool configuration keys: {', '.join(unknown)}")

        kwargs = {}
        for key, value in data.items():
            try:
                kwargs[key] = _coerce(known[key], value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid value for {key}: {value!r} ({e})")

        if 'name' not in kwargs:
            raise ConfigurationError("Pool configuration requires a name")
        return cls(**kwargs)


_INT_FIELDS = {
    'min_workers', 'max_workers', 'scale_up_queue_depth', 'scale_up_increment',
    'scale_down_queue_depth', 'scale_down_decrement', 'scale_from_zero_queue_depth',
    'scale_up_jobs_per_worker', 'scale_down_jobs_per_worker',
}
_FLOAT_FIELDS = {
    'scale_up_latency_seconds', 'scale_down_latency_seconds', 'scale_from_zero_latency_seconds',
    'scale_up_latency_per_worker', 'cooldown_seconds', 'scale_up_cooldown_seconds',
    'scale_down_cooldown_seconds', 'lock_timeout_seconds',
}
_BOOL_FIELDS = {'enabled', 'dry_run', 'record_events', 'record_all_events'}
_NULLABLE_FIELDS = {'scale_up_cooldown_seconds', 'scale_down_cooldown_seconds', 'lock_key'}

_TRUE_VALUES = ('true', '1', 't', 'yes', 'y', 'on')
_FALSE_VALUES = ('false', '0', 'f', 'no', 'n', 'off', '')


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"expected one of {', '.join(_TRUE_VALUES)} or {', '.join(v for v in _FALSE_VALUES if v)}")


def _coerce(f, value):
    if value is None:
        if f.name not in _NULLABLE_FIELDS:
            raise TypeError('value cannot be null')
        return None
    if f.name in _INT_FIELDS:
        return int(value)
    if f.name in _FLOAT_FIELDS:
        return float(value)
    if f.name in _BOOL_FIELDS:
        return _parse_bool(value)
    if f.name in ('adapter_config', 'metrics_config'):
        if not isinstance(value, dict):
            raise TypeError('expected a mapping')
        return dict(value)
    return value


class Settings(NamedTuple):
    """Process-wide settings shared by every pool."""
    # Durable backing store (SQLAlchemy URL); None keeps all state in-process
    database_url: Optional[str]

    # Optional S3 cooldown store, used when no database is configured
    s3_state_bucket: Optional[str]
    s3_state_prefix: str

    # AWS configuration
    region: str
    sso_profile: Optional[str]

    # Table-based lock fallback
    lock_stale_after_seconds: int

    # Cooldown backend availability cache
    state_cache_ttl_seconds: int

    # Event log retention sweep
    event_retention_days: int


# Pool settings readable from the environment, mapped to PoolConfig fields
_POOL_ENV_VARS = {
    'name': 'POOL_NAME',
    'min_workers': 'MIN_WORKERS',
    'max_workers': 'MAX_WORKERS',
    'scale_up_queue_depth': 'SCALE_UP_QUEUE_DEPTH',
    'scale_up_latency_seconds': 'SCALE_UP_LATENCY_SECONDS',
    'scale_up_increment': 'SCALE_UP_INCREMENT',
    'scale_down_queue_depth': 'SCALE_DOWN_QUEUE_DEPTH',
    'scale_down_latency_seconds': 'SCALE_DOWN_LATENCY_SECONDS',
    'scale_down_decrement': 'SCALE_DOWN_DECREMENT',
    'scale_from_zero_queue_depth': 'SCALE_FROM_ZERO_QUEUE_DEPTH',
    'scale_from_zero_latency_seconds': 'SCALE_FROM_ZERO_LATENCY_SECONDS',
    'scaling_strategy': 'SCALING_STRATEGY',
    'scale_up_jobs_per_worker': 'SCALE_UP_JOBS_PER_WORKER',
    'scale_up_latency_per_worker': 'SCALE_UP_LATENCY_PER_WORKER',
    'scale_down_jobs_per_worker': 'SCALE_DOWN_JOBS_PER_WORKER',
    'cooldown_seconds': 'COOLDOWN_SECONDS',
    'scale_up_cooldown_seconds': 'SCALE_UP_COOLDOWN_SECONDS',
    'scale_down_cooldown_seconds': 'SCALE_DOWN_COOLDOWN_SECONDS',
    'lock_key': 'LOCK_KEY',
    'lock_timeout_seconds': 'LOCK_TIMEOUT_SECONDS',
    'enabled': 'AUTOSCALER_ENABLED',
    'dry_run': 'DRY_RUN',
    'record_events': 'RECORD_EVENTS',
    'record_all_events': 'RECORD_ALL_EVENTS',
    'adapter_type': 'ADAPTER_TYPE',
    'metrics_type': 'METRICS_TYPE',
}


def _adapter_config_from_env(adapter_type: str) -> Dict[str, Any]:
    adapter_type = adapter_type.lower()
    if adapter_type == 'heroku':
        adapter_config = {
            'api_key': os.environ.get('HEROKU_API_KEY'),
            'app_name': os.environ.get('HEROKU_APP_NAME'),
            'process_type': os.environ.get('HEROKU_PROCESS_TYPE', 'worker'),
        }
    elif adapter_type in ('kubernetes', 'k8s'):
        adapter_config = {
            'deployment': os.environ.get('K8S_DEPLOYMENT'),
            'namespace': os.environ.get('K8S_NAMESPACE', 'default'),
            'context': os.environ.get('K8S_CONTEXT'),
            'kubeconfig': os.environ.get('KUBECONFIG'),
        }
    elif adapter_type == 'ecs':
        adapter_config = {
            'cluster_name': os.environ.get('ECS_CLUSTER'),
            'service_name': os.environ.get('SERVICE_NAME'),
        }
    else:
        adapter_config = {}
    return {k: v for k, v in adapter_config.items() if v is not None}


def _metrics_config_from_env(metrics_type: str) -> Dict[str, Any]:
    metrics_type = metrics_type.lower()
    if metrics_type == 'sqs':
        metrics_config = {
            'queue_url': os.environ.get('SQS_QUEUE_URL'),
            'queue_name': os.environ.get('SQS_QUEUE_NAME'),
        }
    elif metrics_type == 'redis':
        metrics_config = {
            'host': os.environ.get('REDIS_HOST'),
            'port': os.environ.get('REDIS_PORT'),
            'password': os.environ.get('REDIS_PASSWORD'),
            'queue_key': os.environ.get('REDIS_QUEUE_KEY'),
            'queue_type': os.environ.get('REDIS_QUEUE_TYPE', 'list'),
            'processing_key': os.environ.get('REDIS_PROCESSING_KEY'),
            'consumer_group': os.environ.get('REDIS_CONSUMER_GROUP'),
        }
    else:
        metrics_config = {}
    return {k: v for k, v in metrics_config.items() if v is not None}


def load_pool_configs(event: Dict[str, Any] = None) -> List[PoolConfig]:
    """
    Load pool configurations from the trigger event or environment variables.

    A 'pools' list in the event payload takes precedence. Without one, a single
    pool is built from environment variables, with values from the event's
    'config' mapping overriding them.

    Args:
        event: Optional trigger payload

    Returns:
        list: Validated PoolConfig objects

    Raises:
        ConfigurationError: If any pool is invalid or two pools share a name
    """
    event = event or {}

    pool_dicts = event.get('pools')
    if not pool_dicts:
        config_from_event = event.get('config', {})
        pool = {}
        for key, env_var in _POOL_ENV_VARS.items():
            value = config_from_event.get(key)
            if value is None:
                value = os.environ.get(env_var)
            if value is not None:
                pool[key] = value

        pool.setdefault('name', 'default')
        adapter_type = pool.get('adapter_type', 'heroku')
        metrics_type = pool.get('metrics_type', 'sqs')
        pool['adapter_config'] = config_from_event.get('adapter_config') or _adapter_config_from_env(adapter_type)
        pool['metrics_config'] = config_from_event.get('metrics_config') or _metrics_config_from_env(metrics_type)
        pool_dicts = [pool]

    configs = []
    seen = set()
    for pool in pool_dicts:
        if not isinstance(pool, dict):
            raise ConfigurationError(f"Pool definition must be a mapping, got {type(pool).__name__}")
        config = PoolConfig.from_dict(pool)
        if config.name in seen:
            raise ConfigurationError(f"Duplicate pool name: {config.name}")
        seen.add(config.name)
        configs.append(config)

    return configs


def load_settings(event: Dict[str, Any] = None) -> Settings:
    """
    Load shared settings from environment variables and optional event payload.

    Event payload values override environment variables when present.
    """
    event = event or {}
    settings_from_event = event.get('settings', {})

    def _get(key, env_var, default=None):
        value = settings_from_event.get(key)
        if value is None:
            value = os.environ.get(env_var, default)
        return value

    def _get_int(key, env_var, default):
        value = _get(key, env_var, default)
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{env_var} must be an integer, got {value!r}")
        if number <= 0:
            raise ConfigurationError(f"{env_var} must be > 0, got {number}")
        return number

    return Settings(
        database_url=_get('database_url', 'DATABASE_URL'),
        s3_state_bucket=_get('s3_state_bucket', 'S3_STATE_BUCKET'),
        s3_state_prefix=_get('s3_state_prefix', 'S3_STATE_PREFIX', 'autoscaling-state'),
        region=_get('region', 'AWS_REGION', 'us-east-1'),
        sso_profile=_get('sso_profile', 'SSO_PROFILE'),
        lock_stale_after_seconds=_get_int('lock_stale_after_seconds', 'LOCK_STALE_AFTER_SECONDS', '300'),
        state_cache_ttl_seconds=_get_int('state_cache_ttl_seconds', 'STATE_CACHE_TTL_SECONDS', '300'),
        event_retention_days=_get_int('event_retention_days', 'EVENT_RETENTION_DAYS', '30'),
    )
