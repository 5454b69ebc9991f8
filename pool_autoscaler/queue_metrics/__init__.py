"""
Queue metrics providers.
"""
from pool_autoscaler.config import PoolConfig
from pool_autoscaler.errors import ConfigurationError, MetricsError
from pool_autoscaler.metrics import MetricsProvider, StaticMetricsProvider

SUPPORTED_METRICS_TYPES = ('sqs', 'redis', 'static')


def build_metrics_provider(config: PoolConfig, aws_wrapper=None) -> MetricsProvider:
    """
    Build the metrics provider configured for a pool.

    Raises:
        ConfigurationError: If the metrics type is unknown or its settings are incomplete
    """
    metrics_type = config.metrics_type.lower()

    try:
        if metrics_type == 'sqs':
            from pool_autoscaler.queue_metrics.sqs import SqsMetricsProvider
            return SqsMetricsProvider(aws_wrapper, config.metrics_config)

        if metrics_type == 'redis':
            from pool_autoscaler.queue_metrics.redis import RedisMetricsProvider
            return RedisMetricsProvider(config.metrics_config)

        if metrics_type == 'static':
            return StaticMetricsProvider(**config.metrics_config)
    except (MetricsError, TypeError) as e:
        raise ConfigurationError(f"Invalid metrics configuration for pool '{config.name}': {e}") from e

    supported = ', '.join(SUPPORTED_METRICS_TYPES)
    raise ConfigurationError(f"Unsupported metrics type: {config.metrics_type}. Supported types: {supported}")
