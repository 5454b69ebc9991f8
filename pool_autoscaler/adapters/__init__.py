"""
Platform adapters that read and set worker capacity.
"""
from pool_autoscaler.adapters.base import ScaleAdapter
from pool_autoscaler.config import PoolConfig
from pool_autoscaler.errors import ConfigurationError


def build_adapter(config: PoolConfig, aws_wrapper=None) -> ScaleAdapter:
    """
    Build and validate the platform adapter configured for a pool.

    Args:
        config: Pool configuration
        aws_wrapper: Optional AWS wrapper shared with other AWS-backed components

    Returns:
        ScaleAdapter: Adapter instance

    Raises:
        ConfigurationError: If the adapter type is unknown or its settings are incomplete
    """
    adapter_type = config.adapter_type.lower()

    if adapter_type == 'heroku':
        from pool_autoscaler.adapters.heroku import HerokuAdapter
        adapter = HerokuAdapter(config.adapter_config, dry_run=config.dry_run, pool=config.name)
    elif adapter_type in ('kubernetes', 'k8s'):
        from pool_autoscaler.adapters.kubernetes import KubernetesAdapter
        adapter = KubernetesAdapter(config.adapter_config, dry_run=config.dry_run, pool=config.name)
    elif adapter_type == 'ecs':
        from pool_autoscaler.adapters.ecs import EcsAdapter
        adapter = EcsAdapter(config.adapter_config, dry_run=config.dry_run, pool=config.name,
                             aws_wrapper=aws_wrapper)
    else:
        raise ConfigurationError(f"Unknown adapter: {config.adapter_type}. Valid options: heroku, kubernetes, k8s, ecs")

    adapter.validate()
    return adapter


__all__ = ['ScaleAdapter', 'build_adapter']
