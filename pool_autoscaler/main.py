import logging
from typing import Dict, Any, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from pool_autoscaler.aws.wrapper import AWSWrapper
from pool_autoscaler.config import PoolConfig, Settings, load_pool_configs, load_settings, normalize_pool_name
from pool_autoscaler.controller import CycleStatus, build_controller, build_cooldown_store, run_all
from pool_autoscaler.errors import ConfigurationError
from pool_autoscaler.state.events import EventRecorder
from pool_autoscaler.state.lock import resolve_lock_strategy
from pool_autoscaler.state.schema import create_tables

ACTIONS = ('scale', 'create_tables', 'cleanup_events')


def create_store_engine(settings: Settings) -> Optional[Engine]:
    """SQLAlchemy engine for the durable backing store, or None when no database is configured."""
    if not settings.database_url:
        return None
    return create_engine(settings.database_url, pool_pre_ping=True)


def _select_pools(configs: List[PoolConfig], event: Dict[str, Any]) -> List[PoolConfig]:
    if event.get('pool') is None:
        return configs

    name = normalize_pool_name(event['pool'])
    selected = [config for config in configs if config.name == name]
    if not selected:
        known = ', '.join(config.name for config in configs)
        raise ConfigurationError(f"Unknown pool '{name}'. Configured pools: {known}")
    return selected


def scale_pools(configs: List[PoolConfig], settings: Settings, engine: Engine = None) -> Dict[str, Any]:
    """
    Run one autoscaling cycle for each pool.

    Returns:
        dict: Lambda response with one outcome per pool
    """
    needs_aws = settings.s3_state_bucket or any(
        config.adapter_type.lower() == 'ecs' or config.metrics_type.lower() == 'sqs' for config in configs)
    aws_wrapper = AWSWrapper(sso_profile_name=settings.sso_profile, region_name=settings.region) if needs_aws else None

    # Shared between pools: rows are namespaced by pool name
    lock_strategy = resolve_lock_strategy(engine, stale_after_seconds=settings.lock_stale_after_seconds)
    cooldowns = build_cooldown_store(settings, engine=engine, aws_wrapper=aws_wrapper)
    events = EventRecorder(engine) if engine is not None else None

    controllers = [
        build_controller(config, settings, engine=engine, lock_strategy=lock_strategy,
                         cooldowns=cooldowns, events=events, aws_wrapper=aws_wrapper)
        for config in configs
    ]

    outcomes = run_all(controllers)
    failed = [pool for pool, outcome in outcomes.items() if outcome.status == CycleStatus.ERROR]

    return {
        'statusCode': 500 if failed else 200,
        'results': {pool: outcome.to_dict() for pool, outcome in outcomes.items()}
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Lambda handler that runs one autoscaling cycle per configured pool.

    Configuration can be provided via environment variables or in the event payload.
    Event keys:
        - pools: List of pool configurations (overrides the single env-configured pool)
        - pool: Run only the named pool
        - settings: Shared settings overrides (database_url, s3_state_bucket, ...)
        - action: 'scale' (default), 'create_tables' or 'cleanup_events'

    Args:
        event: AWS Lambda event object
        context: AWS Lambda context object

    Returns:
        dict: statusCode and per-pool results
    """
    event = event or {}
    action = event.get('action', 'scale')

    try:
        if action not in ACTIONS:
            raise ConfigurationError(f"Unknown action: {action}. Valid options: {', '.join(ACTIONS)}")
        settings = load_settings(event)
        configs = _select_pools(load_pool_configs(event), event) if action == 'scale' else []
    except ConfigurationError as e:
        logging.error(f"Invalid configuration: {e}")
        return {"statusCode": 400, "error": str(e)}

    try:
        engine = create_store_engine(settings)
    except Exception as e:
        logging.error(f"Error creating database engine: {e}", exc_info=True)
        return {"statusCode": 500, "error": str(e)}

    try:
        if action == 'create_tables':
            if engine is None:
                return {"statusCode": 400, "error": "DATABASE_URL must be configured to create tables"}
            create_tables(engine)
            return {"statusCode": 200, "result": "tables created"}

        if action == 'cleanup_events':
            if engine is None:
                return {"statusCode": 400, "error": "DATABASE_URL must be configured to clean up events"}
            deleted = EventRecorder(engine).cleanup(keep_days=settings.event_retention_days)
            return {"statusCode": 200, "result": {"deleted": deleted}}

        logging.info(f"Starting autoscaling cycle for pools: {', '.join(config.name for config in configs)}")
        try:
            return scale_pools(configs, settings, engine=engine)
        except ConfigurationError as e:
            logging.error(f"Invalid configuration: {e}")
            return {"statusCode": 400, "error": str(e)}
    except Exception as e:
        logging.error(f"Error in autoscaling lambda: {e}", exc_info=True)
        return {"statusCode": 500, "error": str(e)}
    finally:
        if engine is not None:
            engine.dispose()
