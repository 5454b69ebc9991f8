import logging
import time
from typing import Any, Dict

import redis

from pool_autoscaler.errors import MetricsError
from pool_autoscaler.metrics import MetricsProvider, QueueSnapshot


def _stream_id_age(entry_id: str, now: float) -> float:
    """Age in seconds of a stream entry, from the millisecond timestamp in its id."""
    millis = int(str(entry_id).split('-', 1)[0])
    return max(0.0, now - millis / 1000.0)


class RedisMetricsProvider(MetricsProvider):
    """
    Queue metrics for a Redis-based queue.

    Supports both Redis Lists and Redis Streams as queue implementations.

    redis_config keys:
        - host, port, password, use_ssl: Connection settings
        - queue_key: Key name for the queue
        - queue_type: 'list' or 'stream'
        - processing_key: Key used to track processing items (for list-based queues)
        - consumer_group: Consumer group name (for stream-based queues)
    """

    def __init__(self, redis_config: Dict[str, Any], client: redis.Redis = None):
        self.queue_key = redis_config.get('queue_key')
        self.queue_type = redis_config.get('queue_type', 'list')
        self.processing_key = redis_config.get('processing_key')
        self.consumer_group = redis_config.get('consumer_group')

        if not self.queue_key:
            raise MetricsError('Redis metrics require queue_key')
        if self.queue_type not in ('list', 'stream'):
            raise MetricsError(f"Unsupported Redis queue type: {self.queue_type}")

        self._client = client or redis.Redis(
            host=redis_config.get('host', 'localhost'),
            port=int(redis_config.get('port') or 6379),
            password=redis_config.get('password'),
            ssl=str(redis_config.get('use_ssl', True)).lower() in ('true', '1', 't', 'yes'),
            socket_timeout=float(redis_config.get('timeout', 10)),
            decode_responses=True
        )

    def collect(self) -> QueueSnapshot:
        try:
            if self.queue_type == 'list':
                return self._collect_list()
            return self._collect_stream()
        except redis.RedisError as e:
            raise MetricsError(f"Error getting Redis metrics for {self.queue_key}: {e}") from e

    def _collect_list(self) -> QueueSnapshot:
        queue_length = self._client.llen(self.queue_key)

        # Get in-flight count from processing set/list/hash if available
        in_flight = 0
        if self.processing_key:
            key_type = self._client.type(self.processing_key)
            if key_type == 'set':
                in_flight = self._client.scard(self.processing_key)
            elif key_type == 'list':
                in_flight = self._client.llen(self.processing_key)
            elif key_type == 'hash':
                in_flight = self._client.hlen(self.processing_key)

        logging.info(f"Redis list queue {self.queue_key} has {queue_length} pending messages "
                     f"and {in_flight} in-flight messages")

        # Plain list entries carry no enqueue time, so latency is not available here
        return QueueSnapshot(
            queue_depth=queue_length,
            claimed_jobs=in_flight,
            queues_breakdown={self.queue_key: queue_length},
        )

    def _collect_stream(self) -> QueueSnapshot:
        now = time.time()
        stream_info = self._client.xinfo_stream(self.queue_key)
        total_messages = stream_info['length']

        group = None
        if self.consumer_group:
            try:
                group = next((g for g in self._client.xinfo_groups(self.queue_key)
                              if g['name'] == self.consumer_group), None)
            except redis.exceptions.ResponseError:
                # Consumer group might not exist yet
                group = None

        if group is None:
            pending = total_messages
            in_flight = 0
            oldest_entry = stream_info.get('first-entry')
            oldest_age = _stream_id_age(oldest_entry[0], now) if oldest_entry else 0.0
        else:
            in_flight = group.get('pending', 0)
            lag = group.get('lag')
            pending = lag if lag is not None else max(0, total_messages - in_flight)
            oldest_age = 0.0
            if pending:
                undelivered = self._client.xrange(self.queue_key, min=f"({group['last-delivered-id']}", count=1)
                if undelivered:
                    oldest_age = _stream_id_age(undelivered[0][0], now)

        logging.info(f"Redis stream {self.queue_key} has {pending} pending messages "
                     f"and {in_flight} in-flight messages, oldest {oldest_age:.0f}s")

        return QueueSnapshot(
            queue_depth=max(0, pending),
            oldest_job_age_seconds=oldest_age,
            claimed_jobs=in_flight,
            queues_breakdown={self.queue_key: max(0, pending)},
        )
