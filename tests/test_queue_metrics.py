import time
import unittest
from datetime import datetime, timezone
from unittest import mock

import redis
from botocore.exceptions import ClientError

from pool_autoscaler.config import PoolConfig
from pool_autoscaler.errors import ConfigurationError, MetricsError
from pool_autoscaler.metrics import QueueSnapshot, StaticMetricsProvider
from pool_autoscaler.queue_metrics import build_metrics_provider
from pool_autoscaler.queue_metrics.redis import RedisMetricsProvider
from pool_autoscaler.queue_metrics.sqs import SqsMetricsProvider

QUEUE_URL = 'https://sqs.us-east-1.amazonaws.com/123456789012/emails'


class TestQueueSnapshot(unittest.TestCase):

    def test_negative_values_rejected(self):
        with self.assertRaises(MetricsError):
            QueueSnapshot(queue_depth=-1)
        with self.assertRaises(MetricsError):
            QueueSnapshot(oldest_job_age_seconds=-0.5)

    def test_idle(self):
        self.assertTrue(QueueSnapshot().idle)
        self.assertFalse(QueueSnapshot(claimed_jobs=1).idle)
        self.assertFalse(QueueSnapshot(queue_depth=1).idle)

    def test_breakdown_is_copied(self):
        breakdown = {'default': 3}
        snapshot = QueueSnapshot(queue_depth=3, queues_breakdown=breakdown)
        breakdown['default'] = 99

        self.assertEqual(snapshot.to_dict()['queues_breakdown'], {'default': 3})


class TestSqsMetrics(unittest.TestCase):

    def setUp(self):
        self.sqs = mock.MagicMock()
        self.cloudwatch = mock.MagicMock()
        self.aws = mock.MagicMock()
        self.aws.create_aws_client.side_effect = lambda name: {'sqs': self.sqs, 'cloudwatch': self.cloudwatch}[name]

    def test_collect(self):
        self.sqs.get_queue_attributes.return_value = {'Attributes': {
            'ApproximateNumberOfMessages': '150',
            'ApproximateNumberOfMessagesNotVisible': '7',
            'ApproximateNumberOfMessagesDelayed': '2',
        }}
        self.cloudwatch.get_metric_statistics.return_value = {'Datapoints': [
            {'Timestamp': datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc), 'Maximum': 100.0},
            {'Timestamp': datetime(2024, 1, 1, 12, 1, tzinfo=timezone.utc), 'Maximum': 400.0},
        ]}

        snapshot = SqsMetricsProvider(self.aws, {'queue_url': QUEUE_URL}).collect()

        self.assertEqual(snapshot.queue_depth, 150)
        self.assertEqual(snapshot.claimed_jobs, 7)
        self.assertEqual(snapshot.blocked_jobs, 2)
        self.assertEqual(snapshot.oldest_job_age_seconds, 400.0)
        self.assertEqual(snapshot.queues_breakdown, {'emails': 150})
        dimensions = self.cloudwatch.get_metric_statistics.call_args.kwargs['Dimensions']
        self.assertEqual(dimensions, [{'Name': 'QueueName', 'Value': 'emails'}])

    def test_empty_queue_skips_cloudwatch(self):
        self.sqs.get_queue_attributes.return_value = {'Attributes': {'ApproximateNumberOfMessages': '0'}}

        snapshot = SqsMetricsProvider(self.aws, {'queue_url': QUEUE_URL}).collect()

        self.assertTrue(snapshot.idle)
        self.cloudwatch.get_metric_statistics.assert_not_called()

    def test_errors_are_raised(self):
        self.sqs.get_queue_attributes.side_effect = ClientError(
            {'Error': {'Code': 'AWS.SimpleQueueService.NonExistentQueue', 'Message': 'gone'}}, 'GetQueueAttributes')

        with self.assertRaises(MetricsError):
            SqsMetricsProvider(self.aws, {'queue_url': QUEUE_URL}).collect()

    def test_queue_url_required(self):
        with self.assertRaises(MetricsError):
            SqsMetricsProvider(self.aws, {})


class TestRedisMetrics(unittest.TestCase):

    def setUp(self):
        self.client = mock.MagicMock()

    def test_list_queue(self):
        self.client.llen.side_effect = lambda key: {'jobs': 12, 'jobs:processing': 3}[key]
        self.client.type.return_value = 'list'
        provider = RedisMetricsProvider({'queue_key': 'jobs', 'processing_key': 'jobs:processing'},
                                        client=self.client)

        snapshot = provider.collect()

        self.assertEqual(snapshot.queue_depth, 12)
        self.assertEqual(snapshot.claimed_jobs, 3)

    def test_stream_with_consumer_group(self):
        now_ms = int(time.time() * 1000)
        self.client.xinfo_stream.return_value = {'length': 20, 'first-entry': (f"{now_ms - 900000}-0", {})}
        self.client.xinfo_groups.return_value = [
            {'name': 'workers', 'pending': 4, 'lag': 6, 'last-delivered-id': f"{now_ms - 120000}-0"}]
        self.client.xrange.return_value = [(f"{now_ms - 60000}-0", {'job': '1'})]
        provider = RedisMetricsProvider({'queue_key': 'jobs', 'queue_type': 'stream',
                                         'consumer_group': 'workers'}, client=self.client)

        snapshot = provider.collect()

        self.assertEqual(snapshot.queue_depth, 6)
        self.assertEqual(snapshot.claimed_jobs, 4)
        self.assertAlmostEqual(snapshot.oldest_job_age_seconds, 60, delta=2)
        self.assertEqual(self.client.xrange.call_args.kwargs['min'], f"({now_ms - 120000}-0")

    def test_stream_without_group_uses_first_entry(self):
        now_ms = int(time.time() * 1000)
        self.client.xinfo_stream.return_value = {'length': 5, 'first-entry': (f"{now_ms - 30000}-1", {})}
        provider = RedisMetricsProvider({'queue_key': 'jobs', 'queue_type': 'stream'}, client=self.client)

        snapshot = provider.collect()

        self.assertEqual(snapshot.queue_depth, 5)
        self.assertAlmostEqual(snapshot.oldest_job_age_seconds, 30, delta=2)

    def test_connection_errors_are_raised(self):
        self.client.llen.side_effect = redis.ConnectionError('Connection refused')
        provider = RedisMetricsProvider({'queue_key': 'jobs'}, client=self.client)

        with self.assertRaises(MetricsError):
            provider.collect()


class TestBuildMetricsProvider(unittest.TestCase):

    def test_static(self):
        config = PoolConfig(name='default', metrics_type='static', metrics_config={'queue_depth': 42})

        provider = build_metrics_provider(config)

        self.assertIsInstance(provider, StaticMetricsProvider)
        self.assertEqual(provider.collect().queue_depth, 42)

    def test_sqs(self):
        config = PoolConfig(name='default', metrics_type='sqs', metrics_config={'queue_url': QUEUE_URL})

        self.assertIsInstance(build_metrics_provider(config, mock.MagicMock()), SqsMetricsProvider)

    def test_incomplete_settings(self):
        config = PoolConfig(name='default', metrics_type='sqs', metrics_config={})

        with self.assertRaises(ConfigurationError):
            build_metrics_provider(config, mock.MagicMock())

    def test_unknown_type(self):
        config = PoolConfig(name='default', metrics_type='kafka')

        with self.assertRaises(ConfigurationError):
            build_metrics_provider(config)


if __name__ == '__main__':
    unittest.main()
