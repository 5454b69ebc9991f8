import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from pool_autoscaler.errors import MetricsError
from pool_autoscaler.metrics import MetricsProvider, QueueSnapshot


class SqsMetricsProvider(MetricsProvider):
    """
    Queue metrics for an SQS queue.

    sqs_config keys:
        - queue_url: SQS queue URL
        - queue_name: Optional, defaults to the last segment of queue_url. Used to
          read ApproximateAgeOfOldestMessage from CloudWatch.
        - include_age: Whether to query CloudWatch for the oldest message age (default True)
    """

    def __init__(self, aws_wrapper, sqs_config: Dict[str, Any]):
        self._aws = aws_wrapper
        self.queue_url = sqs_config.get('queue_url')
        self.queue_name = sqs_config.get('queue_name') or (self.queue_url or '').rstrip('/').split('/')[-1]
        self.include_age = str(sqs_config.get('include_age', True)).lower() in ('true', '1', 't', 'yes')

        if not self.queue_url:
            raise MetricsError('SQS metrics require queue_url')

    def collect(self) -> QueueSnapshot:
        try:
            sqs_client = self._aws.create_aws_client('sqs')

            # Get queue attributes directly using the URL
            response = sqs_client.get_queue_attributes(
                QueueUrl=self.queue_url,
                AttributeNames=[
                    'ApproximateNumberOfMessages',
                    'ApproximateNumberOfMessagesNotVisible',
                    'ApproximateNumberOfMessagesDelayed',
                ]
            )
        except (ClientError, BotoCoreError) as e:
            raise MetricsError(f"Error getting SQS queue attributes for {self.queue_url}: {e}") from e

        attributes = response.get('Attributes', {})
        visible = int(attributes.get('ApproximateNumberOfMessages', 0))
        in_flight = int(attributes.get('ApproximateNumberOfMessagesNotVisible', 0))
        delayed = int(attributes.get('ApproximateNumberOfMessagesDelayed', 0))

        oldest_age = self._oldest_message_age() if self.include_age and visible else 0.0

        logging.info(f"SQS queue {self.queue_name} has {visible} visible, {in_flight} in-flight "
                     f"and {delayed} delayed messages, oldest {oldest_age:.0f}s")

        return QueueSnapshot(
            queue_depth=visible,
            oldest_job_age_seconds=oldest_age,
            claimed_jobs=in_flight,
            blocked_jobs=delayed,
            queues_breakdown={self.queue_name: visible},
        )

    def _oldest_message_age(self) -> float:
        now = datetime.now(timezone.utc)
        try:
            cloudwatch = self._aws.create_aws_client('cloudwatch')
            response = cloudwatch.get_metric_statistics(
                Namespace='AWS/SQS',
                MetricName='ApproximateAgeOfOldestMessage',
                Dimensions=[{'Name': 'QueueName', 'Value': self.queue_name}],
                StartTime=now - timedelta(minutes=5),
                EndTime=now,
                Period=60,
                Statistics=['Maximum'],
            )
        except (ClientError, BotoCoreError) as e:
            raise MetricsError(f"Error getting oldest message age for {self.queue_name}: {e}") from e

        latest = _latest_datapoint(response.get('Datapoints', []))
        return float(latest['Maximum']) if latest else 0.0


def _latest_datapoint(datapoints) -> Optional[Dict[str, Any]]:
    if not datapoints:
        return None
    return max(datapoints, key=lambda point: point['Timestamp'])
