import logging
from typing import Any, Dict, List

from botocore.exceptions import BotoCoreError, ClientError, ConnectionError as BotoConnectionError
from botocore.exceptions import ReadTimeoutError, ConnectTimeoutError, EndpointConnectionError

from pool_autoscaler.adapters.base import ScaleAdapter
from pool_autoscaler.aws.wrapper import AWSWrapper
from pool_autoscaler.errors import PlatformAPIError, TransientPlatformAPIError

TRANSIENT_ERROR_CODES = {
    'Throttling', 'ThrottlingException', 'TooManyRequestsException', 'RequestLimitExceeded',
    'ServerException', 'ServiceUnavailable', 'ServiceUnavailableException', 'InternalFailure',
}
NOT_FOUND_ERROR_CODES = {'ServiceNotFoundException', 'ServiceNotActiveException', 'ClusterNotFoundException'}
TRANSIENT_BOTOCORE_ERRORS = (BotoConnectionError, EndpointConnectionError, ReadTimeoutError, ConnectTimeoutError)


class EcsAdapter(ScaleAdapter):
    """
    Scales an ECS service's desired task count.

    adapter_config keys:
        - cluster_name: ECS cluster
        - service_name: ECS service

    A missing or INACTIVE service reads as 0 tasks; ECS cannot recreate a
    service from a desired count alone, so applying to one is reported as a
    configuration problem.
    """
    name = 'ecs'

    def __init__(self, adapter_config: Dict[str, Any] = None, dry_run: bool = False, pool: str = 'default',
                 aws_wrapper: AWSWrapper = None):
        super().__init__(adapter_config, dry_run=dry_run, pool=pool)
        self.cluster_name = self.adapter_config.get('cluster_name')
        self.service_name = self.adapter_config.get('service_name')
        self._aws = aws_wrapper

    def configuration_errors(self) -> List[str]:
        errors = []
        if not self.cluster_name:
            errors.append('cluster_name is required')
        if not self.service_name:
            errors.append('service_name is required')
        return errors

    def describe_target(self) -> str:
        return f"service {self.cluster_name}/{self.service_name}"

    @property
    def ecs_client(self):
        if self._aws is None:
            self._aws = AWSWrapper()
        return self._aws.create_aws_client('ecs')

    def _client_error(self, e: ClientError, action: str) -> PlatformAPIError:
        error = e.response.get('Error', {})
        code = error.get('Code')
        status = e.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        if code in NOT_FOUND_ERROR_CODES:
            return PlatformAPIError(f"Failed to {action}: {code} ({error.get('Message')})", status_code=404)
        if code in TRANSIENT_ERROR_CODES or (status and status >= 500):
            return TransientPlatformAPIError(f"Failed to {action}: {code}", status_code=status or 503)
        return PlatformAPIError(f"Failed to {action}: {code} ({error.get('Message')})", status_code=status)

    def _describe_service(self):
        try:
            response = self.ecs_client.describe_services(cluster=self.cluster_name, services=[self.service_name])
        except ClientError as e:
            raise self._client_error(e, f"describe {self.describe_target()}")
        except TRANSIENT_BOTOCORE_ERRORS as e:
            raise TransientPlatformAPIError(f"Failed to describe {self.describe_target()}: {e}")
        except BotoCoreError as e:
            raise PlatformAPIError(f"Failed to describe {self.describe_target()}: {e}")

        services = response.get('services', [])
        return services[0] if services else None

    def current_count(self) -> int:
        service = self.with_retry(self._describe_service)
        if service is None or service.get('status') == 'INACTIVE':
            logging.debug(f"[{self.pool}] {self.describe_target()} not found or inactive, treating as 0 tasks")
            return 0

        desired = service.get('desiredCount', 0)
        logging.info(f"[{self.pool}] Current ECS state - desired: {desired}, running: {service.get('runningCount', 0)}")
        return int(desired)

    def _update_service(self, target: int) -> None:
        try:
            self.ecs_client.update_service(cluster=self.cluster_name, service=self.service_name, desiredCount=target)
        except ClientError as e:
            raise self._client_error(e, f"update {self.describe_target()} to {target} tasks")
        except TRANSIENT_BOTOCORE_ERRORS as e:
            raise TransientPlatformAPIError(f"Failed to update {self.describe_target()}: {e}")
        except BotoCoreError as e:
            raise PlatformAPIError(f"Failed to update {self.describe_target()}: {e}")

    def _apply(self, target: int) -> int:
        try:
            self.with_retry(self._update_service, target)
        except PlatformAPIError as e:
            if e.status_code == 404:
                raise PlatformAPIError(
                    f"{self.describe_target()} does not exist or is inactive; create the service before "
                    f"autoscaling it", status_code=404) from e
            raise
        return target
