import logging
import os
from typing import Any, Dict, List

from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from pool_autoscaler.adapters.base import ScaleAdapter
from pool_autoscaler.errors import ConfigurationError, PlatformAPIError, TransientPlatformAPIError

SERVICE_ACCOUNT_TOKEN = '/var/run/secrets/kubernetes.io/serviceaccount/token'
DEFAULT_TIMEOUT = 30


class KubernetesAdapter(ScaleAdapter):
    """
    Scales a Deployment through its scale subresource.

    adapter_config keys:
        - deployment: Deployment name
        - namespace: Namespace (default 'default')
        - context: kubeconfig context (outside the cluster only)
        - kubeconfig: kubeconfig path (outside the cluster only)
        - timeout: Request timeout in seconds (default 30)

    A Deployment at 0 replicas still exists, so a 404 here means the
    Deployment name or namespace is wrong and is reported, not retried.
    """
    name = 'kubernetes'

    def __init__(self, adapter_config: Dict[str, Any] = None, dry_run: bool = False, pool: str = 'default',
                 apps_api: client.AppsV1Api = None):
        super().__init__(adapter_config, dry_run=dry_run, pool=pool)
        self.deployment = self.adapter_config.get('deployment')
        self.namespace = self.adapter_config.get('namespace') or 'default'
        self.context = self.adapter_config.get('context')
        self.kubeconfig = self.adapter_config.get('kubeconfig')
        self.timeout = float(self.adapter_config.get('timeout', DEFAULT_TIMEOUT))
        self._apps_api = apps_api

    def configuration_errors(self) -> List[str]:
        errors = []
        if not self.deployment:
            errors.append('deployment is required')
        if not self.namespace:
            errors.append('namespace is required')
        return errors

    def describe_target(self) -> str:
        return f"deployment {self.namespace}/{self.deployment}"

    @property
    def apps_api(self) -> client.AppsV1Api:
        if self._apps_api is None:
            try:
                if os.path.exists(SERVICE_ACCOUNT_TOKEN):
                    k8s_config.load_incluster_config()
                else:
                    k8s_config.load_kube_config(config_file=self.kubeconfig, context=self.context)
            except ConfigException as e:
                raise ConfigurationError(f"Could not load Kubernetes configuration: {e}") from e
            self._apps_api = client.AppsV1Api()
        return self._apps_api

    def _api_error(self, e: ApiException, action: str) -> PlatformAPIError:
        status = e.status
        if status == 404:
            return PlatformAPIError(f"Deployment {self.deployment} not found in namespace {self.namespace}",
                                    status_code=status, response_body=e.body)
        error_class = TransientPlatformAPIError if not status or status == 429 or status >= 500 \
            else PlatformAPIError
        return error_class(f"Failed to {action}: {e.reason}", status_code=status, response_body=e.body)

    def _read_replicas(self) -> int:
        try:
            scale = self.apps_api.read_namespaced_deployment_scale(
                self.deployment, self.namespace, _request_timeout=self.timeout)
        except ApiException as e:
            raise self._api_error(e, 'get deployment scale')
        except (Urllib3HTTPError, OSError) as e:
            raise TransientPlatformAPIError(f"Failed to get deployment scale: {e}")
        return int(scale.spec.replicas or 0)

    def _patch_replicas(self, target: int) -> None:
        try:
            self.apps_api.patch_namespaced_deployment_scale(
                self.deployment, self.namespace, {'spec': {'replicas': target}}, _request_timeout=self.timeout)
        except ApiException as e:
            raise self._api_error(e, f"scale deployment {self.deployment} to {target}")
        except (Urllib3HTTPError, OSError) as e:
            raise TransientPlatformAPIError(f"Failed to scale deployment {self.deployment} to {target}: {e}")

    def current_count(self) -> int:
        replicas = self.with_retry(self._read_replicas)
        logging.debug(f"[{self.pool}] {self.describe_target()} has {replicas} replicas")
        return replicas

    def _apply(self, target: int) -> int:
        self.with_retry(self._patch_replicas, target)
        return target
