import unittest
from unittest import mock

import requests
from botocore.exceptions import ClientError, EndpointConnectionError
from kubernetes.client.rest import ApiException

from pool_autoscaler.adapters import build_adapter
from pool_autoscaler.adapters.ecs import EcsAdapter
from pool_autoscaler.adapters.heroku import HerokuAdapter
from pool_autoscaler.adapters.kubernetes import KubernetesAdapter
from pool_autoscaler.config import PoolConfig
from pool_autoscaler.errors import ConfigurationError, PlatformAPIError, TransientPlatformAPIError

HEROKU_CONFIG = {'api_key': 'secret', 'app_name': 'my-app', 'process_type': 'worker'}


def http_response(status_code, payload=None):
    response = mock.MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    response.content = b'{}' if payload is not None else b''
    response.text = str(payload)
    return response


@mock.patch('retry.api.time.sleep')
class TestHerokuAdapter(unittest.TestCase):

    def setUp(self):
        self.session = mock.MagicMock()
        self.session.headers = {}
        self.adapter = HerokuAdapter(HEROKU_CONFIG, pool='default', session=self.session)

    def test_current_count(self, mock_sleep):
        self.session.request.return_value = http_response(200, {'type': 'worker', 'quantity': 4})

        self.assertEqual(self.adapter.current_count(), 4)

        method, url = self.session.request.call_args.args
        self.assertEqual(method, 'GET')
        self.assertEqual(url, 'https://api.heroku.com/apps/my-app/formation/worker')
        self.assertEqual(self.session.headers['Authorization'], 'Bearer secret')
        self.assertIn('version=3', self.session.headers['Accept'])

    def test_missing_formation_reads_as_zero(self, mock_sleep):
        self.session.request.return_value = http_response(404, {'id': 'not_found'})

        self.assertEqual(self.adapter.current_count(), 0)
        self.assertEqual(self.session.request.call_count, 1)

    def test_scaled_to_zero_formation_is_recreated(self, mock_sleep):
        """A formation removed at zero reads as 0, and scaling it uses the batch update."""
        self.session.request.side_effect = [
            http_response(404, {'id': 'not_found'}),
            http_response(404, {'id': 'not_found'}),
            http_response(200, [{'type': 'worker', 'quantity': 3}]),
        ]

        self.assertEqual(self.adapter.current_count(), 0)
        self.assertEqual(self.adapter.apply(3), 3)

        calls = self.session.request.call_args_list
        self.assertEqual(calls[1].args, ('PATCH', 'https://api.heroku.com/apps/my-app/formation/worker'))
        self.assertEqual(calls[2].args, ('PATCH', 'https://api.heroku.com/apps/my-app/formation'))
        self.assertEqual(calls[2].kwargs['json'], {'updates': [{'type': 'worker', 'quantity': 3}]})

    def test_missing_procfile_entry(self, mock_sleep):
        self.session.request.side_effect = [
            http_response(404, {'id': 'not_found'}),
            http_response(404, {'id': 'not_found'}),
        ]

        with self.assertRaises(PlatformAPIError) as ctx:
            self.adapter.apply(2)

        self.assertIn('Procfile', str(ctx.exception))
        self.assertEqual(ctx.exception.status_code, 404)

    def test_update(self, mock_sleep):
        self.session.request.return_value = http_response(200, {'type': 'worker', 'quantity': 5})

        self.assertEqual(self.adapter.apply(5), 5)

        self.assertEqual(self.session.request.call_args.kwargs['json'], {'quantity': 5})

    def test_server_errors_are_retried(self, mock_sleep):
        self.session.request.side_effect = [
            http_response(503, {'id': 'unavailable'}),
            http_response(429, {'id': 'rate_limit'}),
            http_response(200, {'type': 'worker', 'quantity': 2}),
        ]

        self.assertEqual(self.adapter.current_count(), 2)
        self.assertEqual(self.session.request.call_count, 3)
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [1, 2])

    def test_retries_are_exhausted(self, mock_sleep):
        self.session.request.return_value = http_response(500, {'id': 'internal'})

        with self.assertRaises(PlatformAPIError) as ctx:
            self.adapter.apply(4)

        self.assertEqual(ctx.exception.status_code, 500)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(self.session.request.call_count, 3)

    def test_timeouts_are_retried(self, mock_sleep):
        self.session.request.side_effect = [
            requests.Timeout('read timed out'),
            http_response(200, {'type': 'worker', 'quantity': 1}),
        ]

        self.assertEqual(self.adapter.current_count(), 1)

    def test_client_errors_are_not_retried(self, mock_sleep):
        self.session.request.return_value = http_response(401, {'id': 'unauthorized'})

        with self.assertRaises(PlatformAPIError) as ctx:
            self.adapter.current_count()

        self.assertEqual(ctx.exception.status_code, 401)
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(self.session.request.call_count, 1)
        mock_sleep.assert_not_called()

    def test_dry_run_reads_but_does_not_write(self, mock_sleep):
        adapter = HerokuAdapter(HEROKU_CONFIG, dry_run=True, pool='default', session=self.session)
        self.session.request.return_value = http_response(200, {'type': 'worker', 'quantity': 2})

        with self.assertLogs(level='INFO') as logs:
            self.assertEqual(adapter.apply(4), 4)

        methods = [c.args[0] for c in self.session.request.call_args_list]
        self.assertEqual(methods, ['GET'])
        self.assertTrue(any('[DRY RUN] [default] Would scale' in line for line in logs.output))

    def test_formation_list(self, mock_sleep):
        self.session.request.return_value = http_response(200, [{'type': 'web'}, {'type': 'worker'}])

        self.assertEqual(len(self.adapter.formation_list()), 2)

    def test_rejects_negative_target(self, mock_sleep):
        with self.assertRaises(ValueError):
            self.adapter.apply(-1)


class TestKubernetesAdapter(unittest.TestCase):

    def setUp(self):
        self.api = mock.MagicMock()
        self.adapter = KubernetesAdapter({'deployment': 'worker', 'namespace': 'jobs'}, pool='default',
                                         apps_api=self.api)

    def test_current_count(self):
        self.api.read_namespaced_deployment_scale.return_value.spec.replicas = 3

        self.assertEqual(self.adapter.current_count(), 3)
        self.assertEqual(self.api.read_namespaced_deployment_scale.call_args.args, ('worker', 'jobs'))

    def test_zero_replicas(self):
        self.api.read_namespaced_deployment_scale.return_value.spec.replicas = None

        self.assertEqual(self.adapter.current_count(), 0)

    def test_apply_patches_scale(self):
        self.assertEqual(self.adapter.apply(6), 6)

        args = self.api.patch_namespaced_deployment_scale.call_args.args
        self.assertEqual(args, ('worker', 'jobs', {'spec': {'replicas': 6}}))

    def test_missing_deployment_is_not_retried(self):
        self.api.read_namespaced_deployment_scale.side_effect = ApiException(status=404, reason='Not Found')

        with self.assertRaises(PlatformAPIError) as ctx:
            self.adapter.current_count()

        self.assertNotIsInstance(ctx.exception, TransientPlatformAPIError)
        self.assertIn('not found', str(ctx.exception))
        self.assertEqual(self.api.read_namespaced_deployment_scale.call_count, 1)

    @mock.patch('retry.api.time.sleep')
    def test_server_errors_are_retried(self, mock_sleep):
        self.api.patch_namespaced_deployment_scale.side_effect = [
            ApiException(status=503, reason='Service Unavailable'),
            None,
        ]

        self.assertEqual(self.adapter.apply(2), 2)
        self.assertEqual(self.api.patch_namespaced_deployment_scale.call_count, 2)

    def test_missing_deployment_setting(self):
        with self.assertRaises(ConfigurationError):
            KubernetesAdapter({'namespace': 'jobs'}, apps_api=self.api).validate()


class TestEcsAdapter(unittest.TestCase):

    def setUp(self):
        self.ecs = mock.MagicMock()
        self.aws = mock.MagicMock()
        self.aws.create_aws_client.return_value = self.ecs
        self.adapter = EcsAdapter({'cluster_name': 'jobs', 'service_name': 'worker'}, pool='default',
                                  aws_wrapper=self.aws)

    def test_current_count(self):
        self.ecs.describe_services.return_value = {
            'services': [{'status': 'ACTIVE', 'desiredCount': 4, 'runningCount': 3}]}

        self.assertEqual(self.adapter.current_count(), 4)
        self.ecs.describe_services.assert_called_with(cluster='jobs', services=['worker'])

    def test_inactive_service_reads_as_zero(self):
        self.ecs.describe_services.return_value = {'services': [{'status': 'INACTIVE', 'desiredCount': 2}]}

        self.assertEqual(self.adapter.current_count(), 0)

    def test_apply(self):
        self.assertEqual(self.adapter.apply(3), 3)

        self.ecs.update_service.assert_called_once_with(cluster='jobs', service='worker', desiredCount=3)

    @mock.patch('retry.api.time.sleep')
    def test_throttling_is_retried(self, mock_sleep):
        self.ecs.update_service.side_effect = [
            ClientError({'Error': {'Code': 'ThrottlingException', 'Message': 'Rate exceeded'},
                         'ResponseMetadata': {'HTTPStatusCode': 400}}, 'UpdateService'),
            EndpointConnectionError(endpoint_url='https://ecs.us-east-1.amazonaws.com'),
            {},
        ]

        self.assertEqual(self.adapter.apply(3), 3)
        self.assertEqual(self.ecs.update_service.call_count, 3)

    def test_missing_service_cannot_be_scaled(self):
        self.ecs.update_service.side_effect = ClientError(
            {'Error': {'Code': 'ServiceNotFoundException', 'Message': 'Service not found.'}}, 'UpdateService')

        with self.assertRaises(PlatformAPIError) as ctx:
            self.adapter.apply(2)

        self.assertIn('create the service', str(ctx.exception))
        self.assertEqual(self.ecs.update_service.call_count, 1)

    def test_dry_run(self):
        adapter = EcsAdapter({'cluster_name': 'jobs', 'service_name': 'worker'}, dry_run=True,
                             aws_wrapper=self.aws)
        self.ecs.describe_services.return_value = {'services': [{'status': 'ACTIVE', 'desiredCount': 1}]}

        self.assertEqual(adapter.apply(2), 2)
        self.ecs.update_service.assert_not_called()


class TestBuildAdapter(unittest.TestCase):

    def test_heroku(self):
        config = PoolConfig(name='default', adapter_type='heroku', adapter_config=HEROKU_CONFIG, dry_run=True)

        adapter = build_adapter(config)

        self.assertIsInstance(adapter, HerokuAdapter)
        self.assertTrue(adapter.dry_run)
        self.assertEqual(adapter.pool, 'default')

    def test_k8s_alias(self):
        config = PoolConfig(name='default', adapter_type='k8s', adapter_config={'deployment': 'worker'})

        self.assertIsInstance(build_adapter(config), KubernetesAdapter)

    def test_missing_credentials(self):
        config = PoolConfig(name='default', adapter_type='heroku', adapter_config={'app_name': 'my-app'})

        with self.assertRaises(ConfigurationError) as ctx:
            build_adapter(config)

        self.assertIn('api_key is required', str(ctx.exception))

    def test_unknown_adapter(self):
        config = PoolConfig(name='default', adapter_type='nomad')

        with self.assertRaises(ConfigurationError):
            build_adapter(config)


if __name__ == '__main__':
    unittest.main()
