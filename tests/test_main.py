import os
import unittest
from unittest import mock

from pool_autoscaler.errors import PlatformAPIError
from pool_autoscaler.main import lambda_handler

HEROKU = {'api_key': 'secret', 'app_name': 'my-app'}


def pool(name, **overrides):
    values = {
        'name': name,
        'adapter_type': 'heroku',
        'adapter_config': HEROKU,
        'metrics_type': 'static',
        'metrics_config': {'queue_depth': 150, 'oldest_job_age_seconds': 400},
    }
    values.update(overrides)
    return values


@mock.patch.dict(os.environ, {}, clear=True)
@mock.patch('pool_autoscaler.adapters.heroku.HerokuAdapter._apply', side_effect=lambda target: target)
@mock.patch('pool_autoscaler.adapters.heroku.HerokuAdapter.current_count', return_value=2)
class TestLambdaHandler(unittest.TestCase):

    def test_runs_every_pool(self, mock_current, mock_apply):
        response = lambda_handler({'pools': [pool('critical'), pool('batch')]}, None)

        self.assertEqual(response['statusCode'], 200)
        self.assertEqual(set(response['results']), {'critical', 'batch'})
        self.assertEqual(response['results']['critical']['decision']['to'], 3)
        self.assertEqual(mock_apply.call_count, 2)

    def test_single_pool(self, mock_current, mock_apply):
        response = lambda_handler({'pools': [pool('critical'), pool('batch')], 'pool': 'batch'}, None)

        self.assertEqual(list(response['results']), ['batch'])

    def test_invalid_configuration(self, mock_current, mock_apply):
        response = lambda_handler({'pools': [pool('critical', min_workers=5, max_workers=2)]}, None)

        self.assertEqual(response['statusCode'], 400)
        self.assertIn('min_workers cannot exceed max_workers', response['error'])
        mock_current.assert_not_called()

    def test_quoted_symbol_pool_name(self, mock_current, mock_apply):
        response = lambda_handler({'pools': [pool('critical')], 'pool': ':critical'}, None)

        self.assertEqual(response['statusCode'], 400)
        self.assertIn('leading colon', response['error'])

    def test_unknown_pool(self, mock_current, mock_apply):
        response = lambda_handler({'pools': [pool('critical')], 'pool': 'batch'}, None)

        self.assertEqual(response['statusCode'], 400)

    def test_null_pool_value(self, mock_current, mock_apply):
        response = lambda_handler({'pools': [pool('critical', max_workers=None)]}, None)

        self.assertEqual(response['statusCode'], 400)
        self.assertIn('max_workers', response['error'])
        mock_current.assert_not_called()

    def test_non_numeric_setting(self, mock_current, mock_apply):
        with mock.patch.dict(os.environ, {'LOCK_STALE_AFTER_SECONDS': 'five'}):
            response = lambda_handler({'pools': [pool('critical')]}, None)

        self.assertEqual(response['statusCode'], 400)
        self.assertIn('LOCK_STALE_AFTER_SECONDS', response['error'])
        mock_current.assert_not_called()

    def test_missing_adapter_credentials(self, mock_current, mock_apply):
        response = lambda_handler({'pools': [pool('critical', adapter_config={'app_name': 'my-app'})]}, None)

        self.assertEqual(response['statusCode'], 400)
        self.assertIn('api_key is required', response['error'])

    def test_failed_pool_returns_500(self, mock_current, mock_apply):
        mock_apply.side_effect = PlatformAPIError('Heroku API returned 500', status_code=500)

        response = lambda_handler({'pools': [pool('critical')]}, None)

        self.assertEqual(response['statusCode'], 500)
        self.assertEqual(response['results']['critical']['status'], 'error')

    def test_dry_run_pool(self, mock_current, mock_apply):
        response = lambda_handler({'pools': [pool('critical', dry_run=True)]}, None)

        self.assertEqual(response['statusCode'], 200)
        self.assertEqual(response['results']['critical']['actuated_count'], 3)
        mock_apply.assert_not_called()

    def test_create_tables_requires_database(self, mock_current, mock_apply):
        response = lambda_handler({'action': 'create_tables'}, None)

        self.assertEqual(response['statusCode'], 400)

    def test_create_tables(self, mock_current, mock_apply):
        response = lambda_handler({'action': 'create_tables', 'settings': {'database_url': 'sqlite://'}}, None)

        self.assertEqual(response['statusCode'], 200)

    def test_unknown_action(self, mock_current, mock_apply):
        response = lambda_handler({'action': 'explode'}, None)

        self.assertEqual(response['statusCode'], 400)


if __name__ == '__main__':
    unittest.main()
