import logging
from typing import Any, Dict, List

import requests

from pool_autoscaler.adapters.base import ScaleAdapter
from pool_autoscaler.errors import PlatformAPIError, TransientPlatformAPIError

HEROKU_API_URL = 'https://api.heroku.com'
DEFAULT_TIMEOUT = 30


class HerokuAdapter(ScaleAdapter):
    """
    Scales a Heroku dyno formation through the Platform API.

    adapter_config keys:
        - api_key: Heroku API key
        - app_name: Heroku app name
        - process_type: Procfile process type to scale (default 'worker')
        - timeout: Request timeout in seconds (default 30)

    Heroku drops a formation entirely once it is scaled to 0. Reading a missing
    formation reports 0 workers, and updating one recreates it with a batch
    update.
    """
    name = 'heroku'

    def __init__(self, adapter_config: Dict[str, Any] = None, dry_run: bool = False, pool: str = 'default',
                 session: requests.Session = None):
        super().__init__(adapter_config, dry_run=dry_run, pool=pool)
        self.api_key = self.adapter_config.get('api_key')
        self.app_name = self.adapter_config.get('app_name')
        self.process_type = self.adapter_config.get('process_type', 'worker')
        self.timeout = float(self.adapter_config.get('timeout', DEFAULT_TIMEOUT))
        self.base_url = self.adapter_config.get('base_url', HEROKU_API_URL).rstrip('/')
        self._session = session

    def configuration_errors(self) -> List[str]:
        errors = []
        if not self.api_key:
            errors.append('api_key is required')
        if not self.app_name:
            errors.append('app_name is required')
        if not self.process_type:
            errors.append('process_type is required')
        return errors

    def describe_target(self) -> str:
        return f"{self.app_name}/{self.process_type}"

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        self._session.headers.update({
            'Accept': 'application/vnd.heroku+json; version=3',
            'Authorization': f"Bearer {self.api_key}",
            'Content-Type': 'application/json',
        })
        return self._session

    def _request(self, method: str, path: str, payload: Dict[str, Any] = None):
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=payload, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientPlatformAPIError(f"Heroku API {method} {path} failed: {e}")
        except requests.RequestException as e:
            raise PlatformAPIError(f"Heroku API {method} {path} failed: {e}")

        status = response.status_code
        if status >= 400:
            error_class = TransientPlatformAPIError if status == 429 or status >= 500 else PlatformAPIError
            raise error_class(f"Heroku API {method} {path} returned {status}",
                              status_code=status, response_body=response.text)

        return response.json() if response.content else None

    def current_count(self) -> int:
        path = f"/apps/{self.app_name}/formation/{self.process_type}"
        try:
            formation = self.with_retry(self._request, 'GET', path)
        except PlatformAPIError as e:
            if e.status_code == 404:
                logging.debug(f"[{self.pool}] Formation '{self.process_type}' not found, treating as 0 workers")
                return 0
            raise PlatformAPIError(f"Failed to get formation info: {e}",
                                   status_code=e.status_code, response_body=e.response_body) from e

        return int(formation.get('quantity', 0))

    def _apply(self, target: int) -> int:
        path = f"/apps/{self.app_name}/formation/{self.process_type}"
        try:
            self.with_retry(self._request, 'PATCH', path, {'quantity': target})
        except PlatformAPIError as e:
            if e.status_code == 404:
                return self._create_formation(target)
            raise PlatformAPIError(f"Failed to scale {self.process_type} to {target}: {e}",
                                   status_code=e.status_code, response_body=e.response_body) from e
        return target

    def _create_formation(self, target: int) -> int:
        """Recreate a formation that Heroku removed after it was scaled to 0."""
        logging.info(f"[{self.pool}] Formation '{self.process_type}' not found, creating with quantity {target}")

        path = f"/apps/{self.app_name}/formation"
        payload = {'updates': [{'type': self.process_type, 'quantity': target}]}
        try:
            self.with_retry(self._request, 'PATCH', path, payload)
        except PlatformAPIError as e:
            if e.status_code == 404:
                # Unlike a 404 on update, this means the process type is not in the Procfile at all
                raise PlatformAPIError(
                    f"Process type '{self.process_type}' does not exist. "
                    f"Verify that '{self.process_type}:' is defined in your Procfile; the configured "
                    f"process_type must exactly match a Procfile entry (see 'heroku ps -a {self.app_name}').",
                    status_code=e.status_code, response_body=e.response_body) from e
            raise PlatformAPIError(f"Failed to create formation {self.process_type} with quantity {target}: {e}",
                                   status_code=e.status_code, response_body=e.response_body) from e
        return target

    def formation_list(self) -> List[Dict[str, Any]]:
        """All formations of the app."""
        return self.with_retry(self._request, 'GET', f"/apps/{self.app_name}/formation") or []
