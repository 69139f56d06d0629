"""REST provider: generic JSON cloud API client.

Maps resource operations onto collection-style HTTP endpoints:

    create  POST   {endpoint}/{collection}
    update  PUT    {endpoint}/{collection}/{name}
    delete  DELETE {endpoint}/{collection}/{name}
    read    GET    {endpoint}/{collection}/{name}

Options:
    endpoint: API base URL (required)
    collections: resource type -> collection path (default: "{type}s")
    defaults: fields merged into every create/update body (project, region...)
    timeout: per-request timeout in seconds (default: 30)
    verify_tls: verify server certificates (default: true)
    status_field: output field holding lifecycle status (default: "status")
    ready_states: status values that count as ready
"""

import logging
from typing import Any, Optional

import requests

from config import ConfigError
from errors import PermanentProviderError, TransientProviderError
from stack import ProviderSettings

logger = logging.getLogger(__name__)

# Rate limiting and server-side trouble are worth retrying
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}

DEFAULT_READY_STATES = ('READY', 'RUNNING', 'ACTIVE', 'AVAILABLE')


class RestProvider:
    """Provider plugin for JSON-over-HTTP infrastructure APIs."""

    def __init__(self, settings: ProviderSettings, token: str = ''):
        self.settings = settings
        options = settings.options
        endpoint = options.get('endpoint')
        if not endpoint:
            raise ConfigError(f"Provider '{settings.name}' (rest) requires 'endpoint'")
        self.endpoint = str(endpoint).rstrip('/')
        self.collections: dict = dict(options.get('collections') or {})
        self.defaults: dict = dict(options.get('defaults') or {})
        self.timeout = float(options.get('timeout', 30))
        self.verify_tls = bool(options.get('verify_tls', True))
        self.status_field = options.get('status_field', 'status')
        self.ready_states = tuple(options.get('ready_states') or DEFAULT_READY_STATES)
        self.session = requests.Session()
        self.session.headers['Accept'] = 'application/json'
        if token:
            self.session.headers['Authorization'] = f'Bearer {token}'

    def _url(self, resource_type: str, name: Optional[str] = None) -> str:
        collection = self.collections.get(resource_type, f'{resource_type}s')
        url = f'{self.endpoint}/{collection.strip("/")}'
        return f'{url}/{name}' if name else url

    def _request(self, method: str, url: str, body: Optional[dict] = None,
                 allow_missing: bool = False) -> Optional[requests.Response]:
        """Send a request and classify failures.

        Returns None for a 404 when allow_missing is set.

        Raises:
            TransientProviderError: Connection problems, timeouts, 408/429/5xx
            PermanentProviderError: Any other error status
        """
        logger.debug(f"[{self.settings.name}] {method} {url}")
        try:
            resp = self.session.request(method, url, json=body,
                                        timeout=self.timeout, verify=self.verify_tls)
        except requests.exceptions.Timeout:
            raise TransientProviderError(f"Timeout calling {method} {url}")
        except requests.exceptions.ConnectionError as e:
            raise TransientProviderError(f"Cannot connect to {url}: {e}")

        if resp.status_code == 404 and allow_missing:
            return None
        if resp.status_code in TRANSIENT_STATUS_CODES:
            raise TransientProviderError(
                f"{method} {url} returned {resp.status_code}: {resp.text[:200]}"
            )
        if resp.status_code >= 400:
            raise PermanentProviderError(
                f"{method} {url} returned {resp.status_code}: {resp.text[:200]}"
            )
        return resp

    @staticmethod
    def _json(resp: Optional[requests.Response]) -> dict:
        if resp is None or not resp.content:
            return {}
        try:
            data: Any = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def create(self, resource_type: str, config: dict) -> dict:
        body = {**self.defaults, **config}
        data = self._json(self._request('POST', self._url(resource_type), body))
        return data or self.read(resource_type, config['name'])

    def update(self, resource_type: str, name: str, config: dict) -> dict:
        body = {**self.defaults, **config}
        data = self._json(self._request('PUT', self._url(resource_type, name), body))
        return data or self.read(resource_type, name)

    def delete(self, resource_type: str, name: str) -> None:
        self._request('DELETE', self._url(resource_type, name), allow_missing=True)

    def read(self, resource_type: str, name: str) -> dict:
        return self._json(self._request('GET', self._url(resource_type, name)))

    def ready(self, resource_type: str, name: str, outputs: dict) -> bool:
        """Poll the resource and compare its status with ready_states.

        Transient errors count as "not ready yet".
        """
        try:
            current = self.read(resource_type, name)
        except TransientProviderError as e:
            logger.debug(f"[{self.settings.name}] readiness poll failed: {e}")
            return False
        status = current.get(self.status_field)
        logger.debug(f"[{self.settings.name}] {resource_type}.{name} status={status}")
        return status in self.ready_states
