"""
HTTP client for a share provisioning agent.

The agent runs on (or next to) the file servers and exposes a small JSON API:

    GET  /shares/{host}/{share}   -> 200 when the share exists, 404 otherwise
    POST /shares                  -> creates folder, share, ACLs and quota

Authentication is HTTP Basic or a Bearer token. Existence checks are retried
on transient failures; creation is not, since it is not idempotent on every
agent.
"""

import json
import ssl
import base64
import logging
import threading
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, quote
from http.client import HTTPSConnection, HTTPConnection

from ldap_import.provisioning.base import ResourceProvisioner, ProvisioningError
from ldap_import.retry import retry_call, retry_settings, is_retryable_error, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)


class RestShareProvisioner(ResourceProvisioner):
    """
    ``ResourceProvisioner`` backed by the provisioning agent REST API.

    Args:
        config: ``provisioning`` configuration section
        error_config: ``error_handling`` section used for retries
    """

    def __init__(self, config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None):
        self.config = config
        self.base_url = config['base_url']
        self.auth_config = config.get('auth') or {}
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.retry_options = retry_settings(error_config)
        self.ssl_context = self._create_ssl_context()
        self.auth_headers = self._create_auth_headers()
        self._local = threading.local()

    def _create_ssl_context(self) -> Optional[ssl.SSLContext]:
        if self.parsed_url.scheme != 'https':
            return None
        if not self.verify_ssl:
            logger.warning("SSL verification disabled for provisioning agent")
            return ssl._create_unverified_context()
        context = ssl.create_default_context()
        ca_file = self.config.get('ca_cert_file')
        if ca_file:
            context.load_verify_locations(cafile=ca_file)
        return context

    def _create_auth_headers(self) -> Dict[str, str]:
        method = (self.auth_config.get('method') or '').lower()
        if method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                return {'Authorization': f"Basic {credentials}"}
            logger.error("Basic auth configured but missing username or password for provisioning agent")
        elif method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if token:
                return {'Authorization': f"Bearer {token}"}
            logger.error("Token auth configured but missing token for provisioning agent")
        elif method:
            logger.warning(f"Unknown authentication method '{method}' for provisioning agent")
        return {}

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """One keep-alive connection per worker thread."""
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            if self.parsed_url.scheme == 'https':
                connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
            else:
                connection = HTTPConnection(self.host, timeout=self.timeout)
            self._local.connection = connection
        return connection

    def _drop_connection(self):
        connection = getattr(self._local, 'connection', None)
        if connection is not None:
            connection.close()
            self._local.connection = None

    def request(self, method: str, path: str, body: Optional[Dict] = None):
        """
        Make HTTP request to the agent.

        Args:
            method: HTTP method
            path: Endpoint path relative to base_url
            body: JSON body

        Returns:
            Tuple of (status code, parsed JSON body or {})

        Raises:
            ProvisioningError: On connection errors and 5xx/401/403 responses
        """
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        headers = dict(self.auth_headers)
        headers['Accept'] = 'application/json'
        payload = None
        if body is not None:
            payload = json.dumps(body)
            headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, payload, headers)
            response = conn.getresponse()
            data = response.read().decode('utf-8')
        except (ConnectionError, OSError) as e:
            self._drop_connection()
            raise ProvisioningError(f"Connection error to provisioning agent: {e}")

        if response.status in (401, 403):
            raise ProvisioningError(f"Authentication failed for provisioning agent: HTTP {response.status}",
                                    status_code=response.status)
        if response.status >= 500:
            raise ProvisioningError(f"HTTP {response.status}: {response.reason}", status_code=response.status)

        try:
            parsed = json.loads(data) if data else {}
        except json.JSONDecodeError as e:
            raise ProvisioningError(f"Invalid JSON response from provisioning agent: {e}")
        return response.status, parsed

    def share_exists(self, host: str, share_name: str) -> bool:
        path = f"/shares/{quote(host, safe='')}/{quote(share_name, safe='')}"
        try:
            status, _ = retry_call(
                self.request, ('GET', path),
                exceptions=(ProvisioningError,),
                should_retry=is_retryable_error,
                on_retry=create_retry_callback(f"Share lookup {host}\\{share_name}"),
                **self.retry_options
            )
        except MaxRetriesExceeded as e:
            raise ProvisioningError(str(e))
        if status == 404:
            return False
        if status >= 400:
            raise ProvisioningError(f"Share lookup failed: HTTP {status}", status_code=status)
        return True

    def provision_share(self, host: str, local_path: str, share_name: str,
                        account: str, subfolders: List[str]) -> None:
        body = {
            'host': host,
            'local_path': local_path,
            'share_name': share_name,
            'account': account,
            'subfolders': list(subfolders or []),
        }
        status, response = self.request('POST', '/shares', body)
        if status >= 400:
            detail = response.get('error') or response.get('message') or f"HTTP {status}"
            raise ProvisioningError(f"Provisioning {host}\\{share_name} failed: {detail}", status_code=status)
        logger.debug(f"Provisioned share \\\\{host}\\{share_name} for {account}")

    def close(self):
        self._drop_connection()
