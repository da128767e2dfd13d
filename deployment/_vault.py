# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import time
from typing import Any
from typing import Callable
from typing import Mapping
from typing import Optional

import requests

from deployment._errors import AuthenticationFailed
from deployment._errors import DeploymentError
from deployment._errors import DynamicIssueFailed
from deployment._errors import PermissionDenied
from deployment._errors import SecretNotFound
from deployment._errors import SecretsStoreSealed
from deployment._errors import SecretsStoreUnreachable

_logger = logging.getLogger(__name__)


class DynamicLease:
    """Credentials generated by the secrets store for a limited time.

    Systems relying on the credentials (e.g. S3) reject them for a while
    after they are issued. The caller decides how long to wait,
    see wait_until_ready().
    """

    def __init__(
            self,
            lease_id: str,
            role: str,
            lease_duration_sec: int,
            data: Mapping[str, Any],
            issued_at: Optional[float] = None,
            ):
        self.lease_id = lease_id
        self.role = role
        self.lease_duration_sec = lease_duration_sec
        self._data = data
        self.issued_at = time.monotonic() if issued_at is None else issued_at

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.role!r} TTL {self.lease_duration_sec}s>'

    def field(self, name: str) -> Optional[str]:
        value = self._data.get(name)
        return None if value is None else str(value)

    def ready_at(self, propagation_delay_sec: float) -> float:
        return self.issued_at + propagation_delay_sec

    def wait_until_ready(self, propagation_delay_sec: float):
        remaining_sec = self.ready_at(propagation_delay_sec) - time.monotonic()
        if remaining_sec > 0:
            _logger.info("%r: waiting %.0f sec for propagation", self, remaining_sec)
            time.sleep(remaining_sec)
        _logger.info("%r: ready", self)


class VaultSession:
    """Token-authenticated access to a HashiCorp Vault compatible store.

    The token is kept until the store refuses it or its TTL elapses.
    Then the session must authenticate again; a username/password login
    is remembered for that purpose, the password itself is not.
    """

    def __init__(self, address: str, timeout_sec: float = 10):
        self._address = address.rstrip('/')
        self._timeout_sec = timeout_sec
        self._http = requests.Session()
        self._token: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._login: Optional[Callable[[], None]] = None
        self.display_name: Optional[str] = None

    def __repr__(self):
        return f'<{self.__class__.__name__} {self._address} as {self.display_name or "nobody"}>'

    def address(self) -> str:
        return self._address

    def check_status(self):
        # Status codes are overridden to get a JSON body in every state.
        response = self._request(
            'GET', 'sys/health',
            params={'standbyok': 'true', 'sealedcode': 200, 'uninitcode': 200},
            authenticated=False,
            )
        health = response.json()
        if health.get('sealed'):
            raise SecretsStoreSealed(self._address)
        if not health.get('initialized', True):
            raise DeploymentError(
                f"Secrets store at {self._address} is not initialized",
                hint="vault operator init",
                )
        _logger.info("Secrets store %s is reachable and unsealed", self._address)

    def authenticate(
            self,
            get_username: Callable[[], str],
            get_password: Callable[[], str],
            existing_token: Optional[str] = None,
            ):
        """Reuse the existing token if it is still valid, log in otherwise.

        Username and password are asked for only when a login is needed.
        """
        self._login = lambda: self._userpass_login(get_username(), get_password())
        if existing_token:
            try:
                self._accept_token(existing_token)
            except PermissionDenied:
                _logger.info("Existing token is not valid anymore")
            else:
                _logger.info("Already authenticated as %s", self.display_name)
                return
        self.reauthenticate()

    def reauthenticate(self):
        self.invalidate()
        if self._login is None:
            raise AuthenticationFailed(
                "Not authenticated to the secrets store",
                hint="export VAULT_TOKEN=$(vault print token)",
                )
        self._login()

    def is_authenticated(self) -> bool:
        if self._token is None:
            return False
        if self._expires_at is None:
            return True
        return time.monotonic() < self._expires_at

    def invalidate(self):
        self._token = None
        self._expires_at = None

    def _userpass_login(self, username: str, password: str):
        _logger.info("Logging in as %s", username)
        try:
            response = self._request(
                'POST', f'auth/userpass/login/{username}',
                json={'password': password},
                authenticated=False,
                )
        except (PermissionDenied, _NotFound, _HTTPError) as e:
            raise AuthenticationFailed(
                f"Login as {username} failed: {e}",
                hint="Check VAULT_USERNAME and the password",
                )
        auth = response.json()['auth']
        self._set_token(auth['client_token'], auth.get('lease_duration', 0))
        self.display_name = f'userpass-{username}'
        _logger.info("Authenticated as %s (TTL: %ss)", self.display_name, auth.get('lease_duration'))

    def _accept_token(self, token: str):
        response = self._request('GET', 'auth/token/lookup-self', token=token)
        data = response.json()['data']
        self._set_token(token, data.get('ttl', 0))
        self.display_name = data.get('display_name')
        _logger.debug("Token TTL: %ss", data.get('ttl'))

    def _set_token(self, token: str, ttl_sec: int):
        self._token = token
        # TTL 0 means the token never expires, e.g. root tokens.
        self._expires_at = time.monotonic() + ttl_sec if ttl_sec else None

    def read_kv(self, path: str, field: str) -> str:
        path = path.strip('/')
        candidates = [self._kv_api_path(path)]
        if candidates[0] != path:
            candidates.append(path)
        for candidate in candidates:
            try:
                response = self._request('GET', candidate)
            except _NotFound:
                _logger.debug("Not found: %s", candidate)
                continue
            except PermissionDenied:
                # Revoked or expired token; the caller may log in again.
                self.invalidate()
                raise
            data = response.json().get('data') or {}
            # KV v2 nests the secret under data.data next to data.metadata.
            if isinstance(data.get('data'), dict) and 'metadata' in data:
                data = data['data']
            value = data.get(field)
            if value in (None, ''):
                raise SecretNotFound(path, field)
            _logger.debug("Read %s field %s", candidate, field)
            return str(value)
        raise SecretNotFound(path)

    def _kv_api_path(self, path: str) -> str:
        """Insert data/ after the mount point of a KV v2 engine."""
        try:
            response = self._request('GET', f'sys/internal/ui/mounts/{path}')
        except (_NotFound, PermissionDenied, _HTTPError) as e:
            _logger.debug("Cannot determine mount of %s: %s", path, e)
            return path
        mount = response.json().get('data') or {}
        mount_path = (mount.get('path') or '').strip('/')
        version = (mount.get('options') or {}).get('version')
        if version != '2' or not mount_path:
            return path
        rest = path[len(mount_path):].strip('/')
        if rest.startswith('data/'):
            return path
        return f'{mount_path}/data/{rest}'

    def issue_dynamic(self, role: str, engine_path: str) -> DynamicLease:
        _logger.info("Requesting dynamic credentials for role %s", role)
        try:
            response = self._request('GET', f'{engine_path.strip("/")}/creds/{role}')
        except PermissionDenied as e:
            self.invalidate()
            raise DynamicIssueFailed(
                f"Not allowed to issue credentials for role {role!r}: {e}",
                hint=f"Check that the policies of the user allow reading {engine_path}/creds/{role}",
                )
        except (_NotFound, _HTTPError) as e:
            raise DynamicIssueFailed(
                f"Failed to issue credentials for role {role!r} at {engine_path!r}: {e}",
                hint=f"vault read {engine_path}/roles/{role}",
                )
        body = response.json()
        data = body.get('data') or {}
        if not data:
            raise DynamicIssueFailed(f"Empty credentials issued for role {role!r}")
        lease = DynamicLease(body.get('lease_id', ''), role, body.get('lease_duration', 0), data)
        _logger.info("%r issued (TTL: %dh)", lease, lease.lease_duration_sec // 3600)
        return lease

    def transit_key_exists(self, name: str, engine_path: str) -> bool:
        try:
            self._request('GET', f'{engine_path.strip("/")}/keys/{name}')
        except _NotFound:
            return False
        return True

    def _request(
            self,
            method: str,
            path: str,
            *,
            params: Optional[Mapping[str, Any]] = None,
            json: Optional[Mapping[str, Any]] = None,
            authenticated: bool = True,
            token: Optional[str] = None,
            ) -> requests.Response:
        headers = {}
        if token is None and authenticated:
            if not self.is_authenticated():
                _logger.info("Token is missing or expired")
                self.reauthenticate()
            token = self._token
        if token is not None:
            headers['X-Vault-Token'] = token
        url = f'{self._address}/v1/{path}'
        _logger.debug("%s %s", method, url)
        try:
            response = self._http.request(
                method, url, params=params, json=json, headers=headers, timeout=self._timeout_sec)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise SecretsStoreUnreachable(self._address, str(e))
        if response.status_code == 403:
            raise PermissionDenied(f"{method} {path}: permission denied")
        if response.status_code == 404:
            raise _NotFound(f"{method} {path}: not found")
        if not response.ok:
            raise _HTTPError(f"{method} {path}: {response.status_code} {_errors_text(response)}")
        return response


def _errors_text(response: requests.Response) -> str:
    try:
        return '; '.join(response.json().get('errors', []))
    except ValueError:
        return response.reason


class _NotFound(Exception):
    pass


class _HTTPError(Exception):
    pass
