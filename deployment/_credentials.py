# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import os
from abc import ABCMeta
from abc import abstractmethod
from enum import IntEnum
from pathlib import Path
from typing import Callable
from typing import Collection
from typing import Dict
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Sequence

from deployment._errors import AuthenticationFailed
from deployment._errors import ConfigurationInvalid
from deployment._errors import CredentialUnavailable
from deployment._errors import PermissionDenied
from deployment._errors import SecretNotFound
from deployment._logging import redactor
from deployment._vault import DynamicLease
from deployment._vault import VaultSession
from deployment.local_secrets import LocalSecretFiles

_logger = logging.getLogger(__name__)


class CredentialSource(IntEnum):
    """Where a credential may come from. Lower value means higher priority."""

    ENVIRONMENT = 1
    SECRETS_STORE_KV = 2
    LOCAL_FILE = 3
    INTERACTIVE_PROMPT = 4
    DYNAMIC_LEASE = 5

    @classmethod
    def from_name(cls, name: str) -> 'CredentialSource':
        """Parse the name used in project files.

        >>> CredentialSource.from_name('secrets_store')
        <CredentialSource.SECRETS_STORE_KV: 2>
        >>> CredentialSource.from_name('Prompt')
        <CredentialSource.INTERACTIVE_PROMPT: 4>
        """
        try:
            return _source_names[name.strip().lower()]
        except KeyError:
            raise ConfigurationInvalid(
                f"Unknown credential source {name!r}, "
                f"expected one of {', '.join(_source_names)}")


_source_names = {
    'environment': CredentialSource.ENVIRONMENT,
    'secrets_store': CredentialSource.SECRETS_STORE_KV,
    'local_file': CredentialSource.LOCAL_FILE,
    'prompt': CredentialSource.INTERACTIVE_PROMPT,
    'dynamic_lease': CredentialSource.DYNAMIC_LEASE,
    }


class Handoff(NamedTuple):
    """How a resolved value reaches an external engine.

    tf_var: variable of the provisioning engine.
    ansible_var: extra variable of the configuration engine.
    aws: field of the AWS shared credentials file used by the state backend.
    """

    target: str
    name: str


class SecretSpec(NamedTuple):
    key: str
    sources: Sequence[CredentialSource]
    env_var: Optional[str] = None
    store_path: Optional[str] = None
    store_field: Optional[str] = None
    file_path: Optional[Path] = None
    file_field: Optional[str] = None
    prompt: Optional[str] = None
    lease_role: Optional[str] = None
    lease_field: Optional[str] = None
    default: Optional[str] = None
    secret: bool = True
    persisted: bool = False
    required: bool = True
    handoffs: Sequence[Handoff] = ()


class Credential:

    def __init__(
            self,
            key: str,
            value: str,
            source: Optional[CredentialSource],
            persisted: bool,
            ):
        self.key = key
        self.source = source  # None for a default value
        self.persisted = persisted
        self._value: Optional[bytearray] = bytearray(value.encode('utf-8'))

    def __repr__(self):
        if self._value is None:
            state = 'discarded'
        elif self.source is None:
            state = 'default'
        else:
            state = f'from {self.source.name}'
        return f'<{self.__class__.__name__} {self.key!r} {state} persisted={self.persisted}>'

    def text(self) -> str:
        if self._value is None:
            raise RuntimeError(f"{self!r}: value was discarded at the end of the run")
        return self._value.decode('utf-8')

    def discard(self):
        if self._value is not None:
            self._value[:] = bytes(len(self._value))
            self._value = None


class _Source(metaclass=ABCMeta):
    kind: CredentialSource

    @abstractmethod
    def lookup(self, spec: SecretSpec, prompt: Optional[str]) -> Optional[str]:
        pass


class EnvironmentSource(_Source):
    kind = CredentialSource.ENVIRONMENT

    def __init__(self, environ: Mapping[str, str] = os.environ):
        self._environ = environ

    def lookup(self, spec, prompt):
        if spec.env_var is None:
            return None
        return self._environ.get(spec.env_var)


class SecretsStoreSource(_Source):
    """Read KV secrets, logging in again once if the token is refused."""

    kind = CredentialSource.SECRETS_STORE_KV

    def __init__(self, get_session: Callable[[], VaultSession]):
        self._get_session = get_session

    def lookup(self, spec, prompt):
        if spec.store_path is None:
            return None
        session = self._get_session()
        field = spec.store_field or spec.key
        try:
            return self._read(session, spec.store_path, field)
        except PermissionDenied as e:
            _logger.warning("%s: token refused (%s), authenticating again", spec.key, e)
            session.reauthenticate()
        try:
            return self._read(session, spec.store_path, field)
        except PermissionDenied as e:
            raise AuthenticationFailed(
                f"Secrets store refused access to {spec.store_path!r} after authenticating again: {e}",
                hint="Check the policies attached to the user",
                )

    @staticmethod
    def _read(session, path, field):
        try:
            return session.read_kv(path, field)
        except SecretNotFound as e:
            _logger.warning("%s", e)
            return None


class LocalFileSource(_Source):
    kind = CredentialSource.LOCAL_FILE

    def __init__(self, files: LocalSecretFiles):
        self._files = files

    def lookup(self, spec, prompt):
        if spec.file_path is None:
            return None
        return self._files.read(spec.file_path, spec.file_field, secret=spec.secret)


class PromptSource(_Source):
    kind = CredentialSource.INTERACTIVE_PROMPT

    def __init__(self, ask: Callable[[str, bool], str], permitted: bool):
        self._ask = ask
        self._permitted = permitted

    def lookup(self, spec, prompt):
        if not self._permitted:
            _logger.debug("%s: prompting is not permitted", spec.key)
            return None
        text = prompt or spec.prompt or f"Enter {spec.key}"
        return self._ask(text, spec.secret)


class DynamicLeaseSource(_Source):
    kind = CredentialSource.DYNAMIC_LEASE

    def __init__(self, get_lease: Callable[[str], DynamicLease]):
        self._get_lease = get_lease

    def lookup(self, spec, prompt):
        if spec.lease_role is None:
            return None
        lease = self._get_lease(spec.lease_role)
        return lease.field(spec.lease_field or spec.key)


class CredentialResolver:
    """Resolve each declared credential once per run.

    Sources are always tried in priority order, whatever order the caller
    passes them in. An empty value is the same as no value.
    """

    def __init__(self, specs: Mapping[str, SecretSpec], sources: Collection[_Source]):
        self._specs = specs
        self._sources: Dict[CredentialSource, _Source] = {s.kind: s for s in sources}
        self._cache: Dict[str, Credential] = {}

    def spec(self, key: str) -> SecretSpec:
        try:
            return self._specs[key]
        except KeyError:
            raise ConfigurationInvalid(f"Credential {key!r} is not declared in the project file")

    def specs(self) -> Collection[SecretSpec]:
        return self._specs.values()

    def resolve(
            self,
            key: str,
            source_chain: Optional[Sequence[CredentialSource]] = None,
            prompt: Optional[str] = None,
            ) -> Credential:
        try:
            return self._cache[key]
        except KeyError:
            pass
        spec = self.spec(key)
        chain = sorted(set(source_chain if source_chain is not None else spec.sources))
        for kind in chain:
            source = self._sources.get(kind)
            if source is None:
                _logger.debug("%s: source %s is not configured", key, kind.name)
                continue
            value = source.lookup(spec, prompt)
            if not value:
                _logger.debug("%s: nothing from %s", key, kind.name)
                continue
            credential = Credential(key, value, kind, spec.persisted)
            if spec.persisted and not spec.secret:
                _logger.info("%s: resolved from %s: %s", key, kind.name, value)
            else:
                # Ephemeral values stay out of the log and of echoed engine output.
                redactor.add(value)
                _logger.info("%s: resolved from %s (not logged)", key, kind.name)
            self._cache[key] = credential
            return credential
        if spec.default is not None and not spec.secret:
            if spec.persisted:
                _logger.info("%s: using default: %s", key, spec.default)
            else:
                _logger.info("%s: using default from the project file", key)
            credential = Credential(key, spec.default, None, spec.persisted)
            self._cache[key] = credential
            return credential
        raise CredentialUnavailable(key, ', '.join(k.name.lower() for k in chain))

    def resolve_optional(self, key: str) -> Optional[Credential]:
        try:
            return self.resolve(key)
        except CredentialUnavailable:
            _logger.info("%s: not configured (optional)", key)
            return None

    def cached(self, key: str) -> Optional[Credential]:
        return self._cache.get(key)

    def discard(self):
        for credential in self._cache.values():
            credential.discard()
        self._cache.clear()
        _logger.debug("Credentials discarded")
