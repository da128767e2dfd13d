# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import os
import shutil
from pathlib import Path
from typing import Callable
from typing import Collection
from typing import Dict
from typing import Mapping
from typing import Optional

from deployment._ansible import AnsibleEngine
from deployment._ansible import ConfigurationEngine
from deployment._config import ProjectConfig
from deployment._credentials import CredentialResolver
from deployment._credentials import DynamicLeaseSource
from deployment._credentials import EnvironmentSource
from deployment._credentials import LocalFileSource
from deployment._credentials import PromptSource
from deployment._credentials import SecretsStoreSource
from deployment._errors import PreflightFailed
from deployment._interactive import ask
from deployment._interactive import confirm
from deployment._logging import redactor
from deployment._tofu import ProvisioningEngine
from deployment._tofu import TofuEngine
from deployment._vault import DynamicLease
from deployment._vault import VaultSession
from deployment.local_secrets import LocalSecretFiles

_logger = logging.getLogger(__name__)


class Context:
    """Everything one deployment run shares between its phases.

    The secrets store session and dynamic leases are created on first use
    and dropped, together with every resolved credential, by close().
    """

    def __init__(
            self,
            config: ProjectConfig,
            interactive: bool,
            check_mode: bool = False,
            environ: Mapping[str, str] = os.environ,
            ask_operator: Callable[[str, bool], str] = ask,
            confirm_operator: Callable[[str], bool] = confirm,
            session_factory: Callable[[str, float], VaultSession] = VaultSession,
            provisioning: Optional[ProvisioningEngine] = None,
            configuration: Optional[ConfigurationEngine] = None,
            ):
        self.config = config
        self.interactive = interactive
        self.check_mode = check_mode
        self.confirm = confirm_operator
        self._environ = environ
        self._session_factory = session_factory
        self._session: Optional[VaultSession] = None
        self._leases: Dict[str, DynamicLease] = {}
        local_files = LocalSecretFiles(config.fix_insecure_permissions, config.private_key_path)
        self.resolver = CredentialResolver(config.secrets, [
            EnvironmentSource(environ),
            SecretsStoreSource(self.session),
            LocalFileSource(local_files),
            PromptSource(ask_operator, interactive),
            DynamicLeaseSource(self.lease),
            ])
        self._provisioning = provisioning
        self._configuration = configuration
        self.outputs: Dict[str, str] = {}
        self.log_path: Optional[Path] = None

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.config.name}>'

    def session(self) -> VaultSession:
        if self._session is None:
            address = self.resolver.resolve('vault_addr').text()
            session = self._session_factory(address, self.config.vault.timeout_sec)
            session.check_status()
            token = self.resolver.resolve_optional('vault_token')
            session.authenticate(
                lambda: self.resolver.resolve('vault_username').text(),
                lambda: self.resolver.resolve('vault_password').text(),
                existing_token=token.text() if token is not None else None,
                )
            self._session = session
        return self._session

    def has_session(self) -> bool:
        return self._session is not None

    def session_status(self):
        """Check that the secrets store is reachable and unsealed, without logging in."""
        address = self.resolver.resolve('vault_addr').text()
        self._session_factory(address, self.config.vault.timeout_sec).check_status()

    def lease(self, role: str) -> DynamicLease:
        if role == self.config.vault.dynamic_role:
            role = self._environ.get(self.config.vault.dynamic_role_env) or role
        if role not in self._leases:
            self._leases[role] = self.session().issue_dynamic(role, self.config.vault.dynamic_engine)
        return self._leases[role]

    def wait_for_leases(self):
        for lease in self._leases.values():
            lease.wait_until_ready(self.config.vault.propagation_delay_sec)

    def resolve_all(self, targets: Collection[str]):
        """Resolve upfront everything handed off to the given engines.

        Prompts, if any, happen before the first state-changing phase.
        """
        for spec in self.resolver.specs():
            if any(h.target in targets for h in spec.handoffs):
                self._resolve(spec.key, spec.required)

    def handoff(self, target: str) -> Dict[str, str]:
        values = {}
        for spec in self.resolver.specs():
            for h in spec.handoffs:
                if h.target != target:
                    continue
                credential = self._resolve(spec.key, spec.required)
                if credential is not None:
                    values[h.name] = credential.text()
        return values

    def _resolve(self, key: str, required: bool):
        if required:
            return self.resolver.resolve(key)
        return self.resolver.resolve_optional(key)

    def aws_credentials(self) -> Dict[str, str]:
        credentials = self.handoff('aws')
        # Dependent systems reject dynamic credentials for a while after issuance.
        self.wait_for_leases()
        return credentials

    def provisioning(self) -> ProvisioningEngine:
        if self._provisioning is None:
            binary = next((b for b in ('tofu', 'terraform') if shutil.which(b) is not None), None)
            if binary is None:
                raise PreflightFailed(
                    "Neither tofu nor terraform is installed",
                    hint="https://opentofu.org/docs/intro/install/",
                    )
            self._provisioning = TofuEngine(
                self.config.terraform_dir,
                binary,
                lambda: self.handoff('tf_var'),
                self.aws_credentials,
                )
        return self._provisioning

    def configuration(self) -> ConfigurationEngine:
        if self._configuration is None:
            self._configuration = AnsibleEngine(self.config.ansible_dir, lambda: self.handoff('ansible_var'))
        return self._configuration

    def close(self):
        self.resolver.discard()
        if self._session is not None:
            # The token is not revoked: it may be the operator's own one.
            self._session.invalidate()
            self._session = None
        self._leases.clear()
        redactor.discard_all()
        _logger.debug("%r: closed", self)
