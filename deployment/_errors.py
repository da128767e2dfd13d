# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
from typing import Optional


class DeploymentError(Exception):
    """Failure that ends a phase.

    Only errors with retryable set are re-attempted by the phase runner.
    The hint is shown to the operator next to the diagnostic.
    """

    retryable = False
    exit_code = 1

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


class ConfigurationInvalid(DeploymentError):
    pass


class CredentialUnavailable(DeploymentError):

    def __init__(self, key: str, tried: str = ''):
        tried = f" (tried: {tried})" if tried else ''
        super().__init__(
            f"Credential {key!r} is not available from any source{tried}",
            hint=f"Export the variable declared for {key!r} or store it in the secrets store",
            )
        self.key = key


class AuthenticationFailed(DeploymentError):
    pass


class PermissionDenied(DeploymentError):
    """Secrets store refused the token: revoked, expired or not authenticated."""


class SecretNotFound(DeploymentError):

    def __init__(self, path: str, field: Optional[str] = None):
        what = f"Field {field!r} at {path!r}" if field else f"Path {path!r}"
        super().__init__(
            f"{what} not found in the secrets store",
            hint=f"vault kv put {path} {field or '<field>'}=...",
            )
        self.path = path
        self.field = field


class SecretsStoreSealed(DeploymentError):

    def __init__(self, address: str):
        super().__init__(
            f"Secrets store at {address} is sealed",
            hint="vault operator unseal",
            )


class DynamicIssueFailed(DeploymentError):
    pass


class PreflightFailed(DeploymentError):
    pass


class RetryableConnectivityFailure(DeploymentError):
    retryable = True


class SecretsStoreUnreachable(RetryableConnectivityFailure):

    def __init__(self, address: str, reason: str):
        super().__init__(
            f"Cannot connect to the secrets store at {address}: {reason}",
            hint="Check VAULT_ADDR and that the secrets store is running",
            )


class ReachabilityTimeout(RetryableConnectivityFailure):

    def __init__(self, host: str, port: int, timeout_sec: float):
        super().__init__(
            f"Timed out ({timeout_sec:g} seconds) waiting for {host}:{port}",
            hint="Check the host console: boot or cloud-init may still be running",
            )
        self.timeout_sec = timeout_sec


class _EngineError(DeploymentError):

    def __init__(self, command: str, returncode: int, hint: Optional[str] = None):
        super().__init__(f"{command!r} failed with exit code {returncode}", hint=hint)
        self.command = command
        self.exit_code = returncode or 1


class ProvisioningEngineError(_EngineError):
    pass


class ConfigurationEngineError(_EngineError):
    pass


class PermissionRepairError(DeploymentError):
    pass


class CancelledByOperator(DeploymentError):
    pass
