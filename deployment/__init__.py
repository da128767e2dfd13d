# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Deployment of services into Proxmox containers and VMs.

One project file describes one service: where its credentials come from,
what must be installed on the workstation, which directories must be
owned by the container's service user and how to reach the new host.

A run is a list of phases executed strictly in order:
credentials, permissions, provisioning, reachability, configuration,
verification. A failed phase stops the run. Nothing is rolled back:
provisioning and configuration are idempotent, so running again after
fixing the cause converges to the same state.

Secrets are held in memory for the run only. They reach the provisioning
and configuration engines through transient files readable by the
current user, never through command line arguments, and are replaced
with *** in the log.

Run with a project file:
    python -m deployment projects/lxc_npm.ini deploy
"""
from deployment._ansible import AnsibleEngine
from deployment._ansible import ConfigurationEngine
from deployment._ansible import InventoryHost
from deployment._config import ProjectConfig
from deployment._config import load_project
from deployment._context import Context
from deployment._credentials import Credential
from deployment._credentials import CredentialResolver
from deployment._credentials import CredentialSource
from deployment._credentials import Handoff
from deployment._credentials import SecretSpec
from deployment._errors import AuthenticationFailed
from deployment._errors import CancelledByOperator
from deployment._errors import ConfigurationEngineError
from deployment._errors import ConfigurationInvalid
from deployment._errors import CredentialUnavailable
from deployment._errors import DeploymentError
from deployment._errors import DynamicIssueFailed
from deployment._errors import PermissionDenied
from deployment._errors import PermissionRepairError
from deployment._errors import PreflightFailed
from deployment._errors import ProvisioningEngineError
from deployment._errors import ReachabilityTimeout
from deployment._errors import RetryableConnectivityFailure
from deployment._errors import SecretNotFound
from deployment._errors import SecretsStoreSealed
from deployment._errors import SecretsStoreUnreachable
from deployment._permissions import PermissionRepairTask
from deployment._permissions import RepairOutcome
from deployment._phases import Phase
from deployment._phases import PhaseRunner
from deployment._phases import PhaseStatus
from deployment._phases import RetryPolicy
from deployment._phases import RunReport
from deployment._phases import RunStatus
from deployment._preflight import BinaryRequirement
from deployment._preflight import FileRequirement
from deployment._preflight import Report
from deployment._preflight import check_binaries
from deployment._preflight import check_files
from deployment._tofu import ProvisioningEngine
from deployment._tofu import TofuEngine
from deployment._vault import DynamicLease
from deployment._vault import VaultSession
from deployment._waiting import wait_for_port
from deployment._workflows import run_workflow
from deployment._workflows import workflows

__all__ = [
    'AnsibleEngine',
    'AuthenticationFailed',
    'BinaryRequirement',
    'CancelledByOperator',
    'ConfigurationEngine',
    'ConfigurationEngineError',
    'ConfigurationInvalid',
    'Context',
    'Credential',
    'CredentialResolver',
    'CredentialSource',
    'CredentialUnavailable',
    'DeploymentError',
    'DynamicIssueFailed',
    'DynamicLease',
    'FileRequirement',
    'Handoff',
    'InventoryHost',
    'PermissionDenied',
    'PermissionRepairError',
    'PermissionRepairTask',
    'Phase',
    'PhaseRunner',
    'PhaseStatus',
    'PreflightFailed',
    'ProjectConfig',
    'ProvisioningEngine',
    'ProvisioningEngineError',
    'ReachabilityTimeout',
    'RepairOutcome',
    'Report',
    'RetryPolicy',
    'RetryableConnectivityFailure',
    'RunReport',
    'RunStatus',
    'SecretNotFound',
    'SecretSpec',
    'SecretsStoreSealed',
    'SecretsStoreUnreachable',
    'TofuEngine',
    'VaultSession',
    'check_binaries',
    'check_files',
    'load_project',
    'run_workflow',
    'wait_for_port',
    'workflows',
    ]
