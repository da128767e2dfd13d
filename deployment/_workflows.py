# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import functools
import logging
import time
from typing import Callable
from typing import Collection
from typing import List
from typing import Mapping
from typing import NamedTuple
from typing import Sequence

from deployment._ansible import InventoryHost
from deployment._config import ProjectConfig
from deployment._context import Context
from deployment._credentials import CredentialSource
from deployment._errors import AuthenticationFailed
from deployment._errors import CancelledByOperator
from deployment._errors import DeploymentError
from deployment._permissions import LocalFilesystem
from deployment._permissions import PermissionRepairTask
from deployment._permissions import RemoteFilesystem
from deployment._phases import Phase
from deployment._phases import PhaseRunner
from deployment._phases import RunReport
from deployment._preflight import Report
from deployment._preflight import check_binaries
from deployment._preflight import check_files
from deployment._waiting import wait_for_port

_logger = logging.getLogger(__name__)


def _credentials(targets: Collection[str], context: Context):
    context.resolve_all(targets)
    transit_key = context.config.vault.transit_key
    if transit_key is not None and context.has_session():
        session = context.session()
        if session.transit_key_exists(transit_key, context.config.vault.transit_path):
            _logger.info("State encryption key %s exists", transit_key)
        else:
            _logger.warning(
                "State encryption key %s not found at %s, the provisioning engine may fail",
                transit_key, context.config.vault.transit_path)


def _repair_permissions(context: Context):
    for mount in context.config.bind_mounts:
        fs = RemoteFilesystem(mount.ssh_host) if mount.ssh_host else LocalFilesystem()
        task = PermissionRepairTask(fs, mount.namespace_offset, mount.allowed_root)
        outcome = task.repair(mount.path, mount.uid, mount.gid)
        _logger.info("Bind mount %s: %s", mount.name, outcome.value)


def _init(context: Context):
    context.provisioning().init()


def _validate(context: Context):
    context.provisioning().validate()


def _plan(context: Context):
    context.provisioning().plan()


def _apply(context: Context):
    if context.check_mode:
        _logger.info("Check mode: planning instead of applying")
        context.provisioning().plan()
        return
    context.provisioning().apply()


def _destroy(context: Context):
    if not context.interactive:
        raise CancelledByOperator(
            "Destroying needs the operator's confirmation",
            hint="Run without --non-interactive",
            )
    if not context.confirm(f"Destroy all infrastructure of {context.config.name}?"):
        raise CancelledByOperator("Destroy cancelled")
    context.provisioning().destroy()


def _remove_inventory(context: Context):
    context.configuration().remove_inventory()


def target_host(config: ProjectConfig, outputs: Mapping[str, str]) -> InventoryHost:
    """Describe the provisioned host from the outputs of the provisioning engine.

    >>> from pathlib import Path
    >>> config = ProjectConfig._make([None] * len(ProjectConfig._fields))._replace(
    ...     inventory_host='npm', host_output='container_ip', ssh_user_output='ssh_user',
    ...     ssh_port_output='ssh_port', ssh_user='ansible', ssh_port=22, ssh_private_key=Path('/k'))
    >>> target_host(config, {'container_ip': '10.0.0.5/24', 'ssh_port': '2222'})
    InventoryHost(name='npm', address='10.0.0.5', user='ansible', port=2222, private_key=PosixPath('/k'))
    """
    address = outputs.get(config.host_output)
    if not address:
        raise DeploymentError(
            f"Output {config.host_output!r} is missing; available: {', '.join(outputs) or 'none'}",
            hint="Set host_output in the [project] section to the output with the host address",
            )
    return InventoryHost(
        name=config.inventory_host,
        address=address.split('/')[0],
        user=outputs.get(config.ssh_user_output) or config.ssh_user,
        port=int(outputs.get(config.ssh_port_output) or config.ssh_port),
        private_key=config.ssh_private_key,
        )


def _write_inventory(context: Context):
    context.outputs = dict(context.provisioning().outputs())
    host = target_host(context.config, context.outputs)
    context.configuration().write_inventory(context.config.inventory_group, [host])


def _wait_for_ssh(context: Context):
    wait = context.config.wait
    host = target_host(context.config, context.outputs)
    wait_for_port(host.address, wait.port, wait.timeout_sec, wait.interval_sec)


def _settle(context: Context):
    _logger.info("Waiting %g sec for cloud-init to finish", context.config.settle_delay_sec)
    time.sleep(context.config.settle_delay_sec)


def _require_inventory(context: Context):
    configuration = context.configuration()
    if not configuration.has_inventory():
        raise DeploymentError(
            f"No inventory in {context.config.ansible_dir}",
            hint="Run deploy first or create inventory.yml from inventory.yml.example",
            )


def _test_connectivity(context: Context):
    _require_inventory(context)
    context.configuration().test_connectivity()


def _configure(context: Context):
    context.configuration().run(context.config.playbook, check_mode=context.check_mode)


def _verify(context: Context):
    config = context.config
    if config.verify_port is None or not context.outputs:
        context.configuration().test_connectivity()
        return
    host = target_host(config, context.outputs)
    wait_for_port(host.address, config.verify_port, config.verify_timeout_sec, config.wait.interval_sec)


def _store_token(context: Context):
    """Make sure the secrets store can be used before configuring the hosts.

    Without a token, the operator may log in now.
    """
    if not _uses_secrets_store(context.config, 'ansible_var'):
        return
    if context.resolver.resolve_optional('vault_token') is None:
        _logger.warning("VAULT_TOKEN is not set")
        _logger.info("For standalone configuration, set it first: export VAULT_TOKEN=$(vault print token)")
        if not context.interactive or not context.confirm("Authenticate to Vault now?"):
            raise AuthenticationFailed(
                "No secrets store token",
                hint="export VAULT_TOKEN=$(vault print token) or run deploy",
                )
    context.session()


def _uses_secrets_store(config: ProjectConfig, target: str) -> bool:
    return any(
        CredentialSource.SECRETS_STORE_KV in spec.sources or CredentialSource.DYNAMIC_LEASE in spec.sources
        for spec in config.secrets.values()
        if any(h.target == target for h in spec.handoffs)
        )


def _state(context: Context):
    provisioning = context.provisioning()
    if not provisioning.has_state():
        _logger.info("No state found: not deployed")
        return
    _logger.info("Infrastructure deployed")
    context.outputs = dict(provisioning.outputs())
    for name, value in context.outputs.items():
        _logger.info("  %s = %s", name, value)


def _inventory_status(context: Context):
    configuration = context.configuration()
    if configuration.has_inventory():
        _logger.info("Inventory exists")
    else:
        _logger.info("No inventory")


def _secrets_store_status(context: Context):
    context.session_status()


def _binaries_report(config: ProjectConfig) -> Callable[[], Report]:
    return functools.partial(check_binaries, config.binaries)


def _files_report(config: ProjectConfig) -> Callable[[], Report]:
    return functools.partial(check_files, config.files, config.optional_files)


class Workflow(NamedTuple):
    name: str
    description: str
    phases: Callable[[ProjectConfig], Sequence[Phase]]
    preflight: Callable[[ProjectConfig], Sequence[Callable[[], Report]]]
    needs_provisioning: bool = False
    needs_configuration: bool = False


def _provisioning_phases(config: ProjectConfig) -> List[Phase]:
    phases = [Phase(
        'credentials',
        functools.partial(_credentials, ('tf_var', 'aws', 'ansible_var')),
        config.connectivity_retry,
        )]
    if config.bind_mounts:
        phases.append(Phase('permissions', _repair_permissions, config.connectivity_retry))
    phases.extend([
        Phase('init', _init),
        Phase('validate', _validate),
        Phase('apply', _apply),
        ])
    return phases


def _deploy_phases(config: ProjectConfig) -> List[Phase]:
    if not config.provisioning:
        return [
            Phase('credentials', functools.partial(_credentials, ('ansible_var',)), config.connectivity_retry),
            Phase('connectivity', _test_connectivity, config.connectivity_retry),
            Phase('configure', _configure),
            ]
    phases = _provisioning_phases(config)
    if not config.configuration:
        return phases
    phases.extend([
        Phase('inventory', _write_inventory),
        Phase('reachability', _wait_for_ssh),
        ])
    if config.settle_delay_sec > 0:
        phases.append(Phase('settle', _settle))
    phases.extend([
        Phase('connectivity', _test_connectivity, config.connectivity_retry),
        Phase('configure', _configure),
        Phase('verify', _verify, config.connectivity_retry),
        ])
    return phases


def _plan_phases(config: ProjectConfig) -> List[Phase]:
    return [
        Phase('credentials', functools.partial(_credentials, ('tf_var', 'aws')), config.connectivity_retry),
        Phase('init', _init),
        Phase('validate', _validate),
        Phase('plan', _plan),
        ]


def _destroy_phases(config: ProjectConfig) -> List[Phase]:
    phases = [
        Phase('credentials', functools.partial(_credentials, ('tf_var', 'aws')), config.connectivity_retry),
        Phase('destroy', _destroy),
        ]
    if config.configuration:
        phases.append(Phase('cleanup', _remove_inventory))
    return phases


def _ansible_only_phases(config: ProjectConfig) -> List[Phase]:
    return [
        Phase('authentication', _store_token, config.connectivity_retry),
        Phase('credentials', functools.partial(_credentials, ('ansible_var',)), config.connectivity_retry),
        Phase('connectivity', _test_connectivity, config.connectivity_retry),
        Phase('configure', _configure),
        ]


def _status_phases(config: ProjectConfig) -> List[Phase]:
    phases = []
    if config.provisioning:
        phases.append(Phase('state', _state, best_effort=True))
    if config.configuration:
        phases.extend([
            Phase('inventory', _inventory_status, best_effort=True),
            Phase('reachability', _test_connectivity, best_effort=True),
            ])
    return phases


def _check_phases(config: ProjectConfig) -> List[Phase]:
    if not any(spec.store_path or spec.lease_role for spec in config.secrets.values()):
        return []
    return [Phase('secrets store', _secrets_store_status, best_effort=True)]


workflows: Mapping[str, Workflow] = {w.name: w for w in [
    Workflow(
        'deploy',
        "Full deployment: provision, wait, configure, verify",
        _deploy_phases,
        lambda c: [_binaries_report(c), _files_report(c)],
        ),
    Workflow(
        'plan',
        "Show what provisioning would change",
        _plan_phases,
        lambda c: [_binaries_report(c), _files_report(c)],
        needs_provisioning=True,
        ),
    Workflow(
        'destroy',
        "Destroy the provisioned infrastructure",
        _destroy_phases,
        lambda c: [_binaries_report(c)],
        needs_provisioning=True,
        ),
    Workflow(
        'status',
        "Show the deployment state and host reachability",
        _status_phases,
        lambda c: [],
        ),
    Workflow(
        'ansible-only',
        "Configure already provisioned hosts",
        _ansible_only_phases,
        lambda c: [_binaries_report(c)],
        needs_configuration=True,
        ),
    Workflow(
        'terraform-only',
        "Provision without configuring",
        _provisioning_phases,
        lambda c: [_binaries_report(c), _files_report(c)],
        needs_provisioning=True,
        ),
    Workflow(
        'check',
        "Check prerequisites only",
        _check_phases,
        lambda c: [_binaries_report(c), _files_report(c)],
        ),
    ]}


def available_workflows(config: ProjectConfig) -> Sequence[Workflow]:
    return [
        w for w in workflows.values()
        if (config.provisioning or not w.needs_provisioning)
        and (config.configuration or not w.needs_configuration)
        ]


def run_workflow(workflow: Workflow, context: Context) -> RunReport:
    _logger.info("%s: %s", context.config.name, workflow.description)
    runner = PhaseRunner(workflow.phases(context.config), workflow.preflight(context.config))
    report = runner.run(context)
    report.log_path = context.log_path
    return report


def summary(workflow: Workflow, context: Context, report: RunReport) -> Sequence[str]:
    """Lines to show the operator after a successful run."""
    minutes, seconds = divmod(int(report.duration_sec), 60)
    lines = [f"{workflow.name} of {context.config.name} completed in {minutes}m {seconds}s"]
    if workflow.name == 'terraform-only' and context.config.configuration:
        lines.append("Infrastructure deployed. To configure it: python -m deployment <project> ansible-only")
    if workflow.name != 'deploy' or not context.config.next_steps:
        return lines
    values = {'name': context.config.name, **context.outputs}
    if context.outputs and context.config.provisioning:
        values['host'] = target_host(context.config, context.outputs).address
    lines.append("Next steps:")
    for i, step in enumerate(context.config.next_steps, 1):
        try:
            lines.append(f"  {i}. {step.format_map(values)}")
        except (KeyError, ValueError):
            lines.append(f"  {i}. {step}")
    return lines
