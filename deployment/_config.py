# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import shlex
from configparser import ConfigParser
from configparser import Error as ConfigParserError
from configparser import SectionProxy
from pathlib import Path
from typing import Collection
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Sequence

from deployment._credentials import CredentialSource
from deployment._credentials import Handoff
from deployment._credentials import SecretSpec
from deployment._errors import ConfigurationInvalid
from deployment._phases import RetryPolicy
from deployment._preflight import BinaryRequirement
from deployment._preflight import FileRequirement

_logger = logging.getLogger(__name__)

operator_config_path = Path('~/.config/proxmox_deployment.ini').expanduser()


class WaitSettings(NamedTuple):
    port: int
    timeout_sec: float
    interval_sec: float


class BindMount(NamedTuple):
    name: str
    path: str
    uid: int
    gid: int
    namespace_offset: int
    allowed_root: str
    ssh_host: Optional[str]


class VaultSettings(NamedTuple):
    timeout_sec: float
    dynamic_engine: str
    dynamic_role: str
    dynamic_role_env: str
    propagation_delay_sec: float
    transit_path: str
    transit_key: Optional[str]


class ProjectConfig(NamedTuple):
    name: str
    project_dir: Path
    provisioning: bool
    configuration: bool
    terraform_dir: Path
    ansible_dir: Path
    logs_dir: Path
    playbook: str
    inventory_group: str
    inventory_host: str
    host_output: str
    ssh_user_output: str
    ssh_port_output: str
    ssh_user: str
    ssh_port: int
    ssh_private_key: Path
    verify_port: Optional[int]
    verify_timeout_sec: float
    settle_delay_sec: float
    next_steps: Sequence[str]
    binaries: Sequence[BinaryRequirement]
    files: Sequence[FileRequirement]
    optional_files: Sequence[FileRequirement]
    wait: WaitSettings
    connectivity_retry: RetryPolicy
    vault: VaultSettings
    bind_mounts: Sequence[BindMount]
    fix_insecure_permissions: bool
    private_key_path: Path
    secrets: Mapping[str, SecretSpec]


def load_project(path: Path, overrides: Optional[Path] = operator_config_path) -> ProjectConfig:
    """Read the project file, then the operator's overrides on top of it.

    Relative paths are relative to the project root: the "root" option
    of the [project] section, itself relative to the project file.
    """
    path = path.expanduser().resolve()
    if not path.is_file():
        raise ConfigurationInvalid(f"Project file {path} does not exist")
    parser = ConfigParser(interpolation=None)
    try:
        parser.read(path, encoding='utf-8')
        if overrides is not None and overrides.is_file():
            _logger.info("Config %s: read operator overrides", overrides)
            parser.read(overrides, encoding='utf-8')
    except ConfigParserError as e:
        raise ConfigurationInvalid(f"Cannot parse {path}: {e}")
    if not parser.has_section('project'):
        raise ConfigurationInvalid(f"{path}: section [project] is missing")
    try:
        return _project_config(path.parent, parser)
    except ValueError as e:
        raise ConfigurationInvalid(f"{path}: {e}")


def _project_config(config_dir: Path, parser: ConfigParser) -> ProjectConfig:
    project = parser['project']
    project_dir = (config_dir / project.get('root', '.')).resolve()
    name = project.get('name', project_dir.name)
    provisioning = project.getboolean('provisioning', True)
    configuration = project.getboolean('configuration', True)
    if not provisioning and not configuration:
        raise ValueError("provisioning and configuration cannot both be disabled")
    terraform_dir = _path(project_dir, project.get('terraform_dir', 'terraform'))
    ansible_dir = _path(project_dir, project.get('ansible_dir', 'ansible'))
    secrets_section = _section(parser, 'secrets')
    project_vault = _vault_settings(_section(parser, 'vault'))
    config = ProjectConfig(
        name=name,
        project_dir=project_dir,
        provisioning=provisioning,
        configuration=configuration,
        terraform_dir=terraform_dir,
        ansible_dir=ansible_dir,
        logs_dir=_path(project_dir, project.get('logs_dir', 'logs')),
        playbook=project.get('playbook', 'site.yml'),
        inventory_group=project.get('inventory_group', name),
        inventory_host=project.get('inventory_host', name),
        host_output=project.get('host_output', 'container_ip'),
        ssh_user_output=project.get('ssh_user_output', 'ssh_user'),
        ssh_port_output=project.get('ssh_port_output', 'ssh_port'),
        ssh_user=project.get('ssh_user', 'ansible'),
        ssh_port=project.getint('ssh_port', 22),
        ssh_private_key=_path(project_dir, project.get('ssh_private_key', '~/.ssh/id_ed25519')),
        verify_port=project.getint('verify_port', None),
        verify_timeout_sec=project.getfloat('verify_timeout_sec', 60),
        settle_delay_sec=project.getfloat('settle_delay_sec', 0),
        next_steps=_lines(project.get('next_steps', '')),
        binaries=_binaries(_section(parser, 'preflight').get('binaries', '')),
        files=_files(project_dir, _section(parser, 'preflight').get('files', '')),
        optional_files=_files(project_dir, _section(parser, 'preflight').get('optional_files', '')),
        wait=_wait_settings(_section(parser, 'wait')),
        connectivity_retry=_retry_policy(_section(parser, 'retry')),
        vault=project_vault,
        bind_mounts=[
            _bind_mount(section_name.partition(':')[2], parser[section_name])
            for section_name in parser.sections()
            if section_name.startswith('bind_mount:')
            ],
        fix_insecure_permissions=secrets_section.getboolean('fix_insecure_permissions', True),
        private_key_path=_path(project_dir, secrets_section.get('private_key_path', '~/.ssh/id_rsa')),
        secrets=_secret_specs(project_dir, parser, project_vault.dynamic_role),
        )
    _logger.debug("Project %s: %d secrets declared", name, len(config.secrets))
    return config


def _section(parser: ConfigParser, name: str) -> SectionProxy:
    if not parser.has_section(name):
        parser.add_section(name)
    return parser[name]


def _path(project_dir: Path, value: str) -> Path:
    return project_dir / Path(value).expanduser()


def _lines(value: str) -> Sequence[str]:
    return [line.strip() for line in value.splitlines() if line.strip()]


def _binaries(value: str) -> Sequence[BinaryRequirement]:
    """Parse lines like "tofu|terraform https://opentofu.org/docs/intro/install/".

    >>> _binaries('ansible pip install ansible\\njq')
    [BinaryRequirement(alternatives=('ansible',), hint='pip install ansible'), BinaryRequirement(alternatives=('jq',), hint=None)]
    """
    result = []
    for line in _lines(value):
        names, _, hint = line.partition(' ')
        alternatives = tuple(n.strip() for n in names.split('|') if n.strip())
        result.append(BinaryRequirement(alternatives, hint.strip() or None))
    return result


def _files(project_dir: Path, value: str) -> Sequence[FileRequirement]:
    result = []
    for line in _lines(value):
        path, _, hint = line.partition(' ')
        result.append(FileRequirement(_path(project_dir, path), hint.strip() or None))
    return result


def _wait_settings(section: SectionProxy) -> WaitSettings:
    return WaitSettings(
        port=section.getint('port', 22),
        timeout_sec=section.getfloat('timeout_sec', 300),
        interval_sec=section.getfloat('interval_sec', 1),
        )


def _retry_policy(section: SectionProxy) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=section.getint('connectivity_attempts', 3),
        delay_sec=section.getfloat('connectivity_delay_sec', 10),
        )


def _vault_settings(section: SectionProxy) -> VaultSettings:
    return VaultSettings(
        timeout_sec=section.getfloat('timeout_sec', 10),
        dynamic_engine=section.get('dynamic_engine', 'aws/proxmox'),
        dynamic_role=section.get('dynamic_role', 'tofu_state_backup'),
        dynamic_role_env=section.get('dynamic_role_env', 'AWS_ROLE'),
        propagation_delay_sec=section.getfloat('propagation_delay_sec', 10),
        transit_path=section.get('transit_path', 'transit'),
        transit_key=section.get('transit_key', None),
        )


def _bind_mount(name: str, section: SectionProxy) -> BindMount:
    if 'path' not in section or 'uid' not in section:
        raise ValueError(f"[bind_mount:{name}]: path and uid are required")
    uid = section.getint('uid')
    return BindMount(
        name=name,
        path=section['path'],
        uid=uid,
        gid=section.getint('gid', uid),
        namespace_offset=section.getint('namespace_offset', 100000),
        allowed_root=section.get('allowed_root', '/rpool/'),
        ssh_host=section.get('ssh_host', None),
        )


def _secret_specs(project_dir: Path, parser: ConfigParser, lease_role: str) -> Mapping[str, SecretSpec]:
    specs = {spec.key: spec for spec in _bootstrap_specs(project_dir)}
    for section_name in parser.sections():
        if not section_name.startswith('secret:'):
            continue
        key = section_name.partition(':')[2].strip()
        specs[key] = _secret_spec(project_dir, key, parser[section_name], lease_role)
    return specs


def _bootstrap_specs(project_dir: Path) -> Collection[SecretSpec]:
    """Credentials needed to talk to the secrets store itself."""
    deploy_conf = project_dir / 'deploy.conf'
    return [
        SecretSpec(
            'vault_addr',
            [CredentialSource.ENVIRONMENT, CredentialSource.LOCAL_FILE, CredentialSource.INTERACTIVE_PROMPT],
            env_var='VAULT_ADDR',
            file_path=deploy_conf,
            file_field='vault_addr',
            prompt="Vault address (e.g. https://vault.example.com:8200)",
            secret=False,
            persisted=True,
            ),
        SecretSpec(
            'vault_username',
            [CredentialSource.ENVIRONMENT, CredentialSource.LOCAL_FILE, CredentialSource.INTERACTIVE_PROMPT],
            env_var='VAULT_USERNAME',
            file_path=deploy_conf,
            file_field='vault_username',
            prompt="Vault username",
            secret=False,
            persisted=True,
            ),
        SecretSpec(
            'vault_password',
            [CredentialSource.ENVIRONMENT, CredentialSource.INTERACTIVE_PROMPT],
            env_var='VAULT_PASSWORD',
            prompt="Vault password",
            handoffs=[Handoff('tf_var', 'vault_password')],
            ),
        SecretSpec(
            'vault_token',
            [CredentialSource.ENVIRONMENT, CredentialSource.LOCAL_FILE],
            env_var='VAULT_TOKEN',
            file_path=Path('~/.vault-token'),
            required=False,
            ),
        ]


def _secret_spec(project_dir: Path, key: str, section: SectionProxy, lease_role: str) -> SecretSpec:
    sources = [CredentialSource.from_name(n) for n in section.get('sources', '').split(',') if n.strip()]
    if not sources:
        raise ConfigurationInvalid(f"[secret:{key}]: no sources declared")
    if sources != sorted(sources) or len(set(sources)) != len(sources):
        raise ConfigurationInvalid(
            f"[secret:{key}]: sources must be listed once each in priority order: "
            f"environment, secrets_store, local_file, prompt, dynamic_lease")
    file_path = section.get('file', None)
    spec = SecretSpec(
        key=key,
        sources=sources,
        env_var=section.get('env', None),
        store_path=section.get('vault_path', None),
        store_field=section.get('vault_field', None),
        file_path=_path(project_dir, file_path) if file_path else None,
        file_field=section.get('file_field', None),
        prompt=section.get('prompt', None),
        lease_role=section.get('lease_role', lease_role),
        lease_field=section.get('lease_field', None),
        default=section.get('default', None),
        secret=section.getboolean('secret', True),
        persisted=section.getboolean('persisted', False),
        required=section.getboolean('required', True),
        handoffs=[_handoff(key, h) for h in shlex.split(section.get('handoff', ''))],
        )
    if spec.secret and spec.default is not None:
        raise ConfigurationInvalid(f"[secret:{key}]: secret values cannot have a default")
    return spec


def _handoff(key: str, value: str) -> Handoff:
    """Parse "target:name".

    >>> _handoff('loki_password', 'ansible_var:promtail_basic_auth_password')
    Handoff(target='ansible_var', name='promtail_basic_auth_password')
    """
    target, _, name = value.partition(':')
    if target not in ('tf_var', 'ansible_var', 'aws') or not name:
        raise ConfigurationInvalid(
            f"[secret:{key}]: handoff {value!r} must be tf_var:<name>, ansible_var:<name> or aws:<field>")
    return Handoff(target, name)
