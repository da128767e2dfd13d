# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
from abc import ABCMeta
from abc import abstractmethod
from contextlib import ExitStack
from pathlib import Path
from typing import Callable
from typing import Mapping
from typing import NamedTuple
from typing import Sequence

import yaml

from deployment._command import run_logged
from deployment._command import transient_file
from deployment._errors import ConfigurationEngineError
from deployment._errors import RetryableConnectivityFailure

_logger = logging.getLogger(__name__)


class InventoryHost(NamedTuple):
    name: str
    address: str
    user: str
    port: int
    private_key: Path


class ConfigurationEngine(metaclass=ABCMeta):

    @abstractmethod
    def write_inventory(self, group: str, hosts: Sequence[InventoryHost]):
        pass

    @abstractmethod
    def has_inventory(self) -> bool:
        pass

    @abstractmethod
    def remove_inventory(self):
        pass

    @abstractmethod
    def test_connectivity(self):
        pass

    @abstractmethod
    def run(self, playbook: str, check_mode: bool = False):
        pass


# Exit codes of ansible: 2 - some hosts failed, 4 - some hosts unreachable.
_host_failure_codes = (2, 4)


class AnsibleEngine(ConfigurationEngine):

    _inventory_name = 'inventory.yml'

    def __init__(self, work_dir: Path, get_variables: Callable[[], Mapping[str, str]]):
        self._work_dir = work_dir
        self._get_variables = get_variables

    def __repr__(self):
        return f'<{self.__class__.__name__} in {self._work_dir}>'

    def inventory_path(self) -> Path:
        return self._work_dir / self._inventory_name

    def write_inventory(self, group, hosts):
        inventory = {'all': {'children': {group: {'hosts': {
            host.name: {
                'ansible_host': host.address,
                'ansible_user': host.user,
                'ansible_port': host.port,
                'ansible_ssh_private_key_file': str(host.private_key),
                # Hosts are recreated with new keys on every deployment.
                'ansible_ssh_common_args': '-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null',
                }
            for host in hosts
            }}}}}
        path = self.inventory_path()
        path.write_text('---\n' + yaml.safe_dump(inventory, sort_keys=False), encoding='utf-8')
        _logger.info("Inventory created: %s", path)
        for host in hosts:
            _logger.info("Host %s: %s@%s:%d", host.name, host.user, host.address, host.port)

    def has_inventory(self):
        return self.inventory_path().exists()

    def remove_inventory(self):
        path = self.inventory_path()
        if path.exists():
            path.unlink()
            _logger.info("Inventory removed: %s", path)

    def test_connectivity(self):
        _logger.info("Testing connectivity")
        command = ['ansible', 'all', '-m', 'ping', '-i', self._inventory_name]
        returncode = run_logged(command, cwd=self._work_dir, logger=_logger)
        if returncode in _host_failure_codes:
            raise RetryableConnectivityFailure(
                "Hosts are not reachable by ansible",
                hint="Check the SSH key and that the host finished booting",
                )
        if returncode != 0:
            raise ConfigurationEngineError('ansible all -m ping', returncode)
        _logger.info("All hosts are reachable")

    def run(self, playbook, check_mode=False):
        command = ['ansible-playbook', '-i', self._inventory_name, playbook]
        if check_mode:
            _logger.info("Running %s in check mode, nothing is changed", playbook)
            command.extend(['--check', '--diff'])
        with ExitStack() as stack:
            variables = self._get_variables()
            if variables:
                vars_file = stack.enter_context(
                    transient_file(yaml.safe_dump(dict(variables)).encode(), suffix='.yml'))
                command.extend(['-e', f'@{vars_file}'])
                _logger.info("Passing variables: %s", ', '.join(sorted(variables)))
            returncode = run_logged(command, cwd=self._work_dir, logger=_logger)
        if returncode != 0:
            raise ConfigurationEngineError(
                f'ansible-playbook {playbook}', returncode,
                hint=f"cd {self._work_dir} && ansible-playbook -i {self._inventory_name} {playbook} -vvv",
                )
        _logger.info("Playbook %s completed", playbook)
