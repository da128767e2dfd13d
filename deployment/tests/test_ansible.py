# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from deployment._ansible import AnsibleEngine
from deployment._ansible import InventoryHost
from deployment._errors import ConfigurationEngineError
from deployment._errors import RetryableConnectivityFailure

_fake_ansible = '''#!/bin/sh
printf '%s\\n' "$*" >> ansible.log
exit ${FAKE_ANSIBLE_EXIT:-0}
'''

_fake_ansible_playbook = '''#!/bin/sh
printf '%s\\n' "$*" >> playbook.log
for arg in "$@"; do
    case "$arg" in
        @*) cp "${arg#@}" extra_vars.yml ;;
    esac
done
exit ${FAKE_ANSIBLE_EXIT:-0}
'''


class TestAnsibleEngine(unittest.TestCase):

    def setUp(self):
        self._temp_dir = tempfile.TemporaryDirectory()
        self.dir = Path(self._temp_dir.name)
        bin_dir = self.dir / 'bin'
        bin_dir.mkdir()
        for name, script in [('ansible', _fake_ansible), ('ansible-playbook', _fake_ansible_playbook)]:
            path = bin_dir / name
            path.write_text(script)
            path.chmod(0o755)
        self.work_dir = self.dir / 'ansible'
        self.work_dir.mkdir()
        self.variables = {'netbox_superuser_password': 'netbox-password'}
        self.engine = AnsibleEngine(self.work_dir, lambda: self.variables)
        path_patcher = mock.patch.dict(os.environ, {'PATH': f'{bin_dir}{os.pathsep}{os.environ["PATH"]}'})
        path_patcher.start()
        self.addCleanup(path_patcher.stop)

    def tearDown(self):
        self._temp_dir.cleanup()

    def test_inventory(self):
        host = InventoryHost('netbox', '10.0.0.5', 'ansible', 22, Path('/home/op/.ssh/ansible'))
        self.engine.write_inventory('netbox', [host])
        self.assertTrue(self.engine.has_inventory())
        inventory = yaml.safe_load(self.engine.inventory_path().read_text())
        host_vars = inventory['all']['children']['netbox']['hosts']['netbox']
        self.assertEqual(host_vars['ansible_host'], '10.0.0.5')
        self.assertEqual(host_vars['ansible_port'], 22)
        self.assertEqual(host_vars['ansible_ssh_private_key_file'], '/home/op/.ssh/ansible')
        self.assertIn('StrictHostKeyChecking=no', host_vars['ansible_ssh_common_args'])
        self.engine.remove_inventory()
        self.assertFalse(self.engine.has_inventory())

    def test_playbook_variables_in_transient_file(self):
        self.engine.run('site.yml')
        [args] = (self.work_dir / 'playbook.log').read_text().splitlines()
        self.assertNotIn('netbox-password', args)
        self.assertTrue(args.startswith('-i inventory.yml site.yml -e @'))
        self.assertFalse(Path(args.rpartition('@')[2]).exists())
        extra_vars = yaml.safe_load((self.work_dir / 'extra_vars.yml').read_text())
        self.assertEqual(extra_vars, self.variables)

    def test_check_mode(self):
        self.variables = {}
        self.engine.run('site.yml', check_mode=True)
        [args] = (self.work_dir / 'playbook.log').read_text().splitlines()
        self.assertEqual(args, '-i inventory.yml site.yml --check --diff')

    def test_playbook_failure(self):
        with mock.patch.dict(os.environ, {'FAKE_ANSIBLE_EXIT': '2'}):
            with self.assertRaises(ConfigurationEngineError) as ctx:
                self.engine.run('site.yml')
        self.assertEqual(ctx.exception.exit_code, 2)

    def test_connectivity(self):
        self.engine.test_connectivity()
        [args] = (self.work_dir / 'ansible.log').read_text().splitlines()
        self.assertEqual(args, 'all -m ping -i inventory.yml')

    def test_unreachable_is_retryable(self):
        with mock.patch.dict(os.environ, {'FAKE_ANSIBLE_EXIT': '4'}):
            with self.assertRaises(RetryableConnectivityFailure):
                self.engine.test_connectivity()

    def test_other_failure_is_fatal(self):
        with mock.patch.dict(os.environ, {'FAKE_ANSIBLE_EXIT': '1'}):
            with self.assertRaises(ConfigurationEngineError) as ctx:
                self.engine.test_connectivity()
        self.assertFalse(ctx.exception.retryable)


if __name__ == '__main__':
    unittest.main()
