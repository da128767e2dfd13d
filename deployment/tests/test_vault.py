# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import socket
import time
import unittest

from deployment._errors import AuthenticationFailed
from deployment._errors import DynamicIssueFailed
from deployment._errors import PermissionDenied
from deployment._errors import SecretNotFound
from deployment._errors import SecretsStoreSealed
from deployment._errors import SecretsStoreUnreachable
from deployment._vault import DynamicLease
from deployment._vault import VaultSession
from deployment.tests._fake_vault import FakeVault


class TestVaultSession(unittest.TestCase):

    def setUp(self):
        self.vault = FakeVault()
        self.vault.__enter__()
        self.vault.users['deployer'] = 'deployer-password'
        self.vault.kv['secrets/proxmox/pve'] = {'root_password': 'pve-password'}
        self.vault.kv['kv1/legacy'] = {'value': 'old'}
        self.vault.aws_roles['tofu_state_backup'] = {'access_key': 'AKIA1', 'secret_key': 'secret1'}
        self.vault.transit_keys.append('tofu-state')
        self.usernames_asked = 0

    def tearDown(self):
        self.vault.__exit__(None, None, None)

    def _get_username(self):
        self.usernames_asked += 1
        return 'deployer'

    def _session(self, token=None, password='deployer-password'):
        session = VaultSession(self.vault.url(), timeout_sec=5)
        session.authenticate(self._get_username, lambda: password, existing_token=token)
        return session

    def test_sealed(self):
        self.vault.sealed = True
        with self.assertRaises(SecretsStoreSealed):
            VaultSession(self.vault.url()).check_status()

    def test_unsealed(self):
        VaultSession(self.vault.url()).check_status()

    def test_unreachable(self):
        with socket.socket() as s:
            s.bind(('127.0.0.1', 0))
            [host, port] = s.getsockname()
            session = VaultSession(f'http://{host}:{port}', timeout_sec=2)
            with self.assertRaises(SecretsStoreUnreachable) as ctx:
                session.check_status()
        self.assertTrue(ctx.exception.retryable)

    def test_existing_token_reused(self):
        session = self._session(token=self.vault.issue_token())
        self.assertTrue(session.is_authenticated())
        self.assertEqual(self.usernames_asked, 0)
        self.assertFalse(any(p.startswith('auth/userpass') for p in self.vault.paths_requested()))

    def test_invalid_token_then_login(self):
        session = self._session(token='s.revoked')
        self.assertTrue(session.is_authenticated())
        self.assertEqual(self.usernames_asked, 1)
        self.assertIn('auth/userpass/login/deployer', self.vault.paths_requested())
        self.assertIn('deployer', repr(session))

    def test_wrong_password(self):
        with self.assertRaises(AuthenticationFailed):
            self._session(password='wrong')

    def test_read_kv_v2(self):
        session = self._session()
        self.assertEqual(session.read_kv('secrets/proxmox/pve', 'root_password'), 'pve-password')
        self.assertIn('secrets/data/proxmox/pve', self.vault.paths_requested())

    def test_read_kv_v1(self):
        session = self._session()
        self.assertEqual(session.read_kv('kv1/legacy', 'value'), 'old')

    def test_missing_field(self):
        session = self._session()
        with self.assertRaises(SecretNotFound) as ctx:
            session.read_kv('secrets/proxmox/pve', 'api_token')
        self.assertEqual(ctx.exception.field, 'api_token')

    def test_missing_path(self):
        session = self._session()
        with self.assertRaises(SecretNotFound) as ctx:
            session.read_kv('secrets/proxmox/nothing', 'value')
        self.assertIsNone(ctx.exception.field)

    def test_denied_path_invalidates_token(self):
        self.vault.denied_paths.append('secrets/data/proxmox/pve')
        session = self._session()
        with self.assertRaises(PermissionDenied):
            session.read_kv('secrets/proxmox/pve', 'root_password')
        self.assertFalse(session.is_authenticated())

    def test_expired_token_logs_in_again(self):
        session = self._session()
        self.vault.revoke_all_tokens()
        with self.assertRaises(PermissionDenied):
            session.read_kv('secrets/proxmox/pve', 'root_password')
        self.assertEqual(session.read_kv('secrets/proxmox/pve', 'root_password'), 'pve-password')
        self.assertEqual(self.usernames_asked, 2)

    def test_issue_dynamic(self):
        session = self._session()
        lease = session.issue_dynamic('tofu_state_backup', 'aws/proxmox')
        self.assertEqual(lease.field('access_key'), 'AKIA1')
        self.assertEqual(lease.lease_duration_sec, 3600)
        self.assertIsNone(lease.field('security_token'))

    def test_issue_unknown_role(self):
        session = self._session()
        with self.assertRaises(DynamicIssueFailed):
            session.issue_dynamic('nonexistent', 'aws/proxmox')

    def test_transit_key(self):
        session = self._session()
        self.assertTrue(session.transit_key_exists('tofu-state', 'transit'))
        self.assertFalse(session.transit_key_exists('other', 'transit'))

    def test_not_authenticated_without_login(self):
        session = VaultSession(self.vault.url())
        with self.assertRaises(AuthenticationFailed):
            session.read_kv('secrets/proxmox/pve', 'root_password')


class TestDynamicLease(unittest.TestCase):

    def test_ready_at(self):
        lease = DynamicLease('id', 'role', 3600, {}, issued_at=100.)
        self.assertEqual(lease.ready_at(10), 110.)

    def test_already_ready(self):
        lease = DynamicLease('id', 'role', 3600, {}, issued_at=time.monotonic() - 60)
        started_at = time.monotonic()
        lease.wait_until_ready(10)
        self.assertLess(time.monotonic() - started_at, 1)

    def test_waits_for_propagation(self):
        lease = DynamicLease('id', 'role', 3600, {})
        lease.wait_until_ready(0.5)
        self.assertGreaterEqual(time.monotonic(), lease.ready_at(0.5))


if __name__ == '__main__':
    unittest.main()
