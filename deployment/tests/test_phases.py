# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import unittest

from deployment._errors import ConfigurationInvalid
from deployment._errors import ProvisioningEngineError
from deployment._errors import RetryableConnectivityFailure
from deployment._phases import Phase
from deployment._phases import PhaseRunner
from deployment._phases import PhaseStatus
from deployment._phases import RetryPolicy
from deployment._phases import RunStatus


class _FailingAction:

    def __init__(self, error, times=None):
        self.calls = 0
        self._error = error
        self._times = times

    def __call__(self, context):
        self.calls += 1
        if self._times is None or self.calls <= self._times:
            raise self._error


class TestPhaseRunner(unittest.TestCase):

    def setUp(self):
        self.sleeps = []
        self.done = []

    def _runner(self, *phases):
        return PhaseRunner(phases, sleep=self.sleeps.append)

    def _record(self, name):
        return Phase(name, lambda _: self.done.append(name))

    def test_all_succeed(self):
        report = self._runner(self._record('a'), self._record('b')).run(None)
        self.assertEqual(report.status, RunStatus.SUCCEEDED)
        self.assertEqual(self.done, ['a', 'b'])
        self.assertEqual(report.exit_code(), 0)
        self.assertEqual(report.phase('a').attempts, 1)

    def test_retry_exhausted(self):
        action = _FailingAction(RetryableConnectivityFailure("unreachable"))
        report = self._runner(
            Phase('reachability', action, RetryPolicy(3, 10)),
            self._record('configure'),
            ).run(None)
        self.assertEqual(report.status, RunStatus.ABORTED)
        self.assertEqual(report.failed_phase, 'reachability')
        self.assertEqual(action.calls, 3)
        self.assertEqual(report.phase('reachability').attempts, 3)
        self.assertEqual(report.phase('reachability').status, PhaseStatus.FAILED)
        self.assertEqual(self.sleeps, [10, 10])
        self.assertEqual(report.phase('configure').status, PhaseStatus.SKIPPED)
        self.assertEqual(self.done, [])

    def test_success_after_retry(self):
        action = _FailingAction(RetryableConnectivityFailure("unreachable"), times=1)
        report = self._runner(Phase('connectivity', action, RetryPolicy(3, 5))).run(None)
        self.assertEqual(report.status, RunStatus.SUCCEEDED)
        self.assertEqual(report.phase('connectivity').attempts, 2)
        self.assertEqual(self.sleeps, [5])

    def test_fatal_error_not_retried(self):
        action = _FailingAction(ConfigurationInvalid("bad project file"))
        report = self._runner(Phase('credentials', action, RetryPolicy(3, 10))).run(None)
        self.assertEqual(action.calls, 1)
        self.assertEqual(self.sleeps, [])
        self.assertIsInstance(report.error, ConfigurationInvalid)

    def test_no_policy_means_single_attempt(self):
        action = _FailingAction(RetryableConnectivityFailure("unreachable"))
        report = self._runner(Phase('verify', action)).run(None)
        self.assertEqual(action.calls, 1)
        self.assertEqual(report.status, RunStatus.ABORTED)

    def test_best_effort(self):
        action = _FailingAction(ConfigurationInvalid("no state"))
        report = self._runner(Phase('state', action, best_effort=True), self._record('inventory')).run(None)
        self.assertEqual(report.status, RunStatus.SUCCEEDED)
        self.assertEqual(report.phase('state').status, PhaseStatus.FAILED)
        self.assertEqual(self.done, ['inventory'])

    def test_engine_exit_code(self):
        action = _FailingAction(ProvisioningEngineError('tofu apply', 3))
        report = self._runner(Phase('apply', action)).run(None)
        self.assertEqual(report.exit_code(), 3)

    def test_unexpected_exception(self):
        action = _FailingAction(KeyError('container_ip'))
        report = self._runner(Phase('inventory', action), self._record('configure')).run(None)
        self.assertEqual(report.status, RunStatus.ABORTED)
        self.assertIsInstance(report.error, KeyError)
        self.assertEqual(report.exit_code(), 1)
        self.assertEqual(report.phase('configure').status, PhaseStatus.SKIPPED)

    def test_interrupted(self):
        action = _FailingAction(KeyboardInterrupt())
        report = self._runner(self._record('init'), Phase('apply', action), self._record('configure')).run(None)
        self.assertTrue(report.interrupted)
        self.assertEqual(report.exit_code(), 130)
        self.assertEqual(report.failed_phase, 'apply')
        self.assertEqual(report.phase('init').status, PhaseStatus.SUCCEEDED)
        self.assertEqual(report.phase('apply').status, PhaseStatus.ABORTED)
        self.assertEqual(report.phase('configure').status, PhaseStatus.SKIPPED)


if __name__ == '__main__':
    unittest.main()
