# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import functools
import tempfile
import unittest
from pathlib import Path

from deployment._errors import PreflightFailed
from deployment._phases import Phase
from deployment._phases import PhaseRunner
from deployment._phases import PhaseStatus
from deployment._phases import RunStatus
from deployment._preflight import BinaryRequirement
from deployment._preflight import FileRequirement
from deployment._preflight import check_binaries
from deployment._preflight import check_files
from deployment._preflight import require


class TestPreflight(unittest.TestCase):

    def setUp(self):
        self._temp_dir = tempfile.TemporaryDirectory()
        self.dir = Path(self._temp_dir.name)
        self.bin_dir = self.dir / 'bin'
        self.bin_dir.mkdir()
        executable = self.bin_dir / 'a'
        executable.write_text('#!/bin/sh\n')
        executable.chmod(0o755)

    def tearDown(self):
        self._temp_dir.cleanup()

    def test_missing_binary(self):
        report = check_binaries(
            [BinaryRequirement(['a']), BinaryRequirement(['b'], 'apt install b')],
            search_path=str(self.bin_dir),
            )
        self.assertFalse(report.passed())
        [failure] = report.failures()
        self.assertEqual(failure.name, 'b')
        self.assertEqual(failure.hint, 'Install: apt install b')

    def test_alternatives(self):
        report = check_binaries([BinaryRequirement(['tofu', 'a'])], search_path=str(self.bin_dir))
        self.assertTrue(report.passed())
        self.assertIn(str(self.bin_dir / 'a'), report.items[0].detail)

    def test_require_fails_listing_items(self):
        report = check_binaries(
            [BinaryRequirement(['a']), BinaryRequirement(['b'])],
            search_path=str(self.bin_dir),
            )
        with self.assertRaises(PreflightFailed) as ctx:
            require([report])
        self.assertIn('b', str(ctx.exception))

    def test_no_phase_started(self):
        started = []
        preflight = functools.partial(
            check_binaries,
            [BinaryRequirement(['a']), BinaryRequirement(['b'])],
            search_path=str(self.bin_dir),
            )
        runner = PhaseRunner(
            [Phase('first', lambda _: started.append('first')), Phase('second', lambda _: started.append('second'))],
            preflight=[preflight],
            )
        report = runner.run(None)
        self.assertEqual(report.status, RunStatus.ABORTED)
        self.assertIsInstance(report.error, PreflightFailed)
        self.assertIsNone(report.failed_phase)
        self.assertEqual(started, [])
        self.assertEqual([p.status for p in report.phases], [PhaseStatus.SKIPPED, PhaseStatus.SKIPPED])
        self.assertEqual(report.exit_code(), 1)

    def test_required_file(self):
        (self.dir / 'main.tf').write_text('')
        report = check_files([FileRequirement(self.dir / 'main.tf'), FileRequirement(self.dir / 'site.yml')])
        self.assertEqual([i.name for i in report.failures()], [str(self.dir / 'site.yml')])

    def test_optional_file_warns(self):
        report = check_files([], [FileRequirement(self.dir / 'terraform.tfvars')])
        self.assertTrue(report.passed())
        self.assertTrue(report.items[0].warning)

    def test_template_hint(self):
        (self.dir / 'deploy.conf.example').write_text('vault_addr = \n')
        report = check_files([FileRequirement(self.dir / 'deploy.conf')])
        [failure] = report.failures()
        self.assertIn('cp ', failure.hint)
        self.assertIn('deploy.conf.example', failure.hint)

    def test_explicit_hint(self):
        report = check_files([FileRequirement(self.dir / 'deploy.conf', 'Run setup first')])
        self.assertEqual(report.failures()[0].hint, 'Run setup first')


if __name__ == '__main__':
    unittest.main()
