# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import tempfile
import unittest
from pathlib import Path

from deployment._logging import init_logging
from deployment._logging import redactor

_logger = logging.getLogger(__name__)


class TestLogging(unittest.TestCase):

    def setUp(self):
        self._temp_dir = tempfile.TemporaryDirectory()
        self.logs_dir = Path(self._temp_dir.name) / 'logs'
        self._root_level = logging.getLogger().level

    def tearDown(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            if getattr(handler, '_deployment_handler', False):
                root.removeHandler(handler)
                handler.close()
        root.setLevel(self._root_level)
        redactor.discard_all()
        self._temp_dir.cleanup()

    def test_file_per_run(self):
        log_file = init_logging(self.logs_dir)
        self.assertEqual(log_file.parent, self.logs_dir)
        self.assertTrue(log_file.name.startswith('deployment_'))
        _logger.debug("Debug goes to the file")
        self.assertIn("Debug goes to the file", log_file.read_text())

    def test_handlers_replaced(self):
        init_logging(self.logs_dir)
        init_logging(self.logs_dir)
        handlers = [h for h in logging.getLogger().handlers if getattr(h, '_deployment_handler', False)]
        self.assertEqual(len(handlers), 2)

    def test_secret_redacted(self):
        log_file = init_logging(self.logs_dir)
        redactor.add('pve-password')
        _logger.info("Password is %s", 'pve-password')
        try:
            raise RuntimeError("Login failed with pve-password")
        except RuntimeError:
            _logger.exception("Unexpected error")
        text = log_file.read_text()
        self.assertNotIn('pve-password', text)
        self.assertIn("Password is ***", text)
        self.assertIn("Login failed with ***", text)

    def test_short_values_not_redacted(self):
        with self.assertLogs('deployment._logging', logging.WARNING) as logs:
            redactor.add('no')
        self.assertEqual(redactor.redact("no changes"), "no changes")
        [message] = logs.output
        self.assertIn("too short", message)
        self.assertNotIn("'no'", message)


if __name__ == '__main__':
    unittest.main()
