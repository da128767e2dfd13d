# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import doctest
import unittest

from deployment import _config
from deployment import _credentials
from deployment import _logging
from deployment import _permissions
from deployment import _tofu
from deployment import _workflows
from deployment import local_secrets

_modules = [
    _config,
    _credentials,
    _logging,
    _permissions,
    _tofu,
    _workflows,
    local_secrets,
    ]


def load_tests(loader, tests, ignore):
    for module in _modules:
        tests.addTests(doctest.DocTestSuite(module))
    return tests


if __name__ == '__main__':
    unittest.main()
