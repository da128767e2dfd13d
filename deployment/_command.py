# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import os
import shlex
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Mapping
from typing import Optional
from typing import Sequence

_logger = logging.getLogger(__name__)


def log_command(command: Sequence):
    # shlex.join() only works with Iterable[str] and fails with PathLike
    command = [str(arg) if isinstance(arg, os.PathLike) else arg for arg in command]
    _logger.info("Run: %s", shlex.join(command))


def run_logged(
        command: Sequence,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        logger: logging.Logger = _logger,
        ) -> int:
    """Run a command, streaming its combined output into the log line by line."""
    log_command(command)
    process = subprocess.Popen(
        command,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        encoding='utf-8',
        errors='backslashreplace',
        )
    try:
        for line in process.stdout:
            logger.info("%s", line.rstrip('\n'))
    finally:
        returncode = process.wait()
    _logger.debug("Exit code %d: %s", returncode, command[0])
    return returncode


@contextmanager
def transient_file(content: bytes, suffix: str = ''):
    """File readable by the current user only, removed on exit.

    Secrets are handed to child processes this way, never in argv.
    """
    fd, name = tempfile.mkstemp(suffix=suffix, prefix='deployment-')
    path = Path(name)
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(content)
        yield path
    finally:
        path.unlink(missing_ok=True)
        _logger.debug("Removed %s", path)
