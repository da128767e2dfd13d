# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import subprocess

from deployment._command import log_command
from deployment._errors import RetryableConnectivityFailure


def ssh(host: str, command: str, timeout_sec: float = 600) -> subprocess.CompletedProcess:
    """Run a command on the hypervisor host and return it with output captured.

    The caller checks the return code: only "cannot connect" (255) is an error here.
    """
    r = subprocess.run(
        _build(host, command),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        # It may hang waiting for input when no input is actually needed.
        stdin=subprocess.DEVNULL,
        timeout=timeout_sec,
        )
    if r.returncode == 255:
        raise SSHCannotConnect(host, r.stderr.decode(errors='backslashreplace'))
    return r


def _build(host, command):
    # In BatchMode, execution fails if interactive input is required.
    full_command = ['ssh', '-oBatchMode=yes', '-oConnectTimeout=10', host, command]
    log_command(full_command)
    return full_command


class SSHCannotConnect(RetryableConnectivityFailure):

    def __init__(self, host: str, stderr: str):
        super().__init__(
            f"Cannot connect to {host} over SSH: {stderr.strip()}",
            hint=f"ssh-copy-id {host}",
            )
