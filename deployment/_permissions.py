# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Ownership of host directories bind-mounted into unprivileged containers.

An unprivileged container sees host ids shifted by the namespace offset:
uid 100 inside is 100100 on the host with the standard 100000 mapping.
A service refuses to start when it cannot write its data directory,
so the ownership is fixed on the host before the service first starts.
"""
import logging
import os
import posixpath
import shlex
import stat
import subprocess
from abc import ABCMeta
from abc import abstractmethod
from enum import Enum
from pathlib import Path
from typing import Optional
from typing import Tuple

from deployment._errors import PermissionRepairError
from deployment._ssh import ssh

_logger = logging.getLogger(__name__)


class RepairOutcome(Enum):
    APPLIED = 'applied'
    NO_CHANGE = 'no change'


class _Filesystem(metaclass=ABCMeta):

    @abstractmethod
    def owner(self, path: str) -> Optional[Tuple[int, int]]:
        """Return (uid, gid) of a directory or None if there is no directory."""
        pass

    @abstractmethod
    def is_empty(self, path: str) -> bool:
        pass

    @abstractmethod
    def make_dir(self, path: str):
        pass

    @abstractmethod
    def chown(self, path: str, uid: int, gid: int, recursive: bool):
        pass

    @abstractmethod
    def chmod(self, path: str, mode: int):
        pass


class LocalFilesystem(_Filesystem):

    def owner(self, path):
        try:
            s = os.stat(path)
        except FileNotFoundError:
            return None
        if not stat.S_ISDIR(s.st_mode):
            raise NotADirectoryError(f"{path} exists and is not a directory")
        return s.st_uid, s.st_gid

    def is_empty(self, path):
        with os.scandir(path) as entries:
            return next(entries, None) is None

    def make_dir(self, path):
        Path(path).mkdir(parents=True)

    def chown(self, path, uid, gid, recursive):
        os.chown(path, uid, gid)
        if not recursive:
            return
        for root, dirs, files in os.walk(path):
            for name in [*dirs, *files]:
                os.chown(os.path.join(root, name), uid, gid, follow_symlinks=False)

    def chmod(self, path, mode):
        os.chmod(path, mode)


class RemoteFilesystem(_Filesystem):
    """Directories on the hypervisor host, reached with BatchMode SSH."""

    def __init__(self, host: str, timeout_sec: float = 600):
        self._host = host
        self._timeout_sec = timeout_sec

    def __repr__(self):
        return f'<{self.__class__.__name__} {self._host}>'

    def _run(self, command: str) -> str:
        try:
            r = ssh(self._host, command, timeout_sec=self._timeout_sec)
        except subprocess.TimeoutExpired:
            raise OSError(f"{self._host}: {command!r}: no response in {self._timeout_sec:g} seconds")
        if r.returncode != 0:
            raise OSError(f"{self._host}: {command!r}: {r.stderr.decode(errors='backslashreplace').strip()}")
        return r.stdout.decode()

    def owner(self, path):
        quoted = shlex.quote(path)
        output = self._run(f'if [ -e {quoted} ]; then stat -c "%u %g %F" {quoted}; fi')
        if not output.strip():
            return None
        uid, gid, file_type = output.split(maxsplit=2)
        if file_type.strip() != 'directory':
            raise NotADirectoryError(f"{self._host}:{path} exists and is not a directory")
        return int(uid), int(gid)

    def is_empty(self, path):
        return not self._run(f'ls -A {shlex.quote(path)}').strip()

    def make_dir(self, path):
        self._run(f'mkdir -p {shlex.quote(path)}')

    def chown(self, path, uid, gid, recursive):
        flag = '-R ' if recursive else ''
        self._run(f'chown {flag}{uid}:{gid} {shlex.quote(path)}')

    def chmod(self, path, mode):
        self._run(f'chmod {mode:o} {shlex.quote(path)}')


class PermissionRepairTask:
    """Make a bind-mounted directory owned by the container's service user.

    Applying the task again with the same arguments changes nothing.
    """

    def __init__(self, fs: _Filesystem, namespace_offset: int = 100000, allowed_root: str = '/rpool/'):
        self._fs = fs
        self._namespace_offset = namespace_offset
        self._allowed_root = allowed_root.rstrip('/') + '/'

    def host_ids(self, uid_inside: int, gid_inside: int) -> Tuple[int, int]:
        """Map container ids to host ids.

        >>> PermissionRepairTask(LocalFilesystem()).host_ids(100, 101)
        (100100, 100101)
        """
        return self._namespace_offset + uid_inside, self._namespace_offset + gid_inside

    def repair(self, host_path: str, uid_inside: int, gid_inside: int) -> RepairOutcome:
        path = posixpath.normpath(host_path)
        if not path.startswith(self._allowed_root):
            raise PermissionRepairError(
                f"Refusing to change ownership of {host_path}: it is not under {self._allowed_root}",
                hint="Set path of the bind mount under the allowed root",
                )
        uid, gid = self.host_ids(uid_inside, gid_inside)
        _logger.info("%s: target host ownership %d:%d", path, uid, gid)
        try:
            return self._repair(path, uid, gid)
        except OSError as e:
            raise PermissionRepairError(
                f"Cannot fix ownership of {path}: {e}",
                hint="Run as root on the hypervisor host or set ssh_host of the bind mount",
                )

    def _repair(self, path: str, uid: int, gid: int) -> RepairOutcome:
        current = self._fs.owner(path)
        if current is None:
            _logger.info("%s: creating directory", path)
            self._fs.make_dir(path)
            self._fs.chown(path, uid, gid, recursive=False)
            self._fs.chmod(path, 0o755)
            return RepairOutcome.APPLIED
        if current == (uid, gid):
            _logger.info("%s: ownership %d:%d already matches", path, *current)
            return RepairOutcome.NO_CHANGE
        if self._fs.is_empty(path):
            _logger.info("%s: empty directory owned by %d:%d, fixing", path, *current)
            self._fs.chown(path, uid, gid, recursive=False)
            self._fs.chmod(path, 0o755)
        else:
            _logger.warning("%s: directory contains data owned by %d:%d, fixing recursively", path, *current)
            self._fs.chown(path, uid, gid, recursive=True)
        return RepairOutcome.APPLIED
