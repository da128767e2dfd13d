# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import socket
import time

from deployment._errors import ReachabilityTimeout

_logger = logging.getLogger(__name__)


class _Wait:
    """Fixed-interval wait that never outlives its deadline."""

    def __init__(self, until: str, timeout_sec: float, interval_sec: float):
        self._until = until
        self._timeout_sec = timeout_sec
        self._interval_sec = interval_sec
        self._deadline = time.monotonic() + timeout_sec
        self.attempts_made = 0
        _logger.debug("Waiting until %s: %.1f sec", self._until, self._timeout_sec)

    def remaining_sec(self) -> float:
        return max(0., self._deadline - time.monotonic())

    def again(self) -> bool:
        self.attempts_made += 1
        if self.remaining_sec() <= 0:
            _logger.warning(
                "Timed out waiting until %s: %g sec, %d attempts",
                self._until, self._timeout_sec, self.attempts_made)
            return False
        return True

    def sleep(self):
        time.sleep(min(self._interval_sec, self.remaining_sec()))


def wait_for_port(host: str, port: int, timeout_sec: float, interval_sec: float = 1):
    """Poll a TCP connect until it succeeds or the window is over.

    Each connect attempt and each sleep is clipped to the remaining time.
    """
    _logger.info("Waiting for %s:%d (timeout %g sec)", host, port, timeout_sec)
    wait = _Wait(f'{host}:{port} accepts connections', timeout_sec, interval_sec)
    while True:
        remaining_sec = wait.remaining_sec()
        if remaining_sec > 0 and _can_connect(host, port, min(interval_sec, remaining_sec)):
            _logger.info("%s:%d is reachable", host, port)
            return
        if not wait.again():
            raise ReachabilityTimeout(host, port, timeout_sec)
        wait.sleep()


def _can_connect(host: str, port: int, timeout_sec: float) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout_sec):
            return True
    except OSError as e:
        _logger.debug("%s:%d: %s", host, port, e)
        return False
