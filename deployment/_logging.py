# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

_logger = logging.getLogger(__name__)


def init_logging(logs_dir: Path, verbose: bool = False) -> Path:
    """Log to a new timestamped file and to the console.

    Every run gets its own file, which is kept for postmortem.
    Previously installed handlers are replaced, so that each run
    started from the interactive menu has a separate log.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        if getattr(handler, '_deployment_handler', False):
            root.removeHandler(handler)
            handler.close()
    logs_dir.mkdir(exist_ok=True, parents=True)
    log_file = logs_dir / f'deployment_{datetime.now():%Y%m%d_%H%M%S}.log'
    _init_file_logging(log_file)
    _init_stream_logging(logging.DEBUG if verbose else logging.INFO)
    return log_file


def _init_file_logging(log_file: Path):
    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setFormatter(logging.Formatter('%(asctime)s %(name)s %(levelname)s %(message)s'))
    file_handler.setLevel(logging.DEBUG)
    file_handler.addFilter(redactor)
    file_handler._deployment_handler = True
    logging.getLogger().addHandler(file_handler)


def _init_stream_logging(level: int):
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(level)
    stream_handler.setFormatter(ColoredFormatter(colored=sys.stderr.isatty()))
    stream_handler.addFilter(redactor)
    stream_handler._deployment_handler = True
    logging.getLogger().addHandler(stream_handler)


class ColoredFormatter(logging.Formatter):
    """Console format of the deployment scripts: a colored level tag.

    >>> record = logging.LogRecord('x', logging.WARNING, __file__, 1, "Retry %d/%d", (1, 3), None)
    >>> ColoredFormatter(colored=False).format(record)
    '[WARNING] Retry 1/3'
    >>> ColoredFormatter(colored=True).format(record)
    '\\x1b[1;33m[WARNING]\\x1b[0m Retry 1/3'
    """

    _colors = {
        logging.DEBUG: '\033[0;36m',
        logging.INFO: '\033[0;34m',
        logging.WARNING: '\033[1;33m',
        logging.ERROR: '\033[0;31m',
        logging.CRITICAL: '\033[1;31m',
        }
    _reset = '\033[0m'

    def __init__(self, colored: bool):
        super().__init__('%(message)s')
        self._colored = colored

    def format(self, record):
        message = super().format(record)
        tag = f'[{record.levelname}]'
        if self._colored:
            tag = self._colors.get(record.levelno, '') + tag + self._reset
        return f'{tag} {message}'


def colorize(text: str, color: str) -> str:
    if not sys.stderr.isatty():
        return text
    codes = {'red': '\033[0;31m', 'green': '\033[0;32m', 'yellow': '\033[1;33m', 'bold': '\033[1m'}
    return codes[color] + text + ColoredFormatter._reset


class _SecretRedactor(logging.Filter):
    """Replace known secret values in every record passing through a handler.

    >>> r = _SecretRedactor()
    >>> r.add('hunter2')
    >>> record = logging.LogRecord('x', logging.INFO, __file__, 1, "login %s", ('hunter2',), None)
    >>> r.filter(record)
    True
    >>> record.getMessage()
    'login ***'
    """

    min_length = 4

    def __init__(self):
        super().__init__()
        self._secrets = set()

    def add(self, secret: Optional[str]):
        if not secret:
            return
        # Very short values would redact unrelated text.
        if len(secret) < self.min_length:
            _logger.warning(
                "A secret value of %d characters is too short to be masked in the log",
                len(secret))
            return
        self._secrets.add(secret)

    def discard_all(self):
        self._secrets.clear()

    def redact(self, text: str) -> str:
        for secret in sorted(self._secrets, key=len, reverse=True):
            text = text.replace(secret, '***')
        return text

    def filter(self, record):
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        if record.exc_info and record.exc_text is None:
            record.exc_text = self.redact(logging.Formatter().formatException(record.exc_info))
        return True


redactor = _SecretRedactor()
