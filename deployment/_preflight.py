# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import shutil
from pathlib import Path
from typing import Collection
from typing import NamedTuple
from typing import Optional
from typing import Sequence

from deployment._errors import PreflightFailed

_logger = logging.getLogger(__name__)


class BinaryRequirement(NamedTuple):
    alternatives: Sequence[str]
    hint: Optional[str] = None

    def name(self):
        return '|'.join(self.alternatives)


class FileRequirement(NamedTuple):
    path: Path
    hint: Optional[str] = None


class ReportItem(NamedTuple):
    name: str
    passed: bool
    detail: str
    hint: Optional[str] = None
    warning: bool = False


class Report:

    def __init__(self, title: str, items: Sequence[ReportItem]):
        self.title = title
        self.items = items

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.title}: {len(self.failures())} failed>'

    def passed(self) -> bool:
        return not self.failures()

    def failures(self) -> Sequence[ReportItem]:
        return [item for item in self.items if not item.passed]

    def log(self):
        for item in self.items:
            if not item.passed:
                _logger.error("%s: %s", item.name, item.detail)
                if item.hint:
                    _logger.error("  %s", item.hint)
            elif item.warning:
                _logger.warning("%s: %s", item.name, item.detail)
                if item.hint:
                    _logger.warning("  %s", item.hint)
            else:
                _logger.info("%s: %s", item.name, item.detail)


def check_binaries(
        requirements: Sequence[BinaryRequirement],
        search_path: Optional[str] = None,
        ) -> Report:
    """Look each requirement up in PATH, taking the first available alternative."""
    items = []
    for requirement in requirements:
        for alternative in requirement.alternatives:
            found = shutil.which(alternative, path=search_path)
            if found is not None:
                items.append(ReportItem(requirement.name(), True, f"found {found}"))
                break
        else:
            hint = f"Install: {requirement.hint}" if requirement.hint else None
            items.append(ReportItem(requirement.name(), False, "not found in PATH", hint))
    return Report('Binaries', items)


def check_files(
        required: Sequence[FileRequirement],
        optional: Sequence[FileRequirement] = (),
        ) -> Report:
    items = []
    for requirement in required:
        if requirement.path.is_file():
            items.append(ReportItem(str(requirement.path), True, "found"))
        else:
            items.append(ReportItem(str(requirement.path), False, "not found", _file_hint(requirement)))
    for requirement in optional:
        if requirement.path.is_file():
            items.append(ReportItem(str(requirement.path), True, "found"))
        else:
            items.append(ReportItem(
                str(requirement.path), True, "not found (optional)", _file_hint(requirement), warning=True))
    return Report('Files', items)


def _file_hint(requirement: FileRequirement) -> Optional[str]:
    if requirement.hint is not None:
        return requirement.hint
    template = requirement.path.with_name(requirement.path.name + '.example')
    if template.is_file():
        return f"Create it from the template: cp {template} {requirement.path}"
    return None


def require(reports: Collection[Report]):
    """Log every report and fail if any item of any report failed."""
    failed = []
    for report in reports:
        _logger.info("Preflight: %s", report.title)
        report.log()
        failed.extend(item.name for item in report.failures())
    if failed:
        raise PreflightFailed(
            f"Preflight failed: {', '.join(failed)}",
            hint="Fix the items above; no phase was started",
            )
    _logger.info("Preflight passed")
