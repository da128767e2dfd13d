# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any
from typing import Callable
from typing import NamedTuple
from typing import Optional
from typing import Sequence

from deployment._errors import DeploymentError
from deployment._preflight import Report
from deployment._preflight import require

_logger = logging.getLogger(__name__)


class RetryPolicy(NamedTuple):
    max_attempts: int
    delay_sec: float


class PhaseStatus(Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    ABORTED = 'aborted'
    SKIPPED = 'skipped'


class RunStatus(Enum):
    SUCCEEDED = 'succeeded'
    ABORTED = 'aborted'


class Phase(NamedTuple):
    name: str
    action: Callable[[Any], None]
    retry_policy: Optional[RetryPolicy] = None
    best_effort: bool = False


class PhaseReport:

    def __init__(self, name: str):
        self.name = name
        self.status = PhaseStatus.PENDING
        self.attempts = 0
        self.duration_sec = 0.
        self.error: Optional[BaseException] = None

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.name}: {self.status.value}>'


class RunReport:

    def __init__(self, phases: Sequence[PhaseReport]):
        self.phases = phases
        self.status = RunStatus.SUCCEEDED
        self.error: Optional[BaseException] = None
        self.failed_phase: Optional[str] = None
        self.interrupted = False
        self.duration_sec = 0.
        self.log_path: Optional[Path] = None

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.status.value}>'

    def phase(self, name: str) -> PhaseReport:
        [report] = [p for p in self.phases if p.name == name]
        return report

    def exit_code(self) -> int:
        if self.status == RunStatus.SUCCEEDED:
            return 0
        if self.interrupted:
            return 130
        if isinstance(self.error, DeploymentError):
            return self.error.exit_code
        return 1


class PhaseRunner:
    """Run phases strictly in order, stopping at the first required failure.

    Only retryable errors are attempted again. Phases that were already
    done are not rolled back: running the pipeline again converges.
    """

    def __init__(
            self,
            phases: Sequence[Phase],
            preflight: Sequence[Callable[[], Report]] = (),
            sleep: Callable[[float], None] = time.sleep,
            ):
        self._phases = phases
        self._preflight = preflight
        self._sleep = sleep

    def run(self, context) -> RunReport:
        reports = [PhaseReport(phase.name) for phase in self._phases]
        run_report = RunReport(reports)
        started_at = time.monotonic()
        try:
            if self._preflight:
                require([check() for check in self._preflight])
            for phase, report in zip(self._phases, reports):
                self._run_phase(phase, report, context)
                if report.status == PhaseStatus.SUCCEEDED:
                    continue
                if phase.best_effort:
                    _logger.warning("Phase %s failed, continuing: it is best-effort", phase.name)
                    continue
                run_report.status = RunStatus.ABORTED
                run_report.error = report.error
                run_report.failed_phase = phase.name
                break
        except DeploymentError as e:
            _logger.error("%s", e)
            run_report.status = RunStatus.ABORTED
            run_report.error = e
        except KeyboardInterrupt as e:
            _logger.error("Interrupted by the operator")
            for report in reports:
                if report.status == PhaseStatus.RUNNING:
                    report.status = PhaseStatus.ABORTED
                    run_report.failed_phase = report.name
            run_report.status = RunStatus.ABORTED
            run_report.error = e
            run_report.interrupted = True
        for report in reports:
            if report.status == PhaseStatus.PENDING:
                report.status = PhaseStatus.SKIPPED
                _logger.debug("Phase %s: skipped", report.name)
        run_report.duration_sec = time.monotonic() - started_at
        _logger.info("Run %s in %.1f sec", run_report.status.value, run_report.duration_sec)
        return run_report

    def _run_phase(self, phase: Phase, report: PhaseReport, context):
        max_attempts = phase.retry_policy.max_attempts if phase.retry_policy is not None else 1
        report.status = PhaseStatus.RUNNING
        _logger.info("Phase %s: started", phase.name)
        started_at = time.monotonic()
        try:
            while True:
                report.attempts += 1
                try:
                    phase.action(context)
                except DeploymentError as e:
                    if not e.retryable or report.attempts >= max_attempts:
                        report.error = e
                        report.status = PhaseStatus.FAILED
                        break
                    _logger.warning(
                        "Phase %s: attempt %d/%d failed: %s",
                        phase.name, report.attempts, max_attempts, e)
                    _logger.info("Phase %s: next attempt in %g sec", phase.name, phase.retry_policy.delay_sec)
                    self._sleep(phase.retry_policy.delay_sec)
                except Exception as e:
                    _logger.exception("Phase %s: unexpected error", phase.name)
                    report.error = e
                    report.status = PhaseStatus.FAILED
                    break
                else:
                    report.status = PhaseStatus.SUCCEEDED
                    break
        finally:
            report.duration_sec = time.monotonic() - started_at
        _logger.log(
            logging.INFO if report.status == PhaseStatus.SUCCEEDED else logging.ERROR,
            "Phase %s: %s after %d attempt(s) in %.1f sec%s",
            phase.name, report.status.value, report.attempts, report.duration_sec,
            f": {report.error}" if report.error is not None else '',
            )
