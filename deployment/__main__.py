# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from deployment._config import ProjectConfig
from deployment._config import load_project
from deployment._context import Context
from deployment._errors import DeploymentError
from deployment._interactive import get_user_choice
from deployment._logging import colorize
from deployment._logging import init_logging
from deployment._phases import RunReport
from deployment._phases import RunStatus
from deployment._workflows import Workflow
from deployment._workflows import available_workflows
from deployment._workflows import run_workflow
from deployment._workflows import summary
from deployment._workflows import workflows

_logger = logging.getLogger(__name__)


def main(args: Sequence[str]) -> int:
    parsed_args = _parse_args(args)
    try:
        config = load_project(parsed_args.project)
    except DeploymentError as e:
        _print_error(str(e), e.hint)
        return e.exit_code
    interactive = _is_interactive(parsed_args.non_interactive)
    if parsed_args.command is not None:
        workflow = workflows[parsed_args.command]
        if workflow not in available_workflows(config):
            available = ', '.join(w.name for w in available_workflows(config))
            _print_error(f"{workflow.name} is not available for {config.name}", f"Available: {available}")
            return 2
        return _run(config, workflow, interactive, parsed_args.check_mode, parsed_args.verbose)
    if not interactive:
        _print_error("No command given and the menu needs a terminal", "Pass a command, see --help")
        return 2
    return _menu(config, parsed_args.check_mode, parsed_args.verbose)


def _is_interactive(non_interactive_flag: bool) -> bool:
    if non_interactive_flag:
        return False
    if os.environ.get('DEPLOYMENT_NON_INTERACTIVE', '').lower() in ('1', 'yes', 'true'):
        return False
    return sys.stdin.isatty()


def _menu(config: ProjectConfig, check_mode: bool, verbose: bool) -> int:
    choices = {w.name: w for w in available_workflows(config)}
    exit_code = 0
    while True:
        print()
        print(colorize(f"{config.name} deployment", 'bold'))
        for workflow in choices.values():
            print(f"  {workflow.name:<16} {workflow.description}")
        choice = get_user_choice("Operation", list(choices))
        if choice is None:
            return exit_code
        exit_code = _run(config, choices[choice], True, check_mode, verbose)


def _run(config: ProjectConfig, workflow: Workflow, interactive: bool, check_mode: bool, verbose: bool) -> int:
    log_path = init_logging(config.logs_dir, verbose)
    _logger.info("Log file: %s", log_path)
    context = Context(config, interactive=interactive, check_mode=check_mode)
    context.log_path = log_path
    try:
        report = run_workflow(workflow, context)
        if report.status == RunStatus.SUCCEEDED:
            for line in summary(workflow, context, report):
                print(colorize(line, 'green'))
        else:
            _print_failure(report)
    finally:
        context.close()
    return report.exit_code()


def _print_failure(report: RunReport):
    if report.interrupted:
        _print_error("Interrupted; re-run to converge from the state reached")
    elif report.failed_phase is not None:
        hint = getattr(report.error, 'hint', None)
        _print_error(f"Phase {report.failed_phase} failed: {report.error}", hint)
    else:
        hint = getattr(report.error, 'hint', None)
        _print_error(f"Aborted before the first phase: {report.error}", hint)
    print(f"Log file: {report.log_path}", file=sys.stderr)


def _print_error(message: str, hint=None):
    print(colorize(f"ERROR: {message}", 'red'), file=sys.stderr)
    if hint:
        print(colorize(f"Hint: {hint}", 'yellow'), file=sys.stderr)


def _parse_args(args: Sequence[str]):
    parser = argparse.ArgumentParser(
        prog='python -m deployment',
        description="Deploy a service into a Proxmox container or VM.",
        )
    parser.add_argument('project', type=Path, help="Project file, e.g. projects/lxc_npm.ini")
    parser.add_argument(
        'command',
        nargs='?',
        choices=list(workflows),
        help="Operation to run. Without it, an interactive menu is shown.",
        )
    parser.add_argument(
        '--check-mode',
        action='store_true',
        help="Plan instead of applying and run playbooks with --check.",
        )
    parser.add_argument(
        '--non-interactive',
        action='store_true',
        help="Never prompt. Also set by DEPLOYMENT_NON_INTERACTIVE=1.",
        )
    parser.add_argument('-v', '--verbose', action='store_true', help="Show debug output in the console.")
    return parser.parse_args(args)


if __name__ == '__main__':
    exit(main(sys.argv[1:]))
