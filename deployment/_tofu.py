# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import json
import logging
import os
import subprocess
from abc import ABCMeta
from abc import abstractmethod
from contextlib import ExitStack
from contextlib import contextmanager
from pathlib import Path
from typing import Callable
from typing import Mapping

from deployment._command import log_command
from deployment._command import run_logged
from deployment._command import transient_file
from deployment._errors import ProvisioningEngineError
from deployment._logging import redactor

_logger = logging.getLogger(__name__)


class ProvisioningEngine(metaclass=ABCMeta):

    @abstractmethod
    def init(self):
        pass

    @abstractmethod
    def validate(self):
        pass

    @abstractmethod
    def plan(self):
        pass

    @abstractmethod
    def apply(self):
        pass

    @abstractmethod
    def destroy(self):
        pass

    @abstractmethod
    def outputs(self) -> Mapping[str, str]:
        pass

    @abstractmethod
    def has_state(self) -> bool:
        pass


# Any of these would make the engine pick other credentials than the handed off ones.
_aws_overrides = (
    'AWS_PROFILE',
    'AWS_DEFAULT_PROFILE',
    'AWS_SESSION_TOKEN',
    'AWS_ACCESS_KEY_ID',
    'AWS_SECRET_ACCESS_KEY',
    )


class TofuEngine(ProvisioningEngine):
    """OpenTofu or Terraform run in the project's terraform directory.

    Secret variables go into a transient *.tfvars.json file passed with
    -var-file. State backend credentials go into a transient AWS shared
    credentials file. Both are removed as soon as the process exits.
    """

    _plan_file = 'tfplan'

    def __init__(
            self,
            work_dir: Path,
            binary: str,
            get_variables: Callable[[], Mapping[str, str]],
            get_aws_credentials: Callable[[], Mapping[str, str]],
            ):
        self._work_dir = work_dir
        self._binary = binary
        self._get_variables = get_variables
        self._get_aws_credentials = get_aws_credentials

    def __repr__(self):
        return f'<{self.__class__.__name__} {self._binary} in {self._work_dir}>'

    def init(self):
        args = ['init', '-input=false']
        if (self._work_dir / 's3.backend.config').exists():
            _logger.info("Using S3 backend configuration")
            args.append('-backend-config=s3.backend.config')
        self._run(args, hint="Check s3.backend.config and the state backend credentials")

    def validate(self):
        self._run(['validate'])

    def plan(self):
        self._run(['plan', '-input=false', f'-out={self._plan_file}'], pass_variables=True)
        _logger.info("Plan saved: %s", self._work_dir / self._plan_file)

    def apply(self):
        plan_file = self._work_dir / self._plan_file
        if plan_file.exists():
            _logger.info("Applying saved plan %s", plan_file)
            # Variables are stored in the plan and cannot be passed again.
            self._run(['apply', '-input=false', self._plan_file])
            plan_file.unlink()
        else:
            self._run(['apply', '-input=false', '-auto-approve'], pass_variables=True)
        _logger.info("Infrastructure deployed")

    def destroy(self):
        self._run(['destroy', '-input=false', '-auto-approve'], pass_variables=True)
        _logger.info("Infrastructure destroyed")

    def outputs(self):
        with self._process_env(pass_variables=False) as (env, _):
            raw = self._capture(['output', '-json'], env)
        result = {}
        for name, output in json.loads(raw or '{}').items():
            value = output['value']
            value = value if isinstance(value, str) else json.dumps(value)
            if output.get('sensitive'):
                redactor.add(value)
            result[name] = value
        _logger.debug("Outputs: %s", ', '.join(result))
        return result

    def has_state(self):
        with self._process_env(pass_variables=False) as (env, _):
            raw = self._capture(['state', 'list'], env)
        return bool(raw.strip())

    def _run(self, args, pass_variables=False, hint=None):
        with self._process_env(pass_variables) as (env, extra_args):
            command = [self._binary, *args[:1], *extra_args, *args[1:]]
            returncode = run_logged(command, cwd=self._work_dir, env=env, logger=_logger)
        if returncode != 0:
            raise ProvisioningEngineError(
                f'{self._binary} {args[0]}', returncode,
                hint=hint or f"See the {self._binary} output above; re-running converges",
                )

    def _capture(self, args, env) -> str:
        command = [self._binary, *args]
        log_command(command)
        r = subprocess.run(
            command,
            cwd=self._work_dir,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding='utf-8',
            )
        if r.returncode != 0:
            _logger.error("%s", r.stderr.strip())
            raise ProvisioningEngineError(f'{self._binary} {args[0]}', r.returncode)
        return r.stdout

    @contextmanager
    def _process_env(self, pass_variables: bool):
        env = {**os.environ, 'TF_IN_AUTOMATION': '1'}
        extra_args = []
        with ExitStack() as stack:
            aws_credentials = self._get_aws_credentials()
            if aws_credentials:
                for name in _aws_overrides:
                    env.pop(name, None)
                credentials_file = stack.enter_context(
                    transient_file(_aws_credentials_text(aws_credentials).encode()))
                env['AWS_SHARED_CREDENTIALS_FILE'] = str(credentials_file)
            if pass_variables:
                variables = self._get_variables()
                if variables:
                    var_file = stack.enter_context(
                        transient_file(json.dumps(variables).encode(), suffix='.tfvars.json'))
                    extra_args.append(f'-var-file={var_file}')
                    _logger.info("Passing variables: %s", ', '.join(sorted(variables)))
            yield env, extra_args


def _aws_credentials_text(fields: Mapping[str, str]) -> str:
    """Render the default profile of an AWS shared credentials file.

    >>> print(_aws_credentials_text({'aws_access_key_id': 'AKIA', 'aws_secret_access_key': 's'}), end='')
    [default]
    aws_access_key_id = AKIA
    aws_secret_access_key = s
    """
    lines = ['[default]', *(f'{name} = {value}' for name, value in fields.items())]
    return '\n'.join(lines) + '\n'
