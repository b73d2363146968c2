# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Executing a CLI command on the local host is in run_command(); failures surface as subprocess.CalledProcessError, with
'argument list too long' conditions and missing programs mapped onto their own exception types."""

from __future__ import (
    annotations,
)
import errno
import logging
import shlex
import subprocess
import sys
from subprocess import (
    DEVNULL,
    PIPE,
    CompletedProcess,
)

from zautosnap_main.errors import (
    ArgumentListTooLongError,
    MissingProgramError,
    is_argument_list_too_long,
)
from zautosnap_main.utils import (
    list_formatter,
    stderr_to_str,
    xprint,
)


def run_command(
    log: logging.Logger,
    cmd: list[str],
    level: int = -1,
    is_dry: bool = False,
    check: bool = True,
    print_stdout: bool = False,
    print_stderr: bool = True,
) -> str:
    """Runs the given CLI cmd and returns its stdout; in dry-run mode only logs what would be executed.

    Raises MissingProgramError if the program cannot be found, ArgumentListTooLongError if the OS or the program rejects
    the command line as too long, and CalledProcessError (carrying the exit status) if the command fails otherwise.
    """
    level = level if level >= 0 else logging.INFO
    assert cmd is not None and isinstance(cmd, list) and len(cmd) > 0
    if is_dry:
        log.log(max(level, logging.INFO), "Would execute: %s", list_formatter(shlex.quote(arg) for arg in cmd))
        return ""
    log.log(level, "Executing: %s", list_formatter(shlex.quote(arg) for arg in cmd))
    try:
        process: CompletedProcess[str] = subprocess.run(
            cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, text=True, check=check
        )
    except FileNotFoundError as e:
        raise MissingProgramError(cmd[0]) from e
    except subprocess.CalledProcessError as e:
        xprint(log, stderr_to_str(e.stdout), run=print_stdout, file=sys.stdout, end="")
        xprint(log, stderr_to_str(e.stderr), run=print_stderr, file=sys.stderr, end="")
        if is_argument_list_too_long(stderr_to_str(e.stderr)):
            raise ArgumentListTooLongError(e.returncode, e.cmd, output=e.output, stderr=e.stderr) from e
        raise
    except OSError as e:
        if e.errno == errno.E2BIG:  # exec() itself refused the command line
            raise ArgumentListTooLongError(e.errno, cmd, stderr=str(e)) from e
        raise
    else:
        xprint(log, process.stdout, run=print_stdout, file=sys.stdout, end="")
        xprint(log, process.stderr, run=print_stderr, file=sys.stderr, end="")
        return process.stdout


def try_command(
    log: logging.Logger,
    cmd: list[str],
    level: int = -1,
    is_dry: bool = False,
    print_stdout: bool = False,
) -> str | None:
    """Convenience method that helps react to a dataset or pool that potentially doesn't exist anymore; returns None in
    that case, and otherwise behaves like run_command()."""
    try:
        return run_command(log, cmd, level=level, is_dry=is_dry, print_stdout=print_stdout, print_stderr=False)
    except subprocess.CalledProcessError as e:
        stderr: str = stderr_to_str(e.stderr)
        if (
            ": dataset does not exist" in stderr
            or ": filesystem does not exist" in stderr  # solaris 11.4.0
            or ": no such pool" in stderr
        ):
            return None
        log.warning("%s", stderr.rstrip())
        raise
