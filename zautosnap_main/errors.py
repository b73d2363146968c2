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
"""Exception types raised by zfs snapshot policy parsing, registry building and command execution.

A failed external command is reported as the standard ``subprocess.CalledProcessError``, which carries the exit status.
"""

from __future__ import (
    annotations,
)
import subprocess
from typing import (
    Final,
)

# constants:
TOO_MANY_ARGS_MARKERS: Final[tuple[str, ...]] = ("argument list too long", "too many arguments")


#############################################################################
class PolicyParseError(ValueError):
    """Indicates a malformed or out-of-range snapshot policy specification."""


class OrphanSnapshotError(LookupError):
    """Indicates a snapshot record whose owning dataset is absent from the current listing."""


class MissingProgramError(RuntimeError):
    """Indicates that a required external program (e.g. the zfs CLI) is not installed or not on the PATH."""

    def __init__(self, program: str) -> None:
        super().__init__(f"{program} CLI is not available on this host. Install {program} first!")
        self.program: str = program


class AlreadyRunningError(RuntimeError):
    """Indicates that another run of the same periodic job still holds the run lock."""

    def __init__(self, lock_file: str) -> None:
        super().__init__(f"Exiting as same previous periodic job is still running without completion yet per {lock_file}")
        self.lock_file: str = lock_file


class ArgumentListTooLongError(subprocess.CalledProcessError):
    """A CalledProcessError whose cause is that the command line exceeded the limits of the OS or of the external tool;
    the caller may retry with smaller batches."""


def is_argument_list_too_long(stderr: str) -> bool:
    """Returns True if the given diagnostic output of a failed command indicates too many or too long arguments."""
    stderr = stderr.lower()
    return any(marker in stderr for marker in TOO_MANY_ARGS_MARKERS)
