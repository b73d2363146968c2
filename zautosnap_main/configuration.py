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
"""Configuration subsystem; Turns the parsed CLI arguments into validated, immutable option bundles."""

from __future__ import (
    annotations,
)
import argparse
import hashlib
import logging
import os
import tempfile
from typing import (
    Final,
)

from zautosnap_main.argparse_cli import (
    INHERIT,
)
from zautosnap_main.errors import (
    PolicyParseError,
)
from zautosnap_main.policy import (
    parse_policy,
)
from zautosnap_main.utils import (
    BAD_CONFIG_STATUS,
    LOG_TRACE,
    PROG_NAME,
    SHELL_CHARS,
    die,
    is_descendant,
    parse_duration_to_seconds,
    validate_dataset_name,
)


#############################################################################
class LogParams:
    """Option values for logging."""

    def __init__(self, args: argparse.Namespace) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        if args.quiet:
            log_level: int = logging.ERROR
        elif args.verbose >= 2:
            log_level = LOG_TRACE
        elif args.verbose >= 1:
            log_level = logging.DEBUG
        else:
            log_level = logging.INFO
        self.log_level: Final[int] = log_level
        self.quiet: Final[bool] = args.quiet
        self.log_file: Final[str | None] = args.log_file
        self.syslog_address: Final[str | None] = args.log_syslog_address
        self.syslog_socktype: Final[str] = args.log_syslog_socktype
        self.syslog_facility: Final[int] = args.log_syslog_facility
        syslog_level: str = args.log_syslog_level
        self.syslog_level: Final[int] = LOG_TRACE if syslog_level == "TRACE" else logging.getLevelName(syslog_level)

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
class Params:
    """All parsed CLI options combined into a single bundle; simplifies passing around numerous settings and defaults."""

    def __init__(self, args: argparse.Namespace, log: logging.Logger) -> None:
        """Reads from ArgumentParser via args; exits with BAD_CONFIG_STATUS on invalid input."""
        # immutable variables:
        self.args: Final[argparse.Namespace] = args
        self.log: Final[logging.Logger] = log
        self.command: Final[str] = args.command
        self.dry_run: Final[bool] = args.dryrun
        self.threads: Final[int] = args.threads
        self.zfs_program: Final[str] = validate_program_name(args.zfs_program, "--zfs-program")
        self.namespace: Final[str] = validate_namespace(args.property_namespace)

        self.default_policy: Final[str] = args.default_policy
        try:
            parse_policy(self.default_policy)
        except PolicyParseError as e:
            die(f"Invalid --default-policy: {e}", BAD_CONFIG_STATUS)

        self.expires_in_secs: Final[int | None] = (
            None if args.expires_in is None else parse_duration_to_seconds(args.expires_in, context="--expires-in")
        )

        positionals: list[str] = list(args.args)
        self.policy_spec: Final[str | None] = positionals.pop(0) if self.command == "policy" and positionals else None
        if self.command == "policy" and self.policy_spec == INHERIT and len(positionals) == 0:
            die(f"policy {INHERIT} requires at least one dataset", BAD_CONFIG_STATUS)
        for dataset in positionals:
            validate_dataset_name(dataset, dataset)
        # 'zfs list -r' would list a dataset twice if it is also a descendant of another given dataset
        self.datasets: Final[list[str]] = [
            dataset
            for i, dataset in enumerate(positionals)
            if dataset not in positionals[0:i]
            and not any(is_descendant(dataset, other) for other in positionals if other != dataset)
        ]

    def lock_file_name(self) -> str:
        """Returns unique path used to detect concurrently running jobs.

        Makes it such that a job that runs periodically declines to start if the same previous periodic job is still running
        without completion yet. All commands of the same property namespace on the same zfs program share one lock, as they
        all read and write the same metadata.
        """
        key: tuple[str, str] = (self.zfs_program, self.namespace)
        hash_code: str = hashlib.sha256(str(key).encode("utf-8")).hexdigest()
        return os.path.join(tempfile.gettempdir(), f"{PROG_NAME}-lockfile-{hash_code[0:32]}.lock")

    def __repr__(self) -> str:
        return str(self.__dict__)


def validate_program_name(program: str, input_text: str) -> str:
    """Rejects program names that are empty or contain whitespace or shell metacharacters."""
    if not program.strip() or any(c.isspace() or (c in SHELL_CHARS and c != "~") for c in program):
        die(f"Invalid program name for {input_text}: '{program}'", BAD_CONFIG_STATUS)
    if program.endswith("/") or ".." in program.split("/"):
        die(f"Invalid program name for {input_text}: '{program}'", BAD_CONFIG_STATUS)
    return program


def validate_namespace(namespace: str) -> str:
    """The namespace becomes the prefix of ZFS user property names; ZFS appends no separator, so we do, and hence reject
    a namespace that already contains one."""
    if ":" in namespace:
        die(f"--property-namespace must not contain a ':' but got: '{namespace}'", BAD_CONFIG_STATUS)
    if any(c.isspace() or c in SHELL_CHARS or c == "@" or c == "/" for c in namespace):
        die(f"Invalid --property-namespace: '{namespace}'", BAD_CONFIG_STATUS)
    return namespace
