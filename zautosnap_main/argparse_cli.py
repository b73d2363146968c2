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
"""Documentation, definition of input data and ArgumentParser used by the 'zautosnap' CLI."""

from __future__ import (
    annotations,
)
import argparse
from typing import (
    Any,
    Final,
)

from zautosnap_main.property_store import (
    DEFAULT_NAMESPACE,
)
from zautosnap_main.utils import (
    ENV_VAR_PREFIX,
    PROG_NAME,
    getenv_any,
    getenv_int,
)

__version__: str = "1.0.0.dev0"
PROG_AUTHOR: str = "Wolfgang Hoschek"
DEFAULT_POLICY: Final[str] = "4 * 15 minutes; 24 hourly; 7 daily; 4 weekly; 12 monthly"
INHERIT: Final[str] = "inherit"
COMMANDS: Final[tuple[str, ...]] = ("create", "expire", "clean", "auto", "list", "policy", "enable", "disable", "nuke")


#############################################################################
class NonEmptyStringAction(argparse.Action):
    """Argparse action rejecting empty string values."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        values = values.strip()
        if values == "":
            parser.error(f"{option_string}: Empty string is not valid")
        setattr(namespace, self.dest, values)


class PositiveIntAction(argparse.Action):
    """Argparse action rejecting integers smaller than 1."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        if values < 1:
            parser.error(f"{option_string}: Must be a positive integer, but got: {values}")
        setattr(namespace, self.dest, values)


def argument_parser() -> argparse.ArgumentParser:
    """Returns the CLI parser used by zautosnap."""
    # fmt: off
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog=PROG_NAME,
        allow_abbrev=False,
        formatter_class=argparse.RawTextHelpFormatter,
        description=f"""
*{PROG_NAME} is a command line tool that periodically creates ZFS snapshots and expires them according to a
per-dataset retention policy, for example "24 hourly; 7 daily; 4 weekly".*

All state lives in ZFS user properties within a namespace (default: '{DEFAULT_NAMESPACE}'), so there is no
database to maintain: '<namespace>:auto' enables automatic snapshots for a dataset and its descendants, and
'<namespace>:policy' overrides the default retention policy. Each snapshot that {PROG_NAME} creates records
which policy rules it serves ('<namespace>:policies') and when it was taken ('<namespace>:created_at').

{PROG_NAME} is meant to be run periodically, e.g. every 15 minutes via cron:

```*/15 * * * * {PROG_NAME} auto```

A run takes at most one new snapshot per dataset, no matter how many rules are due at the same time,
and then destroys snapshots that no rule retains anymore, as well as redundant snapshots that hold no data.
Only one {PROG_NAME} run per property namespace can be in progress at any time.

A policy consists of one or more rules separated by ';' or ','. Each rule has one of the forms
`[COUNT] [*] PERIOD` or `COUNT * MULTIPLE PERIOD`, for example `24 hourly`, `4 * 15 minutes`, `daily`
(which means `1 daily`) or `12 months`. Periods must be at least one minute long, and no two rules of a policy
may have the same period.
""")

    parser.add_argument(
        "command", choices=COMMANDS, metavar="COMMAND",
        help="The operation to perform; one of:\n\n"
             "create: Take a new snapshot of each auto-enabled dataset for which at least one policy rule is due.\n\n"
             "expire: Destroy automatic snapshots that no rule of the dataset's current policy retains anymore.\n\n"
             "clean: Destroy automatic snapshots that hold no data, unless they are the latest snapshot serving the "
             "same set of rules.\n\n"
             "auto: Run create, expire and clean, in this order. This is what a periodic job normally runs.\n\n"
             "list: Print each dataset's auto setting, effective policy, bytes written since its most recent snapshot, "
             "as well as its automatic snapshots.\n\n"
             "policy [SPEC|inherit] [DATASET...]: Without arguments, print the effective policy of each dataset. With "
             "a SPEC but no DATASET, validate SPEC and print its normalized form. With a SPEC and DATASETs, set SPEC as "
             f"the policy of the given datasets. With '{INHERIT}' and DATASETs, remove their policy override.\n\n"
             "enable [DATASET...]: Turn on automatic snapshots for the given datasets and their descendants, or for all "
             "pools if no dataset is given.\n\n"
             "disable [DATASET...]: Turn off automatic snapshots, analogous to enable. Existing snapshots still expire.\n\n"
             "nuke [DATASET...]: Destroy all automatic snapshots of the given datasets and their descendants, or of all "
             "pools if no dataset is given, regardless of policy.\n\n")
    parser.add_argument(
        "args", nargs="*", metavar="DATASET",
        help="The datasets to operate on, including their descendants. If none are given, all datasets of all "
             "imported pools are selected. For the 'policy' command the first argument is the policy SPEC.\n\n")
    parser.add_argument(
        "--property-namespace", default=DEFAULT_NAMESPACE, action=NonEmptyStringAction, metavar="STRING",
        help="The prefix of the ZFS user properties that hold the configuration and the metadata of automatic "
             "snapshots; the ':' separator is appended automatically. Must not contain a ':'. "
             "Default is '%(default)s'.\n\n")
    parser.add_argument(
        "--default-policy", default=getenv_any("default_policy", DEFAULT_POLICY), action=NonEmptyStringAction,
        metavar="SPEC",
        help="The retention policy of datasets that have no '<namespace>:policy' property. Default is '%(default)s', "
             f"which can also be set via the environment variable {ENV_VAR_PREFIX}default_policy.\n\n")
    parser.add_argument(
        "--expires-in", default=None, action=NonEmptyStringAction, metavar="DURATION",
        help="On create and auto, stamp newly created snapshots with '<namespace>:expires_at', such that they will "
             "not expire before the given duration has elapsed even if no rule retains them anymore, e.g. "
             "'30 days', '12 hours', '90mins'. Default is no hold.\n\n")
    parser.add_argument(
        "--zfs-program", default="zfs", action=NonEmptyStringAction, metavar="STRING",
        help="The name or path of the 'zfs' executable. Default is '%(default)s'.\n\n")
    threads_default: int = getenv_int("threads", 8)
    parser.add_argument(
        "--threads", type=int, default=threads_default, action=PositiveIntAction, metavar="INT",
        help="The maximum number of datasets whose snapshots are destroyed in parallel "
             f"(default: {threads_default}, which can also be set via the environment variable "
             f"{ENV_VAR_PREFIX}threads). Snapshot creation is always a single atomic operation per set of "
             "properties.\n\n")
    parser.add_argument(
        "--dryrun", "-n", action="store_true",
        help="Do a dry run (aka 'no-op') to print what operations would happen if the command were to be executed "
             "for real. Nothing is created, destroyed or modified.\n\n")
    parser.add_argument(
        "--verbose", "-v", action="count", default=0,
        help="Print verbose information. This option can be specified multiple times to increase the level of "
             "verbosity. To print every ZFS command that is executed (or would be executed), add the `-v` flag, "
             "maybe along with --dryrun. ERROR, WARN, INFO, DEBUG, TRACE output lines are identified by [E], [W], "
             "[I], [D], [T] prefixes, respectively.\n\n")
    parser.add_argument(
        "--quiet", "-q", action="store_true",
        help="Suppress non-error, info, debug, and trace output.\n\n")
    parser.add_argument(
        "--log-file", default=None, action=NonEmptyStringAction, metavar="FILE",
        help="Also append log output to the given file (optional).\n\n")
    parser.add_argument(
        "--log-syslog-address", default=None, action=NonEmptyStringAction, metavar="STRING",
        help="Host:port of the syslog machine to send messages to (e.g. 'foo.example.com:514' or '127.0.0.1:514'), or "
             "the file system path to the syslog socket file on localhost (e.g. '/dev/log'). The default is no "
             "address, i.e. do not log anything to syslog by default. See "
             "https://docs.python.org/3/library/logging.handlers.html#sysloghandler\n\n")
    parser.add_argument(
        "--log-syslog-socktype", choices=["UDP", "TCP"], default="UDP",
        help="The socket type to use to connect if no local socket file system path is used. Default is '%(default)s'.\n\n")
    parser.add_argument(
        "--log-syslog-facility", type=int, choices=range(8), default=1, metavar="INT",
        help="The local facility aka category that identifies msg sources in syslog (default: %(default)s, min=0, "
             "max=7).\n\n")
    parser.add_argument(
        "--log-syslog-level", choices=["CRITICAL", "ERROR", "WARN", "INFO", "DEBUG", "TRACE"], default="ERROR",
        help="Only send messages with equal or higher priority than this log level to syslog. Default is '%(default)s'.\n\n")
    parser.add_argument(
        "--version", action="version", version=f"{PROG_NAME}-{__version__}, by {PROG_AUTHOR}",
        help="Display version information and exit.\n\n")
    return parser
    # fmt: on
