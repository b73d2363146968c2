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
"""Collection of helper functions used across zautosnap; includes environment variable parsing, exit codes, time and
size formatting, and cleanup helpers.

Everything in this module relies only on the standard library so other modules remain dependency free.
"""

from __future__ import (
    annotations,
)
import contextlib
import logging
import os
import re
import stat
import sys
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Any,
    Callable,
    Final,
    Iterable,
    Iterator,
    NoReturn,
    TextIO,
    cast,
)

# constants:
PROG_NAME: Final[str] = "zautosnap"
ENV_VAR_PREFIX: Final[str] = PROG_NAME + "_"
DIE_STATUS: Final[int] = 3
STILL_RUNNING_STATUS: Final[int] = 4
MISSING_PROGRAM_STATUS: Final[int] = 5
BAD_CONFIG_STATUS: Final[int] = 6
LOG_STDERR: Final[int] = (logging.INFO + logging.WARNING) // 2  # custom log level is halfway in between
LOG_STDOUT: Final[int] = (LOG_STDERR + logging.INFO) // 2  # custom log level is halfway in between
LOG_DEBUG: Final[int] = logging.DEBUG
LOG_TRACE: Final[int] = logging.DEBUG // 2  # custom log level is halfway in between
SHELL_CHARS: Final[str] = '"' + "'`~!@#$%^&*()+={}[]|;<>?,\\"
FILE_PERMISSIONS: Final[int] = stat.S_IRUSR | stat.S_IWUSR  # rw------- (user read + write)
UNSET: Final[str] = "-"  # what 'zfs list -H' prints for a property that has no value


def getenv_any(key: str, default: str | None = None) -> str | None:
    """All shell environment variable names used for configuration start with this prefix."""
    return os.getenv(ENV_VAR_PREFIX + key, default)


def getenv_int(key: str, default: int) -> int:
    """Returns environment variable ``key`` as int with ``default`` fallback."""
    return int(cast(str, getenv_any(key, str(default))))


def list_formatter(iterable: Iterable[Any], separator: str = " ") -> Any:
    """Joins the items only when the returned object is converted to str, i.e. only if the log level is enabled."""

    class LazyListFormatter:
        def __str__(self) -> str:
            return separator.join(map(str, iterable))

    return LazyListFormatter()


def stderr_to_str(stderr: Any) -> str:
    """Workaround for https://github.com/python/cpython/issues/87597."""
    return str(stderr) if not isinstance(stderr, bytes) else stderr.decode("utf-8")


def xprint(log: logging.Logger, value: Any, run: bool = True, end: str = "\n", file: TextIO | None = None) -> None:
    """Optionally logs ``value`` at stdout/stderr level."""
    if run and value:
        value = value if end else str(value).rstrip()
        level = LOG_STDOUT if file is sys.stdout else LOG_STDERR
        log.log(level, "%s", value)


def die(msg: str, exit_code: int = DIE_STATUS) -> NoReturn:
    """Raises SystemExit with the given exit status; Job.run_main() logs ``msg`` as the cause."""
    ex = SystemExit(msg)
    ex.code = exit_code
    raise ex


def dry(msg: str, is_dry_run: bool) -> str:
    """Prefix ``msg`` with 'Dry' when in dry-run mode."""
    return "Dry " + msg if is_dry_run else msg


def is_descendant(dataset: str, of_root_dataset: str) -> bool:
    """Returns True if ``dataset`` lies under ``of_root_dataset`` in the dataset hierarchy, or is the same."""
    return dataset == of_root_dataset or dataset.startswith(of_root_dataset + "/")


_DATASET_COMPONENT_REGEX: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9_.:\- ]+")


def validate_dataset_name(dataset: str, input_text: str) -> None:
    """Rejects names that 'zfs' would reject, as well as names that refer to a snapshot or could be misread as an option."""
    if (
        not dataset
        or not dataset[0].isalpha()
        or any(c in (".", "..") or not _DATASET_COMPONENT_REGEX.fullmatch(c) for c in dataset.split("/"))
    ):
        die(f"Invalid ZFS dataset name: '{dataset}' for: '{input_text}'", BAD_CONFIG_STATUS)


_DURATION_UNITS: Final[dict[str, int]] = {
    "sec": 1,
    "min": 60,
    "hour": 60 * 60,
    "day": 86400,
    "week": 7 * 86400,
    "month": 31 * 86400,
    "year": 365 * 86400,
}
_DURATION_REGEX: Final[re.Pattern[str]] = re.compile(
    r"(\d+)\s*(secs?|seconds?|mins?|minutes?|hours?|days?|weeks?|months?|years?)"
)


def parse_duration_to_seconds(duration: str, context: str = "") -> int:
    """Parses a duration such as '90mins', '12 hours' or '30 days' into seconds; a month is 31 days, like in policies.

    Raises ValueError on malformed input, or exits with BAD_CONFIG_STATUS if ``context`` names the CLI option it came from.
    """
    match = _DURATION_REGEX.fullmatch(duration.strip())
    if not match:
        if context:
            die(f"Invalid duration format: {duration} within {context}", BAD_CONFIG_STATUS)
        raise ValueError(f"Invalid duration format: {duration}")
    unit: str = match.group(2)
    return int(match.group(1)) * _DURATION_UNITS[unit[0:3] if unit.startswith(("sec", "min")) else unit.rstrip("s")]


def isotime_from_unixtime(unixtime_in_seconds: int) -> str:
    """Converts UTC Unix time seconds into ISO 8601 datetime string, e.g. '2024-09-03 12:26:15+00:00'."""
    return datetime.fromtimestamp(unixtime_in_seconds, tz=timezone.utc).isoformat(sep=" ", timespec="seconds")


def human_readable_bytes(num_bytes: float) -> str:
    """Formats a size such as the 'used' or 'written' property of a dataset, e.g. "567 MiB"."""
    units = ("B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB")
    s: float = abs(num_bytes)
    i = 0
    while s >= 1024 and i < len(units) - 1:
        s /= 1024
        i += 1
    return f"{'-' if num_bytes < 0 else ''}{human_readable_float(s)} {units[i]}"


def human_readable_duration(duration: float, unit: str = "ns") -> str:
    """Formats a duration in human units, automatically scaling as needed; for example "567ms", or "15m" for
    human_readable_duration(900, unit="s")."""
    units = ("ns", "μs", "ms", "s", "m", "h", "d")
    factors = (1000, 1000, 1000, 60, 60, 24)  # factors[i] converts units[i] into units[i + 1]
    i = units.index(unit)
    t: float = abs(duration)
    while i > 0 and 0 < t < 1:
        i -= 1
        t *= factors[i]
    while i < len(factors) and t >= (1000 if i < 3 else factors[i]):
        t /= factors[i]
        i += 1
    return f"{'-' if duration < 0 else ''}{human_readable_float(t)}{units[i]}"


def human_readable_float(number: float) -> str:
    """Formats ``number`` with a variable precision depending on magnitude.

    One digit before the decimal point rounds to two decimals (3.14559 --> "3.15"), two digits round to one decimal
    (12.36 --> "12.4"), and three or more digits round to zero decimals (123.556 --> "124"). Trailing zeroes are dropped.
    """
    abs_number = abs(number)
    precision = 2 if abs_number < 10 else 1 if abs_number < 100 else 0
    if precision == 0:
        return str(round(number))
    result = f"{number:.{precision}f}".rstrip("0").rstrip(".")
    return "0" if result == "-0" else result


def group_by(items: Iterable[Any], key: Callable[[Any], Any]) -> dict[Any, list[Any]]:
    """Groups items into lists keyed by ``key(item)``, preserving encounter order within each group and across groups."""
    groups: dict[Any, list[Any]] = {}
    for item in items:
        groups.setdefault(key(item), []).append(item)
    return groups


@contextlib.contextmanager
def xfinally(cleanup: Callable[[], None]) -> Iterator[None]:
    """Usage: with xfinally(lambda: cleanup()): ...
    Guarantees that cleanup() runs on exit, and that an error in cleanup() never masks an exception raised earlier inside
    the body of the `with` block.

    * Body raises, cleanup succeeds --> body exception is re-raised.
    * Body raises, cleanup also raises --> body exception is re-raised; cleanup exception is linked via ``__context__``.
    * Body succeeds, cleanup raises --> cleanup exception propagates normally.
    """
    try:
        yield
    except BaseException as exc:
        try:
            cleanup()
        except BaseException as cleanup_exc:
            cleanup_exc.__context__ = None  # avoid a reference cycle between the two exceptions
            exc.__context__ = cleanup_exc
        raise
    cleanup()
