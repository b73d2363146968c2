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
"""Helpers for running CLI commands in (sequential or parallel) batches, without exceeding operating system limits.

The batch size aka max_batch_items splits one CLI command into one or more CLI commands. The resulting commands are executed
sequentially (via run_batched_with_fallback()), whereas independent groups of commands run in parallel across max_workers
threads (via run_groups_in_parallel()).

Example:
--------

- max_batch_items=1:
```
zfs destroy tank/foo@s1
zfs destroy tank/foo@s2
zfs destroy tank/foo@s3
```

- max_batch_items=N:
```
zfs destroy tank/foo@s1,s2,s3
```
"""

from __future__ import (
    annotations,
)
import logging
import platform
import sys
from collections import (
    deque,
)
from concurrent.futures import (
    Future,
    ThreadPoolExecutor,
    wait,
)
from typing import (
    Any,
    Callable,
    Final,
    Iterable,
    TypeVar,
)

from zautosnap_main.errors import (
    ArgumentListTooLongError,
)

T = TypeVar("T")

# constants:
MAX_CMDLINE_BYTES: Final[dict[str, int]] = {
    "Linux": 2 * 1024 * 1024,
    "FreeBSD": 256 * 1024,
    "SunOS": 1 * 1024 * 1024,
    "Darwin": 1 * 1024 * 1024,
}


def get_max_command_line_bytes(os_name: str | None = None) -> int:
    """Returns a conservative estimate of os.sysconf("SC_ARG_MAX") - size(os.environb) for the given (or current) OS."""
    os_name = os_name if os_name else platform.system()
    arg_max = MAX_CMDLINE_BYTES.get(os_name, 256 * 1024)
    environ_size = 4 * 1024  # typically is 1-4 KB
    safety_margin = (8 * 2 * 4 + 4) * 1024 if arg_max >= 1 * 1024 * 1024 else 8 * 1024
    max_bytes = max(4 * 1024, arg_max - environ_size - safety_margin)
    return max_bytes


def run_batched_with_fallback(
    cmd_args: Iterable[str],  # list of arguments to be split across one or more commands
    fn: Callable[[list[str]], Any],  # callback that runs a CLI command with a single batch
    log: logging.Logger,
    max_batch_items: int = 2**29,  # max number of args per batch
    max_batch_bytes: int = 127 * 1024,  # max number of bytes per batch
    sep: str = " ",  # separator between batch args
) -> None:
    """Runs fn(batch) in sequential batches, without creating a cmdline that's too big for the OS to handle; Can be seen as
    a Pythonic xargs -n / -s with OS-aware safety margin.

    If a batch nonetheless fails with ArgumentListTooLongError, the failed batch and all subsequent args are retried once
    with a batch size of 1, for the remainder of this call. That is the only retry; a per-item failure propagates.
    """
    assert isinstance(sep, str)
    fsenc: str = sys.getfilesystemencoding()
    seplen: int = len(sep.encode(fsenc))
    remaining: deque[str] = deque(cmd_args)
    batch_items: int = max(1, max_batch_items)
    while remaining:
        batch: list[str] = []
        total_bytes: int = 0
        while remaining and len(batch) < batch_items:
            arg_bytes: int = seplen + len(remaining[0].encode(fsenc))
            if total_bytes + arg_bytes > max_batch_bytes and len(batch) > 0:
                break
            batch.append(remaining.popleft())
            total_bytes += arg_bytes
        try:
            fn(batch)
        except ArgumentListTooLongError:
            if batch_items == 1 or len(batch) == 1:
                raise
            log.warning("%s", f"Command line with {len(batch)} args is too long; retrying with one arg per command line")
            batch_items = 1  # permanently for the remainder of this call
            remaining.extendleft(reversed(batch))


def run_groups_in_parallel(
    groups: Iterable[T],
    fn: Callable[[T], Any],
    log: logging.Logger,
    max_workers: int = 1,
) -> None:
    """Runs fn(group) for each group concurrently and waits until all of them have finished.

    A failing group does not cancel its siblings. Once all groups have finished, every failure is logged and the first
    failure (in submission order) is re-raised.
    """
    groups = list(groups)
    if len(groups) == 0:
        return
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(groups)))) as executor:
        futures: list[Future[Any]] = [executor.submit(fn, group) for group in groups]
        wait(futures)  # blocks until all CLI calls have returned
    errors: list[BaseException] = [e for e in (future.exception() for future in futures) if e is not None]
    for i, error in enumerate(errors):
        log.error("%s", f"{i + 1}/{len(errors)} parallel task(s) failed: {error}")
    if len(errors) > 0:
        raise errors[0]
