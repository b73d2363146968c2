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
"""Accumulates snapshot create/destroy decisions and applies them to ZFS in as few CLI invocations as possible.

Creates that stamp the exact same set of user properties are combined into a single (atomic) 'zfs snapshot' call listing
all target snapshots, so the snapshots of all datasets within the same call are taken within the same ZFS transaction group.
Destroys are combined into one 'zfs destroy dataset@tag1,tag2,...' call per dataset, and the calls for distinct datasets run
concurrently. All creates run before any destroy. Command lines that would be too big for the OS are split into several
batches; a batch that the OS or zfs still rejects as too long is retried once with one item per call.
"""

from __future__ import (
    annotations,
)
import logging
import sys
import time
from typing import (
    TYPE_CHECKING,
    NamedTuple,
    Tuple,
)

from zautosnap_main.parallel_batch_cmd import (
    get_max_command_line_bytes,
    run_batched_with_fallback,
    run_groups_in_parallel,
)
from zautosnap_main.utils import (
    human_readable_duration,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zautosnap_main.property_store import (
        PropertyStore,
    )

PropertyItems = Tuple[Tuple[str, str], ...]  # Type alias; sorted (name, value) pairs
MAX_ARG_STRLEN: int = 131071  # max size of a single argument is 128KB on Linux


#############################################################################
class SnapshotCreate(NamedTuple):
    """Request to create ``dataset@tag`` with the given user properties attached."""

    dataset: str
    tag: str
    properties: PropertyItems

    @property
    def name(self) -> str:
        return f"{self.dataset}@{self.tag}"


class SnapshotDestroy(NamedTuple):
    """Request to destroy ``dataset@tag``; ``reason`` is for logging only."""

    dataset: str
    tag: str
    reason: str = ""

    @property
    def name(self) -> str:
        return f"{self.dataset}@{self.tag}"


#############################################################################
class CommitQueue:
    """Pending operations of one decision pass; written by the single-threaded decision phase, then read-only while the
    destroy workers fan out, which is why no locking is needed."""

    def __init__(
        self,
        store: PropertyStore,
        log: logging.Logger,
        max_workers: int = 1,
        max_batch_items: int = 2**29,
        max_batch_bytes: int | None = None,
    ) -> None:
        self.store: PropertyStore = store
        self.log: logging.Logger = log
        self.max_workers: int = max(1, max_workers)
        self.max_batch_items: int = max(1, max_batch_items)
        self.max_batch_bytes: int = max_batch_bytes if max_batch_bytes is not None else get_max_command_line_bytes()
        self.creates: dict[PropertyItems, list[SnapshotCreate]] = {}
        self.destroys: dict[str, list[SnapshotDestroy]] = {}
        self.num_created: int = 0
        self.num_destroyed: int = 0

    def add_create(self, create: SnapshotCreate) -> None:
        """Queues a create, keyed by the exact property set it stamps."""
        key: PropertyItems = tuple(sorted(create.properties))
        if key not in self.creates:
            self.creates[key] = []
        self.creates[key].append(create)

    def add_destroy(self, destroy: SnapshotDestroy) -> None:
        """Queues a destroy, keyed by its owning dataset; duplicates are ignored."""
        if destroy.dataset not in self.destroys:
            self.destroys[destroy.dataset] = []
        group: list[SnapshotDestroy] = self.destroys[destroy.dataset]
        if all(d.tag != destroy.tag for d in group):
            group.append(destroy)

    def __len__(self) -> int:
        return sum(len(v) for v in self.creates.values()) + sum(len(v) for v in self.destroys.values())

    def clear(self) -> None:
        self.creates = {}
        self.destroys = {}

    def commit(self) -> None:
        """Applies all creates, then all destroys; the queue is cleared afterwards even if a step failed."""
        try:
            start_time_nanos: int = time.monotonic_ns()
            for properties, creates in self.creates.items():
                self._create(properties, creates)
            self._destroy_all()
            if len(self.creates) + len(self.destroys) > 0:
                elapsed_nanos: int = time.monotonic_ns() - start_time_nanos
                self.log.debug("Commit took %s", human_readable_duration(elapsed_nanos))
        finally:
            self.clear()

    def _create(self, properties: PropertyItems, creates: list[SnapshotCreate]) -> None:
        """Creates all snapshots with an identical property set in as few (atomic) 'zfs snapshot' calls as possible."""
        self.log.info(self.store.dry("Creating %s snapshots: %s"), len(creates), [c.name for c in creates])
        run_batched_with_fallback(
            [create.name for create in creates],
            fn=lambda batch: self.store.create_snapshots(dict(properties), batch),
            log=self.log,
            max_batch_items=self.max_batch_items,
            max_batch_bytes=self.max_batch_bytes,
        )
        self.num_created += len(creates)

    def _destroy_all(self) -> None:
        """Destroys each dataset's group of snapshots concurrently; waits for all groups, then re-raises the first error."""

        def destroy_group(dataset: str) -> None:  # thread-safe
            tags: list[str] = [d.tag for d in self.destroys[dataset]]
            self.log.info(self.store.dry(f"Destroying {len(tags)} snapshots within %s: %s"), dataset, tags)
            prefix_bytes: int = len(f"{dataset}@".encode(sys.getfilesystemencoding()))  # 'dataset@' shares the argument
            run_batched_with_fallback(
                tags,
                fn=lambda batch: self.store.destroy_snapshots(dataset, batch),
                log=self.log,
                max_batch_items=self.max_batch_items,
                max_batch_bytes=min(self.max_batch_bytes, MAX_ARG_STRLEN) - prefix_bytes,
                sep=",",
            )

        datasets: list[str] = [dataset for dataset, group in self.destroys.items() if len(group) > 0]
        num_snapshots: int = sum(len(self.destroys[dataset]) for dataset in datasets)
        run_groups_in_parallel(datasets, destroy_group, log=self.log, max_workers=self.max_workers)
        self.num_destroyed += num_snapshots
