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
"""Decides which automatic snapshots to create, which to expire and which empty duplicates to clean up.

Create: For each dataset with auto snapshots enabled, a rule of its policy is due if no automatic snapshot tagged with the
rule's period length exists yet, or if the newest such snapshot is at least one period minus a grace window old. All rules
that are due in the same pass share a single new snapshot that is stamped with the union of their period lengths, so that
for example one physical snapshot satisfies the hourly, daily and weekly rule at midnight.

Expire: An automatic snapshot is retained while at least one rule of the dataset's current policy references it, i.e. the
snapshot is stamped with the rule's period length and is younger than count periods. Unreferenced snapshots are destroyed
unless their optional 'expires_at' hold lies in the future. This applies even if auto snapshots are disabled, and rules that
have since been removed from the policy reference nothing.

Clean: Among automatic snapshots stamped with the exact same set of period lengths, every snapshot except the most recent
one is destroyed if it holds no unique data (used == 0).

The engine is pure: it reads the registry and returns pending operations; it never talks to ZFS. Given the same registry
and the same ``now`` it returns the same decisions.
"""

from __future__ import (
    annotations,
)
import logging
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Final,
    Iterable,
)

from zautosnap_main.commit import (
    SnapshotCreate,
    SnapshotDestroy,
)
from zautosnap_main.datasets import (
    CREATED_AT_PROP,
    EXPIRES_AT_PROP,
    POLICIES_PROP,
    Dataset,
    Snapshot,
    auto_snapshots,
    format_policy_seconds,
)
from zautosnap_main.errors import (
    PolicyParseError,
)
from zautosnap_main.policy import (
    Policy,
    PolicyCache,
    cutoff,
)
from zautosnap_main.utils import (
    group_by,
)

# constants:
GRACE_SECS: Final[int] = 15  # absorbs jitter of the external scheduler, e.g. cron starting a few seconds late
TAG_FORMAT: Final[str] = "%Y-%m-%dT%H:%M:%SZ"


def snapshot_tag(now: int, existing_tags: set[str] | frozenset[str]) -> str:
    """Returns the UTC timestamp tag for ``now``, made unique among ``existing_tags`` by appending '.0', '.1', etc."""
    tag: str = datetime.fromtimestamp(now, tz=timezone.utc).strftime(TAG_FORMAT)
    if tag not in existing_tags:
        return tag
    for i in range(len(existing_tags) + 1):  # bounded as at most len(existing_tags) candidates can be taken
        candidate: str = f"{tag}.{i}"
        if candidate not in existing_tags:
            return candidate
    raise AssertionError("unreachable")


def due_rule_seconds(policy: Policy, snapshots: list[Snapshot], now: int, grace_secs: int = GRACE_SECS) -> list[int]:
    """Returns the period lengths of all rules that are due at time ``now``; ``snapshots`` must be sorted ascending by
    creation time, as returned by auto_snapshots()."""
    due: list[int] = []
    for rule in policy:
        newest: Snapshot | None = next((s for s in reversed(snapshots) if rule.seconds in s.policy_seconds), None)
        if newest is None:
            due.append(rule.seconds)
        else:
            assert newest.created_at is not None
            if now - newest.created_at >= rule.seconds - grace_secs:
                due.append(rule.seconds)
    return due


def count_refs(snapshot: Snapshot, policy: Policy, now: int) -> int:
    """Returns the number of rules that still retain the given automatic snapshot at time ``now``."""
    assert snapshot.created_at is not None
    return sum(
        1 for rule in policy if rule.seconds in snapshot.policy_seconds and cutoff(rule, now) <= snapshot.created_at
    )


def is_expired(snapshot: Snapshot, policy: Policy, now: int) -> bool:
    """Returns True if no rule retains the snapshot anymore and no 'expires_at' hold protects it."""
    if count_refs(snapshot, policy, now) > 0:
        return False
    return snapshot.expires_at is None or snapshot.expires_at < now


def empty_duplicates(snapshots: list[Snapshot]) -> list[Snapshot]:
    """Returns the snapshots that hold no unique data and are not the most recent of the snapshots stamped with the same
    set of period lengths; ``snapshots`` must be sorted ascending by creation time."""
    results: list[Snapshot] = []
    for group in group_by(snapshots, key=lambda s: s.policy_seconds).values():
        results += [s for s in group[0:-1] if s.used_bytes == 0]  # never remove the most recent member of a group
    return sorted(results, key=lambda s: (s.created_at, s.tag))


#############################################################################
class RetentionEngine:
    """Computes pending snapshot operations for a registry of datasets, according to each dataset's current policy."""

    def __init__(
        self,
        namespace: str,
        default_policy: str,
        log: logging.Logger,
        policy_cache: PolicyCache | None = None,
        grace_secs: int = GRACE_SECS,
        expires_in_secs: int | None = None,
    ) -> None:
        self.namespace: str = namespace
        self.default_policy: str = default_policy
        self.log: logging.Logger = log
        self.policy_cache: PolicyCache = policy_cache if policy_cache is not None else PolicyCache()
        self.grace_secs: int = grace_secs
        self.expires_in_secs: int | None = expires_in_secs
        self.invalid_policy_datasets: dict[str, str] = {}  # dataset name -> error message

    def policy_spec(self, dataset: Dataset) -> str:
        """Returns the dataset's policy override, or the default policy if there is none."""
        return dataset.policy_override if dataset.policy_override is not None else self.default_policy

    def policy(self, dataset: Dataset) -> Policy | None:
        """Returns the dataset's parsed current policy, or None (after logging an error) if it fails to parse."""
        try:
            return self.policy_cache.get(self.policy_spec(dataset))
        except PolicyParseError as e:
            if dataset.name not in self.invalid_policy_datasets:
                self.log.error("Skipping dataset with invalid policy: %s", f"{dataset.name}: {e}")
            self.invalid_policy_datasets[dataset.name] = str(e)
            return None

    def plan_creates(self, datasets: Iterable[Dataset], now: int) -> list[SnapshotCreate]:
        """Returns at most one new snapshot per auto-enabled dataset, stamped with all of its rules that are due."""
        creates: list[SnapshotCreate] = []
        for dataset in sorted(datasets, key=lambda ds: ds.name):
            if not dataset.auto_enabled:
                continue
            policy: Policy | None = self.policy(dataset)
            if policy is None:
                continue
            due: list[int] = due_rule_seconds(policy, auto_snapshots(dataset), now, self.grace_secs)
            if len(due) == 0:
                self.log.debug("No snapshot is due for dataset: %s", dataset.name)
                continue
            properties: list[tuple[str, str]] = [
                (f"{self.namespace}:{POLICIES_PROP}", format_policy_seconds(due)),
                (f"{self.namespace}:{CREATED_AT_PROP}", str(now)),
            ]
            if self.expires_in_secs is not None:
                properties.append((f"{self.namespace}:{EXPIRES_AT_PROP}", str(now + self.expires_in_secs)))
            tag: str = snapshot_tag(now, dataset.snapshot_tags())
            creates.append(SnapshotCreate(dataset.name, tag, tuple(sorted(properties))))
        return creates

    def plan_expirations(self, datasets: Iterable[Dataset], now: int) -> list[SnapshotDestroy]:
        """Returns the automatic snapshots that no rule of the current policy retains anymore, of all given datasets."""
        destroys: list[SnapshotDestroy] = []
        for dataset in sorted(datasets, key=lambda ds: ds.name):
            snapshots: list[Snapshot] = auto_snapshots(dataset)
            if len(snapshots) == 0:
                continue
            policy: Policy | None = self.policy(dataset)
            if policy is None:
                continue
            destroys += [SnapshotDestroy(s.dataset, s.tag, "expired") for s in snapshots if is_expired(s, policy, now)]
        return destroys

    def plan_cleanup(self, datasets: Iterable[Dataset]) -> list[SnapshotDestroy]:
        """Returns the empty automatic snapshots that are redundant because a more recent equivalent snapshot exists."""
        destroys: list[SnapshotDestroy] = []
        for dataset in sorted(datasets, key=lambda ds: ds.name):
            snapshots: list[Snapshot] = auto_snapshots(dataset)
            if len(snapshots) == 0:
                continue
            if self.policy(dataset) is None:
                continue  # never destroy anything on bad configuration
            destroys += [SnapshotDestroy(s.dataset, s.tag, "empty") for s in empty_duplicates(snapshots)]
        return destroys

    def plan_nuke(self, datasets: Iterable[Dataset]) -> list[SnapshotDestroy]:
        """Returns all automatic snapshots of the given datasets, regardless of policy."""
        destroys: list[SnapshotDestroy] = []
        for dataset in sorted(datasets, key=lambda ds: ds.name):
            destroys += [SnapshotDestroy(s.dataset, s.tag, "nuke") for s in auto_snapshots(dataset)]
        return destroys
