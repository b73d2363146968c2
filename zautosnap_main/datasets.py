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
"""In-memory registry of ZFS datasets and their snapshots, built from the flat output of a single 'zfs list' call.

The three kinds of records that 'zfs list -t filesystem,volume,snapshot' emits share one field table (``FIELDS``), which
defines once how each listed column maps onto an attribute, how it is converted, and which kinds it applies to. Dataset
containers (filesystems and volumes) own their snapshots; a snapshot resolves its owner by splitting its full name at the
first '@' character.
"""

from __future__ import (
    annotations,
)
import logging
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    Callable,
    ClassVar,
    Final,
    Iterable,
    Literal,
)

from zautosnap_main.errors import (
    OrphanSnapshotError,
)
from zautosnap_main.utils import (
    UNSET,
)

# constants:
FILESYSTEM: Final[str] = "filesystem"
VOLUME: Final[str] = "volume"
SNAPSHOT: Final[str] = "snapshot"
DATASET_KINDS: Final[tuple[str, str]] = (FILESYSTEM, VOLUME)
TRUE_VALUES: Final[frozenset[str]] = frozenset(["true", "on", "yes", "1"])

# names of the user properties that live under the configurable namespace, e.g. 'zautosnap:auto'
AUTO_PROP: Final[str] = "auto"
POLICY_PROP: Final[str] = "policy"
POLICIES_PROP: Final[str] = "policies"
CREATED_AT_PROP: Final[str] = "created_at"
EXPIRES_AT_PROP: Final[str] = "expires_at"


def parse_bool(value: str) -> bool:
    """Interprets a ZFS user property value as a bool; unset means False."""
    return value.strip().lower() in TRUE_VALUES


def parse_optional_str(value: str) -> str | None:
    """Returns None for an unset property, else the value itself."""
    return None if value == UNSET or value == "" else value


def parse_optional_int(value: str) -> int | None:
    """Returns None for an unset property, else the value as int."""
    return None if value == UNSET or value == "" else int(value)


def parse_int(value: str) -> int:
    """Parses a numeric native property such as 'used' as printed by 'zfs list -p'; unset means zero."""
    return 0 if value == UNSET or value == "" else int(value)


def parse_policy_seconds(value: str) -> frozenset[int]:
    """Parses the space-separated rule lengths that a snapshot satisfies, e.g. '3600 86400'."""
    if value == UNSET:
        return frozenset()
    return frozenset(int(secs) for secs in value.split())


def format_policy_seconds(policy_seconds: Iterable[int]) -> str:
    """Inverse of parse_policy_seconds(); deterministic ascending order."""
    return " ".join(str(secs) for secs in sorted(policy_seconds))


#############################################################################
@dataclass(frozen=True)
class Field:
    """Describes how one listed column maps onto an attribute of the kinds it applies to."""

    column: str  # native ZFS property name, or user property name relative to the namespace
    attr: str
    convert: Callable[[str], Any]
    kinds: frozenset[str]
    namespaced: bool = False

    def property_name(self, namespace: str) -> str:
        """Returns the name to pass to 'zfs list -o'."""
        return f"{namespace}:{self.column}" if self.namespaced else self.column


_ALL_KINDS: Final[frozenset[str]] = frozenset([FILESYSTEM, VOLUME, SNAPSHOT])
_CONTAINER_KINDS: Final[frozenset[str]] = frozenset(DATASET_KINDS)
_SNAPSHOT_KINDS: Final[frozenset[str]] = frozenset([SNAPSHOT])

FIELDS: Final[tuple[Field, ...]] = (
    Field("name", "name", str, _ALL_KINDS),
    Field("type", "kind", str, _ALL_KINDS),
    Field("used", "used_bytes", parse_int, _ALL_KINDS),
    Field(AUTO_PROP, "auto_enabled", parse_bool, _CONTAINER_KINDS, namespaced=True),
    Field(POLICY_PROP, "policy_override", parse_optional_str, _CONTAINER_KINDS, namespaced=True),
    Field(POLICIES_PROP, "policy_seconds", parse_policy_seconds, _SNAPSHOT_KINDS, namespaced=True),
    Field(CREATED_AT_PROP, "created_at", parse_optional_int, _SNAPSHOT_KINDS, namespaced=True),
    Field(EXPIRES_AT_PROP, "expires_at", parse_optional_int, _SNAPSHOT_KINDS, namespaced=True),
)
COLUMNS: Final[tuple[str, ...]] = tuple(f.column for f in FIELDS)


def listing_properties(namespace: str) -> list[str]:
    """Returns the property projection for 'zfs list -o', in the same order as ``FIELDS``."""
    return [f.property_name(namespace) for f in FIELDS]


#############################################################################
@dataclass(frozen=True)
class Snapshot:
    """Immutable point-in-time capture of a dataset; ``created_at`` is set iff the snapshot is automatic."""

    dataset: str
    tag: str
    used_bytes: int = 0
    created_at: int | None = None
    expires_at: int | None = None
    policy_seconds: frozenset[int] = frozenset()
    kind: ClassVar[str] = SNAPSHOT
    has_snapshots: ClassVar[bool] = False

    @property
    def name(self) -> str:
        """Fully qualified snapshot name, e.g. 'tank/home@2024-09-03T12:26:15Z'."""
        return f"{self.dataset}@{self.tag}"

    @property
    def automatic(self) -> bool:
        return self.created_at is not None


@dataclass(frozen=True)
class Dataset:
    """A ZFS filesystem or volume that can hold snapshots; owns its snapshots for the duration of a run."""

    name: str
    kind: Literal["filesystem", "volume"]
    used_bytes: int = 0
    auto_enabled: bool = False
    policy_override: str | None = None
    snapshots: list[Snapshot] = field(default_factory=list, compare=False, repr=False)
    has_snapshots: ClassVar[bool] = True

    def __post_init__(self) -> None:
        if self.kind not in DATASET_KINDS:
            raise ValueError(f"Invalid dataset kind: {self.kind!r} for dataset: {self.name}")

    @property
    def pool(self) -> str:
        return self.name.split("/", 1)[0]

    def snapshot_tags(self) -> set[str]:
        """Returns the tags of all snapshots, automatic or not."""
        return {snapshot.tag for snapshot in self.snapshots}


def parse_listing(lines: Iterable[str], columns: tuple[str, ...] = COLUMNS) -> list[dict[str, str]]:
    """Turns the tab-separated lines of 'zfs list -H -p -o ...' into records keyed by column name."""
    records: list[dict[str, str]] = []
    for line in lines:
        if not line:
            continue
        values: list[str] = line.split("\t")
        if len(values) != len(columns):
            raise ValueError(f"Expected {len(columns)} tab-separated columns but got {len(values)}: {line!r}")
        records.append(dict(zip(columns, values)))
    return records


def _convert(record: dict[str, str], kind: str) -> dict[str, Any]:
    """Applies the field table to a record, keeping only the fields that apply to the record's kind."""
    return {f.attr: f.convert(record.get(f.column, UNSET)) for f in FIELDS if kind in f.kinds and f.attr != "kind"}


def build_registry(
    records: Iterable[dict[str, str]],
    log: logging.Logger | None = None,
    on_orphan: Literal["skip", "fail"] = "skip",
) -> dict[str, Dataset]:
    """Builds the dataset -> snapshots object graph from an unordered set of records, each tagged by its 'type'.

    A snapshot whose owner dataset is absent from the listing is an orphan, for example because a third party destroyed
    the dataset while 'zfs list' was running. With on_orphan='skip' the orphan is logged and dropped; with
    on_orphan='fail' an OrphanSnapshotError is raised. Records with unparseable values are logged and dropped.
    """
    log = log if log is not None else logging.getLogger(__name__)
    registry: dict[str, Dataset] = {}
    snapshot_records: list[dict[str, str]] = []
    for record in records:
        kind: str = record["type"]
        if kind == SNAPSHOT:
            snapshot_records.append(record)
        elif kind in DATASET_KINDS:
            try:
                attrs: dict[str, Any] = _convert(record, kind)
            except ValueError as e:
                log.warning("Ignoring dataset with invalid properties: %s", f"{record['name']}: {e}")
                continue
            if attrs["name"] in registry:
                raise ValueError(f"Duplicate dataset in listing: {attrs['name']}")
            registry[attrs["name"]] = Dataset(kind=kind, **attrs)  # type: ignore[arg-type]
        else:
            log.debug("Ignoring %s: %s", kind, record.get("name"))

    for record in snapshot_records:
        owner, _, tag = record["name"].partition("@")
        dataset: Dataset | None = registry.get(owner)
        if dataset is None:
            if on_orphan == "fail":
                raise OrphanSnapshotError(f"Snapshot {record['name']} belongs to a dataset that is absent from the listing")
            log.warning("Ignoring orphan snapshot whose dataset is absent from the listing: %s", record["name"])
            continue
        try:
            attrs = _convert(record, SNAPSHOT)
        except ValueError as e:
            log.warning("Ignoring snapshot with invalid properties: %s", f"{record['name']}: {e}")
            continue
        del attrs["name"]
        dataset.snapshots.append(Snapshot(dataset=owner, tag=tag, **attrs))
    return registry


def auto_snapshots(dataset: Dataset) -> list[Snapshot]:
    """Returns the automatic snapshots of the dataset, sorted ascending by creation time, ties broken by tag."""
    return sorted((s for s in dataset.snapshots if s.automatic), key=lambda s: (s.created_at, s.tag))
