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
"""In-memory stand-in for the zfs CLI, so that tests of the retention logic and of the Job need no real pool."""

from __future__ import (
    annotations,
)
import logging
import threading
from typing import (
    Iterable,
)

from zautosnap_main.datasets import (
    COLUMNS,
    FIELDS,
    SNAPSHOT,
)
from zautosnap_main.property_store import (
    DEFAULT_KINDS,
    DEFAULT_NAMESPACE,
    PropertyStore,
)
from zautosnap_main.utils import (
    UNSET,
    is_descendant,
)


#############################################################################
class FakePropertyStore(PropertyStore):
    """Keeps datasets, snapshots and their properties in dicts; records every call in ``calls``.

    User properties of filesystems and volumes are inherited from the closest ancestor that has them set, like ZFS does.
    Errors can be injected per dataset via ``destroy_errors``, and for all creates via ``create_error``.
    """

    def __init__(self, log: logging.Logger, namespace: str = DEFAULT_NAMESPACE, dry_run: bool = False) -> None:
        super().__init__(log, "zfs", namespace=namespace, dry_run=dry_run)
        self.objects: dict[str, dict[str, str]] = {}  # name -> {propname: value}, including 'type' and 'used'
        self.calls: list[tuple] = []
        self.create_error: BaseException | None = None
        self.destroy_errors: dict[str, BaseException] = {}
        self._lock = threading.Lock()  # destroys run on a thread pool

    def add_dataset(self, name: str, kind: str = "filesystem", used: int = 0, **props: str) -> None:
        """Adds a filesystem or volume; keyword args are user properties relative to the namespace, e.g. auto='true'."""
        self.objects[name] = {"type": kind, "used": str(used), **{self.prop(k): v for k, v in props.items()}}

    def add_snapshot(self, name: str, used: int = 0, **props: str) -> None:
        self.objects[name] = {"type": SNAPSHOT, "used": str(used), **{self.prop(k): v for k, v in props.items()}}

    def snapshot_names(self, dataset: str | None = None) -> list[str]:
        return sorted(
            name
            for name, props in self.objects.items()
            if props["type"] == SNAPSHOT and (dataset is None or name.partition("@")[0] == dataset)
        )

    def _value(self, name: str, propname: str) -> str:
        props: dict[str, str] = self.objects[name]
        if propname in props or props["type"] == SNAPSHOT or ":" not in propname:
            return props.get(propname, UNSET)
        parent: str = name
        while "/" in parent:
            parent = parent.rsplit("/", 1)[0]
            if parent in self.objects and propname in self.objects[parent]:
                return self.objects[parent][propname]
        return UNSET

    def list_datasets(
        self, datasets: Iterable[str] = (), recursive: bool = True, kinds: Iterable[str] = DEFAULT_KINDS
    ) -> list[dict[str, str]]:
        datasets, kinds = list(datasets), list(kinds)
        self.calls.append(("list", tuple(datasets)))
        records: list[dict[str, str]] = []
        for name in sorted(self.objects):
            owner: str = name.partition("@")[0]
            if self.objects[name]["type"] not in kinds:
                continue
            if datasets and not any(is_descendant(owner, d) if recursive else owner == d for d in datasets):
                continue
            record: dict[str, str] = {}
            for column, f in zip(COLUMNS, FIELDS):
                record[column] = name if column == "name" else self._value(name, f.property_name(self.namespace))
            records.append(record)
        return records

    def get_property(self, propname: str, dataset: str) -> str | None:
        self.calls.append(("get", propname, dataset))
        if dataset not in self.objects:
            return None
        value: str = self._value(dataset, propname)
        return None if value == UNSET else value

    def set_property(self, propname: str, value: str, datasets: list[str]) -> None:
        self.calls.append(("set", propname, value, tuple(datasets)))
        if not self.dry_run:
            for dataset in datasets:
                self.objects[dataset][propname] = value

    def inherit_property(self, propname: str, datasets: list[str]) -> None:
        self.calls.append(("inherit", propname, tuple(datasets)))
        if not self.dry_run:
            for dataset in datasets:
                self.objects[dataset].pop(propname, None)

    def create_snapshots(self, properties: dict[str, str], snapshots: list[str]) -> None:
        with self._lock:
            self.calls.append(("snapshot", dict(properties), tuple(snapshots)))
        if self.create_error is not None:
            raise self.create_error
        if not self.dry_run:
            for snapshot in snapshots:
                assert snapshot not in self.objects, snapshot
                self.objects[snapshot] = {"type": SNAPSHOT, "used": "0", **properties}

    def destroy_snapshots(self, dataset: str, tags: list[str]) -> None:
        with self._lock:
            self.calls.append(("destroy", dataset, tuple(tags)))
        if dataset in self.destroy_errors:
            raise self.destroy_errors[dataset]
        if not self.dry_run:
            with self._lock:
                for tag in tags:
                    del self.objects[f"{dataset}@{tag}"]

    def calls_of(self, kind: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == kind]
