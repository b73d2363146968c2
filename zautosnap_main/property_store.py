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
"""Thin wrapper around the 'zfs' CLI for reading and writing dataset properties and for creating and destroying snapshots.

All metadata that zautosnap maintains lives in ZFS user properties under a single namespace, e.g. 'zautosnap:auto'. Every
mutating call honors dry-run mode, in which case the command is logged but not executed.
"""

from __future__ import (
    annotations,
)
import logging
from typing import (
    Final,
    Iterable,
)

from zautosnap_main.connection import (
    run_command,
    try_command,
)
from zautosnap_main.datasets import (
    listing_properties,
    parse_listing,
)
from zautosnap_main.utils import (
    LOG_DEBUG,
    UNSET,
    dry,
)

# constants:
DEFAULT_NAMESPACE: Final[str] = "zautosnap"
DEFAULT_KINDS: Final[tuple[str, ...]] = ("filesystem", "volume", "snapshot")


#############################################################################
class PropertyStore:
    """Reads and writes ZFS datasets, snapshots and their properties via the zfs CLI."""

    def __init__(
        self, log: logging.Logger, zfs_program: str = "zfs", namespace: str = DEFAULT_NAMESPACE, dry_run: bool = False
    ) -> None:
        self.log: logging.Logger = log
        self.zfs_program: str = zfs_program
        self.namespace: str = namespace
        self.dry_run: bool = dry_run

    def prop(self, name: str) -> str:
        """Returns the fully qualified name of a user property within our namespace, e.g. 'zautosnap:policy'."""
        return f"{self.namespace}:{name}"

    def dry(self, msg: str) -> str:
        return dry(msg, self.dry_run)

    def list_datasets(
        self, datasets: Iterable[str] = (), recursive: bool = True, kinds: Iterable[str] = DEFAULT_KINDS
    ) -> list[dict[str, str]]:
        """Lists the given datasets (or all datasets of all pools if none are given) plus their snapshots, and returns one
        record per dataset or snapshot, keyed by column name."""
        cmd: list[str] = [self.zfs_program, "list", "-H", "-p", "-t", ",".join(kinds)]
        cmd += ["-o", ",".join(listing_properties(self.namespace))]
        datasets = list(datasets)
        if len(datasets) > 0:
            if recursive:
                cmd.append("-r")
            cmd += datasets
        output: str = run_command(self.log, cmd, level=LOG_DEBUG)
        return parse_listing(output.splitlines())

    def get_property(self, propname: str, dataset: str) -> str | None:
        """Returns the value of the given property of the given dataset or snapshot, or None if it is unset or if the
        dataset does not exist."""
        cmd: list[str] = [self.zfs_program, "get", "-H", "-p", "-o", "value", propname, dataset]
        output: str | None = try_command(self.log, cmd, level=LOG_DEBUG)
        if output is None:
            return None
        value: str = output.rstrip("\n")
        return None if value == UNSET else value

    def set_property(self, propname: str, value: str, datasets: list[str]) -> None:
        """Sets the given property to the given value on all given datasets, in a single call."""
        cmd: list[str] = [self.zfs_program, "set", f"{propname}={value}"] + datasets
        run_command(self.log, cmd, level=LOG_DEBUG, is_dry=self.dry_run, print_stdout=True)

    def inherit_property(self, propname: str, datasets: list[str]) -> None:
        """Clears the given property on all given datasets such that they inherit it from their parent again."""
        cmd: list[str] = [self.zfs_program, "inherit", propname] + datasets
        run_command(self.log, cmd, level=LOG_DEBUG, is_dry=self.dry_run, print_stdout=True)

    def create_snapshots(self, properties: dict[str, str], snapshots: list[str]) -> None:
        """Atomically creates all given 'dataset@tag' snapshots, each with the given properties attached."""
        cmd: list[str] = [self.zfs_program, "snapshot"]
        for propname, value in properties.items():
            cmd += ["-o", f"{propname}={value}"]
        cmd += snapshots
        run_command(self.log, cmd, level=LOG_DEBUG, is_dry=self.dry_run, print_stdout=True)

    def destroy_snapshots(self, dataset: str, tags: list[str]) -> None:
        """Destroys the given snapshots of one dataset in a single call, e.g. 'zfs destroy tank/foo@s1,s2,s3'."""
        assert len(tags) > 0
        cmd: list[str] = [self.zfs_program, "destroy", dataset + "@" + ",".join(tags)]
        run_command(self.log, cmd, level=LOG_DEBUG, is_dry=self.dry_run, print_stdout=True)
