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
"""
* The codebase starts with docs, definition of input data and associated argument parsing in argparse_cli.py, which feeds
  into the "Params" class of configuration.py.
* Control flow starts in main(), far below ..., which kicks off a "Job".
* A Job acquires the run lock, then runs exactly one command via run_command(), e.g. create, expire, clean or auto.
* Each command lists the selected datasets and their snapshots once via 'zfs list' into an in-memory registry
  (datasets.py), lets the RetentionEngine (retention.py) decide what to create or destroy, and then applies the decisions
  via a CommitQueue (commit.py) in as few 'zfs snapshot' and 'zfs destroy' calls as possible.
* The policy grammar is in policy.py, and all ZFS CLI calls go through the PropertyStore in property_store.py.
"""

from __future__ import (
    annotations,
)
import argparse
import fcntl
import os
import shutil
import subprocess
import sys
import time
from logging import (
    Logger,
)
from pathlib import (
    Path,
)
from typing import (
    Iterable,
)

from zautosnap_main.argparse_cli import (
    INHERIT,
    argument_parser,
)
from zautosnap_main.commit import (
    CommitQueue,
    SnapshotCreate,
    SnapshotDestroy,
)
from zautosnap_main.configuration import (
    LogParams,
    Params,
)
from zautosnap_main.datasets import (
    AUTO_PROP,
    FILESYSTEM,
    POLICY_PROP,
    Dataset,
    auto_snapshots,
    build_registry,
)
from zautosnap_main.errors import (
    AlreadyRunningError,
    MissingProgramError,
    PolicyParseError,
)
from zautosnap_main.loggers import (
    get_logger,
    get_simple_logger,
    reset_logger,
)
from zautosnap_main.policy import (
    Policy,
    PolicyCache,
    format_policy,
    parse_policy,
)
from zautosnap_main.property_store import (
    PropertyStore,
)
from zautosnap_main.retention import (
    RetentionEngine,
)
from zautosnap_main.utils import (
    BAD_CONFIG_STATUS,
    DIE_STATUS,
    FILE_PERMISSIONS,
    LOG_TRACE,
    MISSING_PROGRAM_STATUS,
    PROG_NAME,
    STILL_RUNNING_STATUS,
    UNSET,
    die,
    human_readable_bytes,
    human_readable_duration,
    isotime_from_unixtime,
    xfinally,
    xprint,
)


#############################################################################
def main() -> None:
    """API for command line clients."""
    try:
        run_main(argument_parser().parse_args(), sys.argv)
    except subprocess.CalledProcessError as e:
        sys.exit(e.returncode)


def run_main(args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
    """API for Python clients; visible for testing; may become a public API eventually."""
    Job().run_main(args, sys_argv, log)


#############################################################################
class Job:
    """Executes one zautosnap run, i.e. one command against the selected datasets."""

    def __init__(self, store: PropertyStore | None = None) -> None:
        self.params: Params
        self.log: Logger
        self.store: PropertyStore | None = store  # for testing only; created from params if None
        self.engine: RetentionEngine
        self.queue: CommitQueue
        self.policy_cache: PolicyCache = PolicyCache()
        self.num_datasets: int = 0
        self.now: int | None = None  # for testing only; fixed Unix time of the run

    def run_main(self, args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
        """Sets up logging, acquires the run lock and executes the command, mapping failures onto exit status codes."""
        is_own_logger: bool = log is None
        try:
            log_params = LogParams(args)
            log = get_logger(log_params=log_params, log=log)
        except BaseException as e:
            get_simple_logger(PROG_NAME).error("Log init: %s", e, exc_info=False if isinstance(e, SystemExit) else True)
            raise
        self.log = log

        def cleanup_logger() -> None:
            if is_own_logger:
                reset_logger(log)

        # runs cleanup_logger() on exit, without masking exception raised in body of `with` block
        with xfinally(cleanup_logger):

            def log_error_on_exit(error: object, status_code: object, exc_info: bool = False) -> None:
                log.error("%s%s", f"Exiting {PROG_NAME} with status code {status_code}. Cause: ", error, exc_info=exc_info)

            try:
                log.info("CLI arguments: %s %s", " ".join(sys_argv or []), f"[euid: {os.geteuid()}]")
                log.log(LOG_TRACE, "Parsed CLI arguments: %s", args)
                self.params = p = Params(args, log)
                if self.store is None:
                    if shutil.which(p.zfs_program) is None:
                        raise MissingProgramError(p.zfs_program)
                    self.store = PropertyStore(log, p.zfs_program, namespace=p.namespace, dry_run=p.dry_run)
                lock_file: str = p.lock_file_name()
                lock_fd = os.open(lock_file, os.O_WRONLY | os.O_TRUNC | os.O_CREAT | os.O_NOFOLLOW, FILE_PERMISSIONS)
                with xfinally(lambda: os.close(lock_fd)):
                    try:
                        # Acquire an exclusive lock; will raise an error if lock is already held by another process.
                        # The (advisory) lock is auto-released when the process terminates or the fd is closed.
                        fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)  # LOCK_NB ... non-blocking
                    except BlockingIOError as e:
                        raise AlreadyRunningError(lock_file) from e
                    with xfinally(lambda: Path(lock_file).unlink(missing_ok=True)):  # don't accumulate stale files
                        self.run_command()
            except subprocess.CalledProcessError as e:
                log_error_on_exit(e, e.returncode)
                raise
            except SystemExit as e:
                log_error_on_exit(e, e.code)
                raise
            except PolicyParseError as e:
                log_error_on_exit(e, BAD_CONFIG_STATUS)
                raise SystemExit(BAD_CONFIG_STATUS) from e
            except MissingProgramError as e:
                log_error_on_exit(e, MISSING_PROGRAM_STATUS)
                raise SystemExit(MISSING_PROGRAM_STATUS) from e
            except AlreadyRunningError as e:
                log_error_on_exit(e, STILL_RUNNING_STATUS)
                raise SystemExit(STILL_RUNNING_STATUS) from e
            except BaseException as e:
                log_error_on_exit(e, DIE_STATUS, exc_info=True)
                raise SystemExit(DIE_STATUS) from e
            log.info("Success. Goodbye!")
            sys.stderr.flush()

    def run_command(self) -> None:
        """Dispatches to the method that implements the command, and logs a summary."""
        p, log = self.params, self.log
        assert self.store is not None
        start_time_nanos: int = time.monotonic_ns()
        self.policy_cache.reset()
        self.engine = RetentionEngine(
            p.namespace, p.default_policy, log, policy_cache=self.policy_cache, expires_in_secs=p.expires_in_secs
        )
        self.queue = CommitQueue(self.store, log, max_workers=p.threads)
        commands = {
            "create": self.create,
            "expire": self.expire,
            "clean": self.clean,
            "auto": self.auto,
            "list": self.list_snapshots,
            "policy": self.policy,
            "enable": lambda: self.set_auto(True),
            "disable": lambda: self.set_auto(False),
            "nuke": self.nuke,
        }
        commands[p.command]()
        elapsed: str = human_readable_duration(time.monotonic_ns() - start_time_nanos)
        log.info(
            self.store.dry("%s"),
            f"{p.command}: Examined {self.num_datasets} datasets, created {self.queue.num_created} snapshots and destroyed "
            f"{self.queue.num_destroyed} snapshots in {elapsed}.",
        )
        if len(self.engine.invalid_policy_datasets) > 0:
            names: list[str] = sorted(self.engine.invalid_policy_datasets)
            die(f"Skipped {len(names)} datasets with an invalid policy: {names}", BAD_CONFIG_STATUS)

    def current_time(self) -> int:
        return self.now if self.now is not None else int(time.time())

    def load_registry(self) -> dict[str, Dataset]:
        """Lists the selected datasets plus their snapshots via a single 'zfs list' call."""
        assert self.store is not None
        registry: dict[str, Dataset] = build_registry(self.store.list_datasets(self.params.datasets), self.log)
        self.num_datasets = len(registry)
        return registry

    def commit(self, creates: Iterable[SnapshotCreate] = (), destroys: Iterable[SnapshotDestroy] = ()) -> None:
        for create in creates:
            self.queue.add_create(create)
        for destroy in destroys:
            self.queue.add_destroy(destroy)
        self.queue.commit()

    def create(self, now: int | None = None) -> None:
        """Takes at most one new snapshot per auto-enabled dataset, serving all rules that are due."""
        now = self.current_time() if now is None else now
        self.commit(creates=self.engine.plan_creates(self.load_registry().values(), now))

    def expire(self, now: int | None = None) -> None:
        """Destroys the automatic snapshots that the current policy no longer retains."""
        now = self.current_time() if now is None else now
        self.commit(destroys=self.engine.plan_expirations(self.load_registry().values(), now))

    def clean(self) -> None:
        """Destroys empty automatic snapshots that a more recent equivalent snapshot makes redundant."""
        self.commit(destroys=self.engine.plan_cleanup(self.load_registry().values()))

    def auto(self) -> None:
        """Runs create, expire and clean in this order; each step sees the effects of the previous steps."""
        now: int = self.current_time()
        self.create(now)
        self.expire(now)
        self.clean()

    def nuke(self) -> None:
        """Destroys all automatic snapshots of the selected datasets, regardless of policy."""
        self.commit(destroys=self.engine.plan_nuke(self.load_registry().values()))

    def list_snapshots(self) -> None:
        """Prints each selected dataset with its settings, followed by its automatic snapshots."""
        assert self.store is not None
        log = self.log
        for dataset in sorted(self.load_registry().values(), key=lambda ds: ds.name):
            policy: Policy | None = self.engine.policy(dataset)
            written: str | None = self.store.get_property("written", dataset.name)
            written_str: str = human_readable_bytes(int(written)) if written is not None and written.isdigit() else UNSET
            xprint(
                log,
                f"{dataset.name}\t{dataset.kind}\tauto={'on' if dataset.auto_enabled else 'off'}\t"
                f"policy={format_policy(policy) if policy is not None else 'invalid'}\twritten={written_str}",
                file=sys.stdout,
            )
            for snapshot in auto_snapshots(dataset):
                assert snapshot.created_at is not None
                expires: str = UNSET if snapshot.expires_at is None else isotime_from_unixtime(snapshot.expires_at)
                periods: str = " ".join(human_readable_duration(secs, unit="s") for secs in sorted(snapshot.policy_seconds))
                xprint(
                    log,
                    f"  @{snapshot.tag}\tcreated={isotime_from_unixtime(snapshot.created_at)}\texpires={expires}\t"
                    f"policies={periods or UNSET}\tused={human_readable_bytes(snapshot.used_bytes)}",
                    file=sys.stdout,
                )

    def policy(self) -> None:
        """Prints, validates, sets or clears policies, depending on the given arguments."""
        p, store = self.params, self.store
        assert store is not None
        spec: str | None = p.policy_spec
        if spec is None:
            for dataset in sorted(self.load_registry().values(), key=lambda ds: ds.name):
                policy: Policy | None = self.engine.policy(dataset)
                source: str = "default" if dataset.policy_override is None else "property"
                normalized: str = (
                    format_policy(policy) if policy is not None else f"invalid: {self.engine.policy_spec(dataset)}"
                )
                xprint(self.log, f"{dataset.name}\t{source}\t{normalized}", file=sys.stdout)
        elif spec == INHERIT:
            store.inherit_property(store.prop(POLICY_PROP), p.datasets)
        else:
            normalized = format_policy(parse_policy(spec))
            if len(p.datasets) == 0:
                xprint(self.log, normalized, file=sys.stdout)
            else:
                store.set_property(store.prop(POLICY_PROP), normalized, p.datasets)

    def set_auto(self, enabled: bool) -> None:
        """Turns automatic snapshots on or off for the selected datasets, or for all pool roots if none are selected."""
        store = self.store
        assert store is not None
        datasets: list[str] = self.params.datasets
        if len(datasets) == 0:
            records = store.list_datasets(kinds=(FILESYSTEM,))
            datasets = sorted(name for name in build_registry(records, self.log) if "/" not in name)
        if len(datasets) > 0:
            store.set_property(store.prop(AUTO_PROP), "true" if enabled else "false", datasets)
        self.num_datasets = len(datasets)


#############################################################################
if __name__ == "__main__":
    main()
