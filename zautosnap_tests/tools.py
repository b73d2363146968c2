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
"""Various small tools for use in tests; Everything in this module relies only on the Python standard library so other
modules remain dependency free."""

from __future__ import (
    annotations,
)
import contextlib
import inspect
import io
import logging
import types
import unittest
from collections.abc import (
    Iterator,
)
from typing import (
    Callable,
)


@contextlib.contextmanager
def suppress_output() -> Iterator[None]:
    """Silence stdout/stderr and temporarily disable logging to keep test output clean."""
    with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
        old_disable = logging.root.manager.disable
        try:
            logging.disable(logging.CRITICAL)
            yield
        finally:
            logging.disable(old_disable)


def quiet_logger(name: str = "zautosnap_tests") -> logging.Logger:
    """Returns a logger that is not registered with the logging.Logger.manager and swallows all output; tests that need
    to inspect log records use self.assertLogs() on it instead."""
    log = logging.Logger(name)  # noqa: LOG001 do not register logger with Logger.manager to avoid memory leak
    log.setLevel(logging.DEBUG)
    log.addHandler(logging.NullHandler())
    log.propagate = False
    return log


#############################################################################
class TestSuiteCompleteness(unittest.TestCase):
    """Fails if a test module defines a test class that its suite() forgets to include, as test_all.py would silently
    skip such a class."""

    def __init__(
        self,
        method_name: str = "runTest",
        modules: list[types.ModuleType] | None = None,
        class_predicate: Callable[[type[unittest.TestCase]], bool] | None = None,
    ) -> None:
        super().__init__(method_name)
        self.modules: list[types.ModuleType] = modules or []
        self.class_predicate: Callable[[type[unittest.TestCase]], bool] = class_predicate or (lambda _cls: False)

    def test_all_modules_have_a_complete_suite(self) -> None:
        failures: list[str] = []
        for module in self.modules:
            defined: set[str] = {
                cls.__name__
                for _, cls in inspect.getmembers(module, inspect.isclass)
                if issubclass(cls, unittest.TestCase) and cls.__module__ == module.__name__ and self.class_predicate(cls)
            }
            missing: list[str] = sorted(defined.difference(_test_class_names(module.suite())))
            if missing:
                failures.append(f"- {module.__name__}: missing from suite(): {', '.join(missing)}")
        if failures:
            self.fail("Found test classes not included in their module suite():\n" + "\n".join(failures))


def _test_class_names(suite: unittest.TestSuite) -> set[str]:
    """Returns the class names of all test cases within ``suite``, including nested suites."""
    names: set[str] = set()
    for test in suite:
        if isinstance(test, unittest.TestSuite):
            names |= _test_class_names(test)
        else:
            names.add(type(test).__name__)
    return names
