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
"""Unit tests for small helper functions shared across zautosnap."""

from __future__ import (
    annotations,
)
import os
import sys
import unittest
from unittest.mock import (
    patch,
)

from zautosnap_main.utils import (
    BAD_CONFIG_STATUS,
    DIE_STATUS,
    LOG_STDERR,
    LOG_STDOUT,
    die,
    dry,
    getenv_any,
    getenv_int,
    group_by,
    human_readable_bytes,
    human_readable_duration,
    human_readable_float,
    is_descendant,
    isotime_from_unixtime,
    list_formatter,
    parse_duration_to_seconds,
    validate_dataset_name,
    xfinally,
    xprint,
)
from zautosnap_tests.tools import (
    quiet_logger,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestHelperFunctions,
        TestXFinally,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestHelperFunctions(unittest.TestCase):

    def test_die(self) -> None:
        with self.assertRaises(SystemExit) as cm:
            die("boom")
        self.assertEqual(DIE_STATUS, cm.exception.code)
        with self.assertRaises(SystemExit) as cm:
            die("bad", BAD_CONFIG_STATUS)
        self.assertEqual(BAD_CONFIG_STATUS, cm.exception.code)

    def test_dry(self) -> None:
        self.assertEqual("Dry Destroying", dry("Destroying", True))
        self.assertEqual("Destroying", dry("Destroying", False))

    def test_getenv(self) -> None:
        with patch.dict(os.environ, {"zautosnap_threads": "3", "zautosnap_foo": "bar"}):
            self.assertEqual(3, getenv_int("threads", 8))
            self.assertEqual("bar", getenv_any("foo"))
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(8, getenv_int("threads", 8))
            self.assertIsNone(getenv_any("foo"))

    def test_is_descendant(self) -> None:
        self.assertTrue(is_descendant("tank/a/b", "tank/a"))
        self.assertTrue(is_descendant("tank/a", "tank/a"))
        self.assertFalse(is_descendant("tank/ab", "tank/a"))
        self.assertFalse(is_descendant("tank", "tank/a"))

    def test_validate_dataset_name(self) -> None:
        validate_dataset_name("tank/home_1.x-y", "input")
        for name in ["", "/tank", "tank/", "tank//a", "tank/../a", "tank@snap", "tank;rm", "1tank", "tank\ta"]:
            with self.subTest(name=name):
                with self.assertRaises(SystemExit) as cm:
                    validate_dataset_name(name, "input")
                self.assertEqual(BAD_CONFIG_STATUS, cm.exception.code)

    def test_parse_duration_to_seconds(self) -> None:
        self.assertEqual(90 * 60, parse_duration_to_seconds("90mins"))
        self.assertEqual(2 * 3600, parse_duration_to_seconds("2 hours"))
        self.assertEqual(30 * 86400, parse_duration_to_seconds(" 30 days "))
        self.assertEqual(31 * 86400, parse_duration_to_seconds("1 months"))
        self.assertEqual(7 * 86400, parse_duration_to_seconds("1 week"))
        self.assertEqual(45, parse_duration_to_seconds("45 secs"))
        with self.assertRaises(ValueError):
            parse_duration_to_seconds("2 fortnights")
        with self.assertRaises(SystemExit) as cm:
            parse_duration_to_seconds("soon", context="--expires-in")
        self.assertEqual(BAD_CONFIG_STATUS, cm.exception.code)

    def test_isotime_from_unixtime(self) -> None:
        self.assertEqual("2023-11-14 22:13:20+00:00", isotime_from_unixtime(1_700_000_000))

    def test_human_readable(self) -> None:
        self.assertEqual("0 B", human_readable_bytes(0))
        self.assertEqual("1.5 KiB", human_readable_bytes(1536))
        self.assertEqual("10 MiB", human_readable_bytes(10 * 1024 * 1024))
        self.assertEqual("15m", human_readable_duration(900, unit="s"))
        self.assertEqual("1d", human_readable_duration(86400, unit="s"))
        self.assertEqual("1h", human_readable_duration(3600, unit="s"))
        self.assertEqual("500ms", human_readable_duration(0.5, unit="s"))
        self.assertEqual("1.5s", human_readable_duration(1_500_000_000))
        self.assertEqual("3.15", human_readable_float(3.14559))
        self.assertEqual("12.4", human_readable_float(12.36))
        self.assertEqual("124", human_readable_float(123.556))

    def test_group_by_preserves_order(self) -> None:
        groups = group_by(["b1", "a1", "b2", "c1", "a2"], key=lambda s: s[0])
        self.assertEqual(["b", "a", "c"], list(groups))
        self.assertEqual(["a1", "a2"], groups["a"])

    def test_list_formatter(self) -> None:
        self.assertEqual("a b c", str(list_formatter(["a", "b", "c"])))
        self.assertEqual("a,b", str(list_formatter(["a", "b"], separator=",")))

    def test_xprint(self) -> None:
        log = quiet_logger()
        with self.assertLogs(log, level=LOG_STDOUT) as cm:
            xprint(log, "out", file=sys.stdout)
            xprint(log, "err", file=sys.stderr)
            xprint(log, "skipped", run=False)
            xprint(log, "")
        self.assertEqual(2, len(cm.records))
        self.assertEqual([LOG_STDOUT, LOG_STDERR], [record.levelno for record in cm.records])


#############################################################################
class TestXFinally(unittest.TestCase):

    def test_cleanup_runs_on_success(self) -> None:
        calls: list[str] = []
        with xfinally(lambda: calls.append("cleanup")):
            calls.append("body")
        self.assertEqual(["body", "cleanup"], calls)

    def test_body_exception_is_not_masked_by_cleanup_exception(self) -> None:
        def cleanup() -> None:
            raise OSError("cleanup failed")

        with self.assertRaises(ValueError) as cm:
            with xfinally(cleanup):
                raise ValueError("body failed")
        self.assertIsInstance(cm.exception.__context__, OSError)

    def test_cleanup_exception_propagates_if_body_succeeds(self) -> None:
        def cleanup() -> None:
            raise OSError("cleanup failed")

        with self.assertRaises(OSError):
            with xfinally(cleanup):
                pass
