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
"""Unit tests for CLI argument parsing and the validated Params bundle."""

from __future__ import (
    annotations,
)
import os
import tempfile
import unittest
from unittest.mock import (
    patch,
)

from zautosnap_main.argparse_cli import (
    DEFAULT_POLICY,
    argument_parser,
)
from zautosnap_main.configuration import (
    Params,
)
from zautosnap_main.utils import (
    BAD_CONFIG_STATUS,
)
from zautosnap_tests.tools import (
    quiet_logger,
    suppress_output,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestArgumentParser,
        TestParams,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def make_params(*args: str) -> Params:
    return Params(argument_parser().parse_args(list(args)), quiet_logger())


#############################################################################
class TestArgumentParser(unittest.TestCase):

    def test_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            args = argument_parser().parse_args(["auto"])
        self.assertEqual("auto", args.command)
        self.assertEqual([], args.args)
        self.assertEqual("zautosnap", args.property_namespace)
        self.assertEqual(DEFAULT_POLICY, args.default_policy)
        self.assertEqual("zfs", args.zfs_program)
        self.assertEqual(8, args.threads)
        self.assertFalse(args.dryrun)
        self.assertIsNone(args.expires_in)

    def test_environment_overrides_defaults(self) -> None:
        with patch.dict(os.environ, {"zautosnap_default_policy": "24 hourly", "zautosnap_threads": "2"}):
            args = argument_parser().parse_args(["auto"])
        self.assertEqual("24 hourly", args.default_policy)
        self.assertEqual(2, args.threads)

    def test_short_flags(self) -> None:
        args = argument_parser().parse_args(["create", "-n", "-v", "-v", "tank/a"])
        self.assertTrue(args.dryrun)
        self.assertEqual(2, args.verbose)
        self.assertEqual(["tank/a"], args.args)

    def test_invalid_arguments(self) -> None:
        for argv in [["frobnicate"], [], ["auto", "--threads=0"], ["auto", "--property-namespace= "]]:
            with self.subTest(argv=argv):
                with suppress_output(), self.assertRaises(SystemExit) as cm:
                    argument_parser().parse_args(argv)
                self.assertEqual(2, cm.exception.code)


#############################################################################
class TestParams(unittest.TestCase):

    def test_basic(self) -> None:
        p = make_params("create", "--expires-in=2 days", "--threads=3", "-n", "tank/a", "pool2")
        self.assertEqual("create", p.command)
        self.assertEqual(["tank/a", "pool2"], p.datasets)
        self.assertEqual(2 * 86400, p.expires_in_secs)
        self.assertEqual(3, p.threads)
        self.assertTrue(p.dry_run)
        self.assertIsNone(p.policy_spec)

    def test_overlapping_datasets_are_merged(self) -> None:
        p = make_params("expire", "tank/a/b", "tank/a", "tank/a", "tank/ab")
        self.assertEqual(["tank/a", "tank/ab"], p.datasets)

    def test_policy_arguments(self) -> None:
        self.assertIsNone(make_params("policy").policy_spec)
        p = make_params("policy", "24 hourly; 7 daily", "tank/a")
        self.assertEqual("24 hourly; 7 daily", p.policy_spec)
        self.assertEqual(["tank/a"], p.datasets)
        p = make_params("policy", "inherit", "tank/a")
        self.assertEqual("inherit", p.policy_spec)

    def test_policy_inherit_requires_datasets(self) -> None:
        with self.assertRaises(SystemExit) as cm:
            make_params("policy", "inherit")
        self.assertEqual(BAD_CONFIG_STATUS, cm.exception.code)

    def test_invalid_inputs_exit_with_bad_config_status(self) -> None:
        for argv in [
            ["auto", "--property-namespace=com:example"],
            ["auto", "--property-namespace=com example"],
            ["auto", "--zfs-program=zfs;rm"],
            ["auto", "--zfs-program=../zfs"],
            ["auto", "--default-policy=30 seconds"],
            ["auto", "--expires-in=soon"],
            ["auto", "tank@snap"],
            ["auto", "/tank"],
        ]:
            with self.subTest(argv=argv):
                with self.assertRaises(SystemExit) as cm:
                    make_params(*argv)
                self.assertEqual(BAD_CONFIG_STATUS, cm.exception.code)

    def test_lock_file_name(self) -> None:
        p1 = make_params("auto")
        self.assertEqual(tempfile.gettempdir(), os.path.dirname(p1.lock_file_name()))
        self.assertEqual(p1.lock_file_name(), make_params("expire", "tank/a").lock_file_name())
        self.assertNotEqual(p1.lock_file_name(), make_params("auto", "--property-namespace=other").lock_file_name())
        self.assertNotEqual(p1.lock_file_name(), make_params("auto", "--zfs-program=/usr/sbin/zfs").lock_file_name())
