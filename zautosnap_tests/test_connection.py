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
"""Unit tests for executing CLI commands and mapping their failures onto exception types."""

from __future__ import (
    annotations,
)
import errno
import subprocess
import unittest
from unittest.mock import (
    MagicMock,
    patch,
)

from zautosnap_main.connection import (
    run_command,
    try_command,
)
from zautosnap_main.errors import (
    ArgumentListTooLongError,
    MissingProgramError,
    is_argument_list_too_long,
)
from zautosnap_tests.tools import (
    quiet_logger,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestRunCommand,
        TestTryCommand,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def completed(stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=["zfs"], returncode=0, stdout=stdout, stderr=stderr)


#############################################################################
class TestRunCommand(unittest.TestCase):

    def setUp(self) -> None:
        self.log = quiet_logger()

    @patch("zautosnap_main.connection.subprocess.run")
    def test_returns_stdout(self, mock_run: MagicMock) -> None:
        mock_run.return_value = completed(stdout="tank\n")
        self.assertEqual("tank\n", run_command(self.log, ["zfs", "list"]))
        args, kwargs = mock_run.call_args
        self.assertEqual(["zfs", "list"], args[0])
        self.assertTrue(kwargs["text"])
        self.assertTrue(kwargs["check"])

    @patch("zautosnap_main.connection.subprocess.run")
    def test_dry_run_executes_nothing(self, mock_run: MagicMock) -> None:
        with self.assertLogs(self.log, level="INFO") as cm:
            self.assertEqual("", run_command(self.log, ["zfs", "destroy", "tank@a b"], is_dry=True))
        mock_run.assert_not_called()
        self.assertIn("Would execute: zfs destroy 'tank@a b'", cm.output[0])

    @patch("zautosnap_main.connection.subprocess.run")
    def test_command_is_echoed_at_given_level(self, mock_run: MagicMock) -> None:
        mock_run.return_value = completed()
        with self.assertLogs(self.log, level="DEBUG") as cm:
            run_command(self.log, ["zfs", "snapshot", "tank@a"], level=10)
        self.assertIn("Executing: zfs snapshot tank@a", cm.output[0])

    @patch("zautosnap_main.connection.subprocess.run")
    def test_failure_carries_exit_status(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = subprocess.CalledProcessError(2, ["zfs"], output="", stderr="cannot open 'x': bad")
        with self.assertRaises(subprocess.CalledProcessError) as cm:
            run_command(self.log, ["zfs", "destroy", "x@y"])
        self.assertNotIsInstance(cm.exception, ArgumentListTooLongError)
        self.assertEqual(2, cm.exception.returncode)

    @patch("zautosnap_main.connection.subprocess.run")
    def test_too_many_arguments_diagnostic(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = subprocess.CalledProcessError(1, ["zfs"], output="", stderr="zfs: Too many arguments\n")
        with self.assertRaises(ArgumentListTooLongError) as cm:
            run_command(self.log, ["zfs", "destroy", "x@y"])
        self.assertEqual(1, cm.exception.returncode)
        self.assertIsInstance(cm.exception, subprocess.CalledProcessError)

    @patch("zautosnap_main.connection.subprocess.run")
    def test_e2big_on_exec(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = OSError(errno.E2BIG, "Argument list too long")
        with self.assertRaises(ArgumentListTooLongError):
            run_command(self.log, ["zfs", "destroy", "x@y"])

    @patch("zautosnap_main.connection.subprocess.run")
    def test_other_os_errors_propagate(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = PermissionError(errno.EACCES, "Permission denied")
        with self.assertRaises(PermissionError):
            run_command(self.log, ["zfs", "list"])

    def test_missing_program(self) -> None:
        with self.assertRaises(MissingProgramError) as cm:
            run_command(self.log, ["zautosnap-nonexistent-program-xyz", "list"])
        self.assertEqual("zautosnap-nonexistent-program-xyz", cm.exception.program)

    def test_is_argument_list_too_long(self) -> None:
        self.assertTrue(is_argument_list_too_long("/sbin/zfs: Argument list too long"))
        self.assertTrue(is_argument_list_too_long("too many arguments"))
        self.assertFalse(is_argument_list_too_long("dataset is busy"))


#############################################################################
class TestTryCommand(unittest.TestCase):

    def setUp(self) -> None:
        self.log = quiet_logger()

    @patch("zautosnap_main.connection.subprocess.run")
    def test_missing_dataset_returns_none(self, mock_run: MagicMock) -> None:
        for stderr in ["cannot open 'tank/x': dataset does not exist", "cannot open 'pool': no such pool"]:
            mock_run.side_effect = subprocess.CalledProcessError(1, ["zfs"], output="", stderr=stderr)
            self.assertIsNone(try_command(self.log, ["zfs", "get", "written", "tank/x"]))

    @patch("zautosnap_main.connection.subprocess.run")
    def test_other_failures_propagate(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = subprocess.CalledProcessError(1, ["zfs"], output="", stderr="permission denied")
        with self.assertLogs(self.log, level="WARNING"):
            with self.assertRaises(subprocess.CalledProcessError):
                try_command(self.log, ["zfs", "get", "written", "tank/x"])

    @patch("zautosnap_main.connection.subprocess.run")
    def test_success(self, mock_run: MagicMock) -> None:
        mock_run.return_value = completed(stdout="4096\n")
        self.assertEqual("4096\n", try_command(self.log, ["zfs", "get", "written", "tank"]))
