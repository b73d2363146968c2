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
"""Unit tests for the snapshot policy grammar, its normalized rendering and the policy cache."""

from __future__ import (
    annotations,
)
import unittest

from zautosnap_main.argparse_cli import (
    DEFAULT_POLICY,
)
from zautosnap_main.errors import (
    PolicyParseError,
)
from zautosnap_main.policy import (
    PolicyCache,
    PolicyRule,
    cutoff,
    format_policy,
    format_rule,
    parse_policy,
    parse_rule,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestParsePolicy,
        TestFormatPolicy,
        TestPolicyCache,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def pairs(spec: str) -> list[tuple[int, int]]:
    return [(rule.seconds, rule.count) for rule in parse_policy(spec)]


#############################################################################
class TestParsePolicy(unittest.TestCase):

    def test_count_times_period(self) -> None:
        self.assertEqual([(3600, 4)], pairs("4 hourly"))
        self.assertEqual([(3600, 1)], pairs("hourly"))
        self.assertEqual([(604800, 3)], pairs("3 * week"))
        self.assertEqual([(604800, 3)], pairs("3*weeks"))
        self.assertEqual([(2678400, 12)], pairs("12 monthly"))
        self.assertEqual([(31536000, 2)], pairs("2 yearly"))
        self.assertEqual([(1209600, 1)], pairs("fortnightly"))

    def test_count_times_multiple_period(self) -> None:
        self.assertEqual([(3628800, 5)], pairs("5 * 6 week"))
        self.assertEqual([(900, 4)], pairs("4 * 15 minutes"))
        self.assertEqual([(5400, 8)], pairs("8 * 1.5 hours"))
        self.assertEqual([(90, 2)], pairs("2 * 1.5 min"))

    def test_fractional_spacing_rounds_half_up(self) -> None:
        self.assertEqual([(61, 1)], pairs("1 * 60.5 seconds"))
        self.assertEqual([(63, 1)], pairs("1 * 62.5 seconds"))
        self.assertEqual([(60, 1)], pairs("1 * 60.4 seconds"))

    def test_period_names_are_case_insensitive(self) -> None:
        self.assertEqual([(86400, 7)], pairs("7 DAILY"))
        self.assertEqual([(86400, 7)], pairs("7 Days"))

    def test_multiple_rules_keep_their_order(self) -> None:
        self.assertEqual([(900, 4), (3600, 24), (86400, 7)], pairs("4 * 15 minutes; 24 hourly, 7 daily"))
        self.assertEqual([(86400, 7), (3600, 24)], pairs("7 daily; 24 hourly;"))

    def test_raw_text_is_kept_but_ignored_by_equality(self) -> None:
        rule: PolicyRule = parse_policy(" 24   hourly ")[0]
        self.assertEqual("24 hourly", rule.raw)
        self.assertEqual(rule, parse_rule("24 hourly"))
        self.assertEqual(PolicyRule(seconds=3600, count=24), rule)

    def test_default_policy_is_valid(self) -> None:
        self.assertEqual([(900, 4), (3600, 24), (86400, 7), (604800, 4), (2678400, 12)], pairs(DEFAULT_POLICY))

    def test_duplicate_period_is_rejected(self) -> None:
        with self.assertRaises(PolicyParseError):
            parse_policy("1 minutely; 1 minutely")
        with self.assertRaises(PolicyParseError):
            parse_policy("24 hourly; 2 * 60 minutes")

    def test_period_below_one_minute_is_rejected(self) -> None:
        with self.assertRaises(PolicyParseError):
            parse_policy("30 seconds")
        with self.assertRaises(PolicyParseError):
            parse_policy("4 * 0.5 minutes")
        self.assertEqual([(60, 1)], pairs("1 * 60 seconds"))

    def test_malformed_rules_are_rejected(self) -> None:
        for spec in ["", " ; ", "4 fortnights daily", "0 daily", "4 * * daily", "-1 daily", "4 lightyears", "4 * daily *"]:
            with self.subTest(spec=spec):
                with self.assertRaises(PolicyParseError):
                    parse_policy(spec)

    def test_parse_error_is_a_value_error(self) -> None:
        with self.assertRaises(ValueError):
            parse_policy("bogus")

    def test_cutoff(self) -> None:
        rule = PolicyRule(seconds=3600, count=24)
        self.assertEqual(1_000_000 - 24 * 3600, cutoff(rule, 1_000_000))
        self.assertEqual(2_000_000 - 24 * 3600, cutoff(rule, 2_000_000))


#############################################################################
class TestFormatPolicy(unittest.TestCase):

    def test_format_rule(self) -> None:
        self.assertEqual("4 hourly", format_rule(PolicyRule(3600, 4)))
        self.assertEqual("4 * 15 minute", format_rule(PolicyRule(900, 4)))
        self.assertEqual("5 * 3 fortnight", format_rule(PolicyRule(3628800, 5)))  # largest unit that divides evenly
        self.assertEqual("2 * 3 week", format_rule(PolicyRule(3 * 604800, 2)))
        self.assertEqual("2 * 90 second", format_rule(PolicyRule(90, 2)))
        self.assertEqual("1 fortnightly", format_rule(PolicyRule(1209600, 1)))

    def test_round_trip(self) -> None:
        for spec in ["4 hourly", "5 * 6 week", "8 * 1.5 hours", "2 * 1.5 min", "3 * 36 hours", "1 yearly", "12 monthly"]:
            with self.subTest(spec=spec):
                rules = parse_policy(spec)
                self.assertEqual(rules, parse_policy(format_policy(rules)))

    def test_format_policy(self) -> None:
        self.assertEqual("4 * 15 minute; 24 hourly; 7 daily", format_policy(parse_policy("4*15 mins, 24 hrs; 7 d")))


#############################################################################
class TestPolicyCache(unittest.TestCase):

    def test_memoizes_per_spec_string(self) -> None:
        cache = PolicyCache()
        first = cache.get("24 hourly")
        self.assertIs(first, cache.get("24 hourly"))
        self.assertEqual(1, len(cache))
        cache.get("24 hours")
        self.assertEqual(2, len(cache))

    def test_reset(self) -> None:
        cache = PolicyCache()
        first = cache.get("24 hourly")
        cache.reset()
        self.assertEqual(0, len(cache))
        second = cache.get("24 hourly")
        self.assertIsNot(first, second)
        self.assertEqual(first, second)

    def test_parse_errors_are_not_cached(self) -> None:
        cache = PolicyCache()
        for _ in range(2):
            with self.assertRaises(PolicyParseError):
                cache.get("30 seconds")
        self.assertEqual(0, len(cache))
