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
"""Parses snapshot retention policies such as ``"4 * 15 minutes; 24 hourly; 7 daily"`` into ordered lists of rules.

Each rule says how far apart automatic snapshots are spaced (``seconds``) and how many of those periods are retained
(``count``). Two grammars are accepted per rule:

- ``[count] [*] <period>``, e.g. ``"4 hourly"``, ``"hourly"``, ``"3 * week"``; spacing is one period.
- ``<count> * <multiplier> <period>``, e.g. ``"5 * 6 week"`` or ``"8 * 1.5 hours"``; spacing is
  multiplier * period seconds, rounded half up to a whole second.

Rules are separated by ``;`` or ``,``. Period names are case-insensitive and accept common synonyms. Parsing is pure and
does no I/O.
"""

from __future__ import (
    annotations,
)
import re
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Final,
    Tuple,
)

from zautosnap_main.errors import (
    PolicyParseError,
)

# constants:
MIN_RULE_SECONDS: Final[int] = 60
UNIT_SECONDS: Final[dict[str, int]] = {
    "second": 1,
    "minute": 60,
    "hour": 60 * 60,
    "day": 86400,
    "week": 7 * 86400,
    "fortnight": 14 * 86400,
    "month": 31 * 86400,
    "year": 365 * 86400,
}
UNIT_ADJECTIVES: Final[dict[str, str]] = {
    "second": "secondly",
    "minute": "minutely",
    "hour": "hourly",
    "day": "daily",
    "week": "weekly",
    "fortnight": "fortnightly",
    "month": "monthly",
    "year": "yearly",
}
PERIOD_SYNONYMS: Final[dict[str, str]] = {
    "s": "second",
    "sec": "second",
    "secs": "second",
    "second": "second",
    "seconds": "second",
    "secondly": "second",
    "m": "minute",
    "min": "minute",
    "mins": "minute",
    "minute": "minute",
    "minutes": "minute",
    "minutely": "minute",
    "h": "hour",
    "hr": "hour",
    "hrs": "hour",
    "hour": "hour",
    "hours": "hour",
    "hourly": "hour",
    "d": "day",
    "day": "day",
    "days": "day",
    "daily": "day",
    "w": "week",
    "wk": "week",
    "wks": "week",
    "week": "week",
    "weeks": "week",
    "weekly": "week",
    "fortnight": "fortnight",
    "fortnights": "fortnight",
    "fortnightly": "fortnight",
    "mon": "month",
    "month": "month",
    "months": "month",
    "monthly": "month",
    "y": "year",
    "yr": "year",
    "yrs": "year",
    "year": "year",
    "years": "year",
    "yearly": "year",
    "annually": "year",
}
_COUNT_TIMES_PERIOD_REGEX: Final[re.Pattern[str]] = re.compile(r"(?:(\d+)\s*)?(?:\*\s*)?([a-z]+)")
_COUNT_TIMES_MULTIPLE_REGEX: Final[re.Pattern[str]] = re.compile(r"(\d+)\s*\*\s*(\d+(?:\.\d*)?|\.\d+)\s*([a-z]+)")
_RULE_SEPARATOR_REGEX: Final[re.Pattern[str]] = re.compile(r"[;,]")


#############################################################################
@dataclass(frozen=True)
class PolicyRule:
    """Take a snapshot every ``seconds`` and retain snapshots for ``count`` such periods; ``raw`` is the source text."""

    seconds: int
    count: int
    raw: str = field(default="", compare=False)


Policy = Tuple[PolicyRule, ...]  # Type alias


def parse_policy(spec: str) -> Policy:
    """Parses a policy spec into an ordered tuple of rules; raises PolicyParseError on malformed or out-of-range input."""
    rules: list[PolicyRule] = []
    seen_seconds: dict[int, str] = {}
    for raw in _RULE_SEPARATOR_REGEX.split(spec):
        raw = " ".join(raw.split())  # normalize whitespace
        if not raw:
            continue
        rule: PolicyRule = parse_rule(raw)
        if rule.seconds in seen_seconds:
            raise PolicyParseError(
                f"Policy rule '{raw}' has the same period length ({rule.seconds}s) as rule '{seen_seconds[rule.seconds]}' "
                f"within policy: '{spec}'"
            )
        seen_seconds[rule.seconds] = raw
        rules.append(rule)
    if len(rules) == 0:
        raise PolicyParseError(f"Policy must contain at least one rule: '{spec}'")
    return tuple(rules)


def parse_rule(raw: str) -> PolicyRule:
    """Parses a single rule such as '24 hourly' or '4 * 15 minutes'."""
    text: str = raw.strip().lower()
    multiplier: float = 1
    if match := _COUNT_TIMES_MULTIPLE_REGEX.fullmatch(text):
        count_str, multiplier_str, period = match.groups()
        multiplier = float(multiplier_str)
    elif match := _COUNT_TIMES_PERIOD_REGEX.fullmatch(text):
        count_str, period = match.groups()
    else:
        raise PolicyParseError(f"Invalid policy rule: '{raw}'. Expected '[count] [*] <period>' or '<count> * <n> <period>'")
    unit: str | None = PERIOD_SYNONYMS.get(period)
    if unit is None:
        raise PolicyParseError(f"Unknown period '{period}' in policy rule: '{raw}'")
    count: int = int(count_str) if count_str else 1
    if count < 1:
        raise PolicyParseError(f"Policy rule must retain at least one snapshot: '{raw}'")
    seconds: int = int(multiplier * UNIT_SECONDS[unit] + 0.5)  # round half up
    if seconds < MIN_RULE_SECONDS:
        raise PolicyParseError(f"Policy rule period must be at least {MIN_RULE_SECONDS} seconds but got {seconds}s: '{raw}'")
    return PolicyRule(seconds=seconds, count=count, raw=raw)


def cutoff(rule: PolicyRule, now: int) -> int:
    """Returns the oldest creation time (in Unix epoch seconds) that ``rule`` still retains at time ``now``."""
    return now - rule.seconds * rule.count


def format_rule(rule: PolicyRule) -> str:
    """Renders the rule in normalized form, e.g. '4 hourly' or '5 * 6 week'; parses back to the same seconds and count."""
    for unit, unit_secs in sorted(UNIT_SECONDS.items(), key=lambda kv: kv[1], reverse=True):
        if rule.seconds % unit_secs == 0:
            multiple: int = rule.seconds // unit_secs
            if multiple == 1:
                return f"{rule.count} {UNIT_ADJECTIVES[unit]}"
            return f"{rule.count} * {multiple} {unit}"
    raise AssertionError("unreachable")  # every integer is a multiple of UNIT_SECONDS['second']


def format_policy(policy: Policy) -> str:
    """Renders all rules of the policy in normalized form, separated by '; '."""
    return "; ".join(format_rule(rule) for rule in policy)


#############################################################################
class PolicyCache:
    """Memoizes parsed policies per distinct spec string; not thread-safe, the decision phase is single-threaded."""

    def __init__(self) -> None:
        self._policies: dict[str, Policy] = {}

    def get(self, spec: str) -> Policy:
        """Returns the parsed policy for ``spec``; raises PolicyParseError (which is never cached) on invalid input."""
        policy: Policy | None = self._policies.get(spec)
        if policy is None:
            policy = parse_policy(spec)
            self._policies[spec] = policy
        return policy

    def reset(self) -> None:
        """Forgets all memoized policies."""
        self._policies.clear()

    def __len__(self) -> int:
        return len(self._policies)
