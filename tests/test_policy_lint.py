from __future__ import annotations

from sentinel_broker.policy import Condition, HourRange, Policy, Rule, TimeWindow, parse_policy
from sentinel_broker.policy_lint import (
    LINT_ALLOW_BEFORE_DENY,
    LINT_OVERLAPPING_TIME_WINDOWS,
    LINT_UNREACHABLE_RULE,
    lint_policy,
)


def _types(policy: Policy) -> list[tuple[str, int]]:
    return [(i.type, i.rule_index) for i in lint_policy(policy)]


def test_clean_policy_has_no_findings():
    policy = Policy(
        version="1",
        rules=(
            Rule(name="deny-prod", effect="deny", conditions=Condition(profiles=("production",))),
            Rule(name="allow-dev", effect="allow", conditions=Condition(profiles=("dev",))),
        ),
    )
    assert lint_policy(policy) == []


def test_allow_before_deny_for_shared_profile():
    policy = Policy(
        version="1",
        rules=(
            Rule(name="allow-prod", effect="allow", conditions=Condition(profiles=("production",), users=("alice",))),
            Rule(name="deny-prod", effect="deny", conditions=Condition(profiles=("production", "staging"))),
        ),
    )
    issues = lint_policy(policy)
    assert [(i.type, i.rule_index) for i in issues] == [(LINT_ALLOW_BEFORE_DENY, 0)]
    assert "deny-prod" in issues[0].message
    assert issues[0].to_dict()["ruleName"] == "allow-prod"


def test_wider_earlier_rule_shadows_later_rule():
    policy = Policy(
        version="1",
        rules=(
            Rule(name="all-prod", effect="allow", conditions=Condition(profiles=("production",))),
            Rule(name="alice-prod", effect="allow", conditions=Condition(profiles=("production",), users=("alice",))),
        ),
    )
    assert _types(policy) == [(LINT_UNREACHABLE_RULE, 1)]


def test_narrower_earlier_rule_does_not_shadow():
    policy = Policy(
        version="1",
        rules=(
            Rule(name="alice-prod", effect="allow", conditions=Condition(profiles=("production",), users=("alice",))),
            Rule(name="all-prod", effect="allow", conditions=Condition(profiles=("production",))),
        ),
    )
    assert _types(policy) == []


def test_time_bounded_rule_does_not_shadow_unbounded_rule():
    window = TimeWindow(days=("monday",))
    policy = Policy(
        version="1",
        rules=(
            Rule(name="monday", effect="allow", conditions=Condition(profiles=("dev",), time=window)),
            Rule(name="always", effect="allow", conditions=Condition(profiles=("dev",))),
        ),
    )
    assert _types(policy) == []


def test_overlapping_windows_with_different_effects():
    policy = Policy(
        version="1",
        rules=(
            Rule(
                name="deny-evenings",
                effect="deny",
                conditions=Condition(
                    profiles=("production",),
                    time=TimeWindow(days=("monday", "tuesday"), hours=HourRange("16:00", "23:00")),
                ),
            ),
            Rule(
                name="allow-business",
                effect="allow",
                conditions=Condition(
                    profiles=("production",),
                    time=TimeWindow(days=("tuesday",), hours=HourRange("09:00", "17:00")),
                ),
            ),
        ),
    )
    assert _types(policy) == [(LINT_OVERLAPPING_TIME_WINDOWS, 0)]


def test_disjoint_hours_do_not_overlap():
    policy = Policy(
        version="1",
        rules=(
            Rule(
                name="deny-night",
                effect="deny",
                conditions=Condition(profiles=("production",), time=TimeWindow(hours=HourRange("00:00", "08:00"))),
            ),
            Rule(
                name="allow-day",
                effect="allow",
                conditions=Condition(profiles=("production",), time=TimeWindow(hours=HourRange("08:00", "18:00"))),
            ),
        ),
    )
    assert _types(policy) == []


def test_lint_never_raises_on_malformed_input():
    policy = parse_policy(
        """
version: "9"
rules:
  - name: ""
    effect: bogus
    conditions:
      time:
        hours: {start: "nope", end: "25:99"}
  - name: also-bad
    effect: allow
    conditions:
      time:
        hours: {start: "xx", end: "yy"}
"""
    )
    lint_policy(policy)
    assert lint_policy(None) == []
    assert lint_policy(Policy(version="1")) == []
