from __future__ import annotations

from dataclasses import dataclass

from .policy import (
    EFFECT_ALLOW,
    EFFECT_DENY,
    WILDCARD,
    Policy,
    Rule,
    TimeWindow,
    hour_to_minutes,
)

LINT_ALLOW_BEFORE_DENY = "allow-before-deny"
LINT_UNREACHABLE_RULE = "unreachable-rule"
LINT_OVERLAPPING_TIME_WINDOWS = "overlapping-time-windows"


@dataclass(frozen=True)
class LintIssue:
    type: str
    rule_index: int
    rule_name: str
    message: str

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.type,
            "ruleIndex": self.rule_index,
            "ruleName": self.rule_name,
            "message": self.message,
        }


def lint_policy(policy: Policy | None) -> list[LintIssue]:
    """Advisory checks only. Never raises and never changes evaluation."""
    if policy is None or not policy.rules:
        return []
    rules = list(policy.rules)
    issues: list[LintIssue] = []
    issues.extend(_allow_before_deny(rules))
    issues.extend(_unreachable_rules(rules))
    issues.extend(_overlapping_time_windows(rules))
    return issues


def _allow_before_deny(rules: list[Rule]) -> list[LintIssue]:
    issues: list[LintIssue] = []
    for i, rule in enumerate(rules):
        if rule.effect != EFFECT_ALLOW:
            continue
        for later in rules[i + 1 :]:
            if later.effect != EFFECT_DENY:
                continue
            if _overlap(rule.conditions.profiles, later.conditions.profiles):
                issues.append(
                    LintIssue(
                        type=LINT_ALLOW_BEFORE_DENY,
                        rule_index=i,
                        rule_name=rule.name,
                        message=(
                            f"allow rule '{rule.name}' at index {i} precedes deny rule "
                            f"'{later.name}' for same profiles"
                        ),
                    )
                )
                break
    return issues


def _unreachable_rules(rules: list[Rule]) -> list[LintIssue]:
    issues: list[LintIssue] = []
    for i, rule in enumerate(rules):
        for j in range(i):
            earlier = rules[j]
            if earlier.effect != rule.effect:
                continue
            if _shadows(earlier, rule):
                issues.append(
                    LintIssue(
                        type=LINT_UNREACHABLE_RULE,
                        rule_index=i,
                        rule_name=rule.name,
                        message=(
                            f"rule '{rule.name}' at index {i} is unreachable "
                            f"(shadowed by rule '{earlier.name}' at index {j})"
                        ),
                    )
                )
                break
    return issues


def _overlapping_time_windows(rules: list[Rule]) -> list[LintIssue]:
    issues: list[LintIssue] = []
    for i, rule in enumerate(rules):
        if rule.conditions.time is None:
            continue
        for later in rules[i + 1 :]:
            if later.conditions.time is None or later.effect == rule.effect:
                continue
            if not _overlap(rule.conditions.profiles, later.conditions.profiles):
                continue
            if _windows_overlap(rule.conditions.time, later.conditions.time):
                issues.append(
                    LintIssue(
                        type=LINT_OVERLAPPING_TIME_WINDOWS,
                        rule_index=i,
                        rule_name=rule.name,
                        message=(
                            f"rules '{rule.name}' and '{later.name}' have overlapping "
                            "time windows with different effects"
                        ),
                    )
                )
    return issues


def _is_wildcard(values: tuple[str, ...]) -> bool:
    return not values or WILDCARD in values


def _overlap(a: tuple[str, ...], b: tuple[str, ...]) -> bool:
    if _is_wildcard(a) or _is_wildcard(b):
        return True
    return bool(set(a) & set(b))


def _covers(earlier: tuple[str, ...], later: tuple[str, ...]) -> bool:
    if _is_wildcard(earlier):
        return True
    if _is_wildcard(later):
        return False
    return set(later).issubset(set(earlier))


def _shadows(earlier: Rule, later: Rule) -> bool:
    # An earlier rule shadows a later one when it matches every request the
    # later one could match.
    if not _covers(earlier.conditions.profiles, later.conditions.profiles):
        return False
    if not _covers(earlier.conditions.users, later.conditions.users):
        return False
    if earlier.conditions.time is None:
        return True
    if later.conditions.time is None:
        return False
    return earlier.conditions.time == later.conditions.time


def _windows_overlap(a: TimeWindow, b: TimeWindow) -> bool:
    if a.days and b.days and not (set(a.days) & set(b.days)):
        return False
    if a.hours is None or b.hours is None:
        return True
    try:
        a_start, a_end = hour_to_minutes(a.hours.start), hour_to_minutes(a.hours.end)
        b_start, b_end = hour_to_minutes(b.hours.start), hour_to_minutes(b.hours.end)
    except ValueError:
        return False
    return max(a_start, b_start) < min(a_end, b_end)
