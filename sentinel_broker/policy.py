"""Access policy schema and the first-match-wins evaluator.

A policy is an ordered list of rules. ``evaluate`` walks them in order and
returns the first rule whose conditions all hold; anything else (no policy,
no request, no matching rule) is a deny.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .errors import PolicyParseError, PolicyValidationError

EFFECT_ALLOW = "allow"
EFFECT_DENY = "deny"
VALID_EFFECTS = {EFFECT_ALLOW, EFFECT_DENY}

WILDCARD = "*"
DEFAULT_DENY_REASON = "no matching rule"
SUPPORTED_VERSIONS = ("1",)

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

_HOUR_RE = re.compile(r"^([01][0-9]|2[0-3]):([0-5][0-9])$")


@dataclass(frozen=True)
class HourRange:
    start: str
    end: str


@dataclass(frozen=True)
class TimeWindow:
    days: tuple[str, ...] = ()
    hours: HourRange | None = None
    timezone: str = ""


@dataclass(frozen=True)
class Condition:
    profiles: tuple[str, ...] = ()
    users: tuple[str, ...] = ()
    time: TimeWindow | None = None

    def is_empty(self) -> bool:
        return not self.profiles and not self.users and self.time is None


@dataclass(frozen=True)
class Rule:
    name: str
    effect: str
    conditions: Condition = field(default_factory=Condition)
    reason: str = ""


@dataclass(frozen=True)
class Policy:
    version: str
    rules: tuple[Rule, ...] = ()


@dataclass(frozen=True)
class AccessRequest:
    user: str
    profile: str
    time: datetime | None = None


@dataclass(frozen=True)
class Decision:
    effect: str
    matched_rule: str = ""
    rule_index: int = -1
    reason: str = DEFAULT_DENY_REASON

    @property
    def allowed(self) -> bool:
        return self.effect == EFFECT_ALLOW

    def __str__(self) -> str:
        if self.rule_index < 0:
            return f"{self.effect} (default: {self.reason})"
        return f"{self.effect} (rule '{self.matched_rule}' at index {self.rule_index})"


DEFAULT_DENY = Decision(effect=EFFECT_DENY, matched_rule="", rule_index=-1, reason=DEFAULT_DENY_REASON)


def evaluate(policy: Policy | None, request: AccessRequest | None) -> Decision:
    if policy is None or request is None or not policy.rules:
        return DEFAULT_DENY

    at = request.time or datetime.now(timezone.utc)
    for index, rule in enumerate(policy.rules):
        if _rule_matches(rule, request, at):
            return Decision(
                effect=rule.effect,
                matched_rule=rule.name,
                rule_index=index,
                reason=rule.reason,
            )
    return DEFAULT_DENY


def _rule_matches(rule: Rule, request: AccessRequest, at: datetime) -> bool:
    # Unknown effects never match; a typo must not widen access.
    if rule.effect not in VALID_EFFECTS:
        return False
    cond = rule.conditions
    if not matches_value(cond.profiles, request.profile):
        return False
    if not matches_value(cond.users, request.user):
        return False
    return matches_time_window(cond.time, at)


def matches_value(patterns: tuple[str, ...] | list[str], value: str) -> bool:
    if not patterns:
        return True
    for pattern in patterns:
        if pattern == WILDCARD or pattern == value:
            return True
    return False


def matches_time_window(window: TimeWindow | None, at: datetime) -> bool:
    if window is None:
        return True
    local = _in_timezone(at, window.timezone)
    if window.days and WEEKDAYS[local.weekday()] not in window.days:
        return False
    if window.hours is not None:
        try:
            start = hour_to_minutes(window.hours.start)
            end = hour_to_minutes(window.hours.end)
        except ValueError:
            return False
        minute = local.hour * 60 + local.minute
        if not (start <= minute < end):
            return False
    return True


def _in_timezone(at: datetime, tz_name: str) -> datetime:
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    if not tz_name:
        return at
    try:
        return at.astimezone(ZoneInfo(tz_name))
    except (ZoneInfoNotFoundError, ValueError):
        return at


def hour_to_minutes(raw: str) -> int:
    m = _HOUR_RE.match(str(raw or ""))
    if not m:
        raise ValueError(f"invalid hour format '{raw}'")
    return int(m.group(1)) * 60 + int(m.group(2))


def str_tuple(raw: Any, *, label: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (raw,)
    if not isinstance(raw, list):
        raise PolicyParseError(f"{label} must be a list of strings")
    return tuple(str(v).strip() for v in raw if str(v).strip())


def time_window_from_dict(raw: Any) -> TimeWindow | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise PolicyParseError("time must be a mapping")
    hours = None
    raw_hours = raw.get("hours")
    if raw_hours is not None:
        if not isinstance(raw_hours, dict):
            raise PolicyParseError("time.hours must be a mapping")
        hours = HourRange(start=str(raw_hours.get("start") or ""), end=str(raw_hours.get("end") or ""))
    return TimeWindow(
        days=tuple(d.lower() for d in str_tuple(raw.get("days"), label="time.days")),
        hours=hours,
        timezone=str(raw.get("timezone") or "").strip(),
    )


def _rule_from_dict(raw: Any, index: int) -> Rule:
    if not isinstance(raw, dict):
        raise PolicyParseError(f"rule at index {index} must be a mapping")
    cond = raw.get("conditions") or {}
    if not isinstance(cond, dict):
        raise PolicyParseError(f"rule at index {index}: conditions must be a mapping")
    return Rule(
        name=str(raw.get("name") or "").strip(),
        effect=str(raw.get("effect") or "").strip().lower(),
        conditions=Condition(
            profiles=str_tuple(cond.get("profiles"), label="conditions.profiles"),
            users=str_tuple(cond.get("users"), label="conditions.users"),
            time=time_window_from_dict(cond.get("time")),
        ),
        reason=str(raw.get("reason") or ""),
    )


def load_document(data: str | bytes) -> dict[str, Any]:
    text = data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else str(data or "")
    if not text.strip():
        raise PolicyParseError("empty policy")
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise PolicyParseError(f"yaml: {e}") from e
    if not isinstance(doc, dict):
        raise PolicyParseError("policy document must be a mapping")
    return doc


def parse_policy(data: str | bytes) -> Policy:
    doc = load_document(data)
    version = doc.get("version")
    if version is None or str(version).strip() == "":
        raise PolicyParseError("missing version field")
    raw_rules = doc.get("rules") or []
    if not isinstance(raw_rules, list):
        raise PolicyParseError("rules must be a list")
    return Policy(
        version=str(version).strip(),
        rules=tuple(_rule_from_dict(r, i) for i, r in enumerate(raw_rules)),
    )


def validate_time_window(window: TimeWindow, rule_name: str) -> None:
    for day in window.days:
        if day not in WEEKDAYS:
            raise PolicyValidationError(f"invalid weekday '{day}' in rule '{rule_name}'")
    if window.timezone:
        try:
            ZoneInfo(window.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise PolicyValidationError(f"invalid timezone '{window.timezone}' in rule '{rule_name}'") from e
    if window.hours is not None:
        for value in (window.hours.start, window.hours.end):
            if not _HOUR_RE.match(value):
                raise PolicyValidationError(f"invalid hour format '{value}' in rule '{rule_name}'")


def validate_policy(policy: Policy) -> None:
    if policy.version not in SUPPORTED_VERSIONS:
        raise PolicyValidationError(
            f"unsupported policy version '{policy.version}', supported versions: {list(SUPPORTED_VERSIONS)}"
        )
    if not policy.rules:
        raise PolicyValidationError("policy must have at least one rule")
    for index, rule in enumerate(policy.rules):
        if not rule.name:
            raise PolicyValidationError(f"rule at index {index} missing name")
        if rule.effect not in VALID_EFFECTS:
            raise PolicyValidationError(f"invalid effect '{rule.effect}' in rule '{rule.name}'")
        if rule.conditions.is_empty():
            raise PolicyValidationError(f"rule '{rule.name}' has no conditions")
        if rule.conditions.time is not None:
            validate_time_window(rule.conditions.time, rule.name)


def load_policy(data: str | bytes) -> Policy:
    policy = parse_policy(data)
    validate_policy(policy)
    return policy


def policy_to_dict(policy: Policy) -> dict[str, Any]:
    rules: list[dict[str, Any]] = []
    for rule in policy.rules:
        cond: dict[str, Any] = {}
        if rule.conditions.profiles:
            cond["profiles"] = list(rule.conditions.profiles)
        if rule.conditions.users:
            cond["users"] = list(rule.conditions.users)
        if rule.conditions.time is not None:
            cond["time"] = time_window_to_dict(rule.conditions.time)
        out: dict[str, Any] = {"name": rule.name, "effect": rule.effect, "conditions": cond}
        if rule.reason:
            out["reason"] = rule.reason
        rules.append(out)
    return {"version": policy.version, "rules": rules}


def time_window_to_dict(window: TimeWindow) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if window.days:
        out["days"] = list(window.days)
    if window.hours is not None:
        out["hours"] = {"start": window.hours.start, "end": window.hours.end}
    if window.timezone:
        out["timezone"] = window.timezone
    return out
