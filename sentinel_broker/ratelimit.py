"""Cooldowns and quotas on break-glass invocation.

The first rule whose ``profiles`` contain the profile applies (an empty list
matches every profile). Checks run cooldown, per-user quota, then per-profile
quota; the escalation threshold only flags, it never blocks.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .clock import parse_duration
from .errors import PolicyParseError, PolicyValidationError
from .policy import load_document, str_tuple

if TYPE_CHECKING:
    from .context import CallContext
    from .stores import BreakGlassStore

REASON_COOLDOWN = "cooldown period not elapsed"
REASON_USER_QUOTA = "user quota exceeded"
REASON_PROFILE_QUOTA = "profile quota exceeded"


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    profiles: tuple[str, ...] = ()
    cooldown: timedelta = timedelta(0)
    max_per_user: int = 0
    max_per_profile: int = 0
    quota_window: timedelta = timedelta(0)
    escalation_threshold: int = 0


@dataclass(frozen=True)
class RateLimitPolicy:
    version: str = ""
    rules: tuple[RateLimitRule, ...] = ()


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    reason: str = ""
    retry_after: timedelta = timedelta(0)
    user_count: int = 0
    profile_count: int = 0
    should_escalate: bool = False


def _int(raw: Any, label: str, rule_name: str) -> int:
    if raw is None:
        return 0
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise PolicyParseError(f"{label} in rule '{rule_name}' must be an integer")
    return raw


def _duration(raw: Any, label: str, rule_name: str) -> timedelta:
    try:
        return parse_duration(raw)
    except ValueError as e:
        raise PolicyParseError(f"invalid {label} in rule '{rule_name}': {e}") from e


def parse_rate_limit_policy(data: str | bytes) -> RateLimitPolicy:
    doc = load_document(data)
    raw_rules = doc.get("rules") or []
    if not isinstance(raw_rules, list):
        raise PolicyParseError("rules must be a list")
    rules: list[RateLimitRule] = []
    for index, raw in enumerate(raw_rules):
        if not isinstance(raw, dict):
            raise PolicyParseError(f"rate limit rule at index {index} must be a mapping")
        name = str(raw.get("name") or "").strip()
        rules.append(
            RateLimitRule(
                name=name,
                profiles=str_tuple(raw.get("profiles"), label="profiles"),
                cooldown=_duration(raw.get("cooldown"), "cooldown", name),
                max_per_user=_int(raw.get("max_per_user"), "max_per_user", name),
                max_per_profile=_int(raw.get("max_per_profile"), "max_per_profile", name),
                quota_window=_duration(raw.get("quota_window"), "quota_window", name),
                escalation_threshold=_int(raw.get("escalation_threshold"), "escalation_threshold", name),
            )
        )
    return RateLimitPolicy(version=str(doc.get("version") or "").strip(), rules=tuple(rules))


def validate_rate_limit_policy(policy: RateLimitPolicy) -> None:
    if not policy.rules:
        raise PolicyValidationError("rate limit policy must have at least one rule")
    for index, rule in enumerate(policy.rules):
        if not rule.name:
            raise PolicyValidationError(f"rate limit rule at index {index} missing name")
        if rule.cooldown < timedelta(0):
            raise PolicyValidationError(f"rate limit rule '{rule.name}' has negative cooldown")
        if rule.max_per_user < 0:
            raise PolicyValidationError(f"rate limit rule '{rule.name}' has negative max_per_user")
        if rule.max_per_profile < 0:
            raise PolicyValidationError(f"rate limit rule '{rule.name}' has negative max_per_profile")
        if (rule.max_per_user > 0 or rule.max_per_profile > 0) and rule.quota_window <= timedelta(0):
            raise PolicyValidationError(
                f"rate limit rule '{rule.name}' has quota limits but missing or invalid quota_window"
            )
        if rule.cooldown <= timedelta(0) and rule.max_per_user <= 0 and rule.max_per_profile <= 0:
            raise PolicyValidationError(
                f"rate limit rule '{rule.name}' must set cooldown, max_per_user or max_per_profile"
            )
        if rule.escalation_threshold < 0:
            raise PolicyValidationError(f"rate limit rule '{rule.name}' has negative escalation_threshold")


def load_rate_limit_policy(data: str | bytes) -> RateLimitPolicy:
    policy = parse_rate_limit_policy(data)
    validate_rate_limit_policy(policy)
    return policy


def find_rate_limit_rule(policy: RateLimitPolicy | None, profile: str) -> RateLimitRule | None:
    if policy is None:
        return None
    for rule in policy.rules:
        if not rule.profiles or profile in rule.profiles:
            return rule
    return None


def check_rate_limit(
    ctx: CallContext,
    store: BreakGlassStore,
    policy: RateLimitPolicy | None,
    invoker: str,
    profile: str,
    now: datetime,
) -> RateLimitResult:
    """Store errors propagate; callers must not treat them as allowed."""
    rule = find_rate_limit_rule(policy, profile)
    if rule is None:
        return RateLimitResult(allowed=True)

    if rule.cooldown > timedelta(0):
        ctx.check()
        last = store.get_last_by_invoker_and_profile(ctx, invoker, profile)
        if last is not None:
            elapsed = now - last.created_at
            if elapsed < rule.cooldown:
                return RateLimitResult(
                    allowed=False,
                    reason=REASON_COOLDOWN,
                    retry_after=rule.cooldown - elapsed,
                )

    since = now - rule.quota_window
    user_count = 0
    if rule.max_per_user > 0:
        ctx.check()
        user_count = store.count_by_invoker_since(ctx, invoker, since)
        if user_count >= rule.max_per_user:
            return RateLimitResult(allowed=False, reason=REASON_USER_QUOTA, user_count=user_count)

    profile_count = 0
    if rule.max_per_profile > 0:
        ctx.check()
        profile_count = store.count_by_profile_since(ctx, profile, since)
        if profile_count >= rule.max_per_profile:
            return RateLimitResult(allowed=False, reason=REASON_PROFILE_QUOTA, profile_count=profile_count)

    return RateLimitResult(
        allowed=True,
        user_count=user_count,
        profile_count=profile_count,
        should_escalate=rule.escalation_threshold > 0 and user_count >= rule.escalation_threshold,
    )
