"""Self-service emergency access.

An invoker opens a time-bounded event for one profile; while it is active and
unexpired it overrides a policy deny. Events are closed explicitly or lapse.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .audit import (
    EVENT_BREAK_GLASS_CLOSED,
    EVENT_BREAK_GLASS_INVOKED,
    DecisionAuditLog,
    new_break_glass_log_entry,
)
from .clock import format_duration, iso, parse_duration, utcnow
from .errors import (
    ActiveBreakGlassExistsError,
    AuthorizationError,
    InvalidTransitionError,
    PolicyParseError,
    PolicyValidationError,
    RateLimitExceededError,
    ValidationError,
)
from .events import warn
from .ids import ID_LENGTH, is_hex_id, new_hex_id
from .policy import (
    TimeWindow,
    load_document,
    matches_time_window,
    str_tuple,
    time_window_from_dict,
    validate_time_window,
)
from .ratelimit import RateLimitPolicy, check_rate_limit
from .stores import MAX_QUERY_LIMIT

if TYPE_CHECKING:
    from .context import CallContext
    from .stores import BreakGlassStore

STATUS_ACTIVE = "active"
STATUS_CLOSED = "closed"
STATUS_EXPIRED = "expired"
VALID_STATUSES = {STATUS_ACTIVE, STATUS_CLOSED, STATUS_EXPIRED}

REASON_INCIDENT = "incident"
REASON_MAINTENANCE = "maintenance"
REASON_SECURITY = "security"
REASON_RECOVERY = "recovery"
REASON_OTHER = "other"
VALID_REASON_CODES = {REASON_INCIDENT, REASON_MAINTENANCE, REASON_SECURITY, REASON_RECOVERY, REASON_OTHER}

DEFAULT_BREAK_GLASS_TTL = timedelta(hours=4)
MAX_BREAK_GLASS_DURATION = timedelta(hours=4)
MIN_JUSTIFICATION_LENGTH = 20
MAX_JUSTIFICATION_LENGTH = 1000


@dataclass
class BreakGlassEvent:
    id: str
    invoker: str
    profile: str
    reason_code: str
    justification: str
    duration: timedelta
    status: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    closed_by: str = ""
    closed_reason: str = ""
    request_id: str = ""
    version: str = field(default="", repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "invoker": self.invoker,
            "profile": self.profile,
            "reason_code": self.reason_code,
            "justification": self.justification,
            "duration": format_duration(self.duration),
            "status": self.status,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "expires_at": iso(self.expires_at),
            "closed_by": self.closed_by,
            "closed_reason": self.closed_reason,
            "request_id": self.request_id,
        }

    def validate(self) -> None:
        if not is_hex_id(self.id):
            raise ValidationError(f"invalid break-glass ID: must be {ID_LENGTH} lowercase hex characters")
        if not self.invoker:
            raise ValidationError("invoker cannot be empty")
        if not self.profile:
            raise ValidationError("profile cannot be empty")
        if self.reason_code not in VALID_REASON_CODES:
            raise ValidationError(f"invalid reason code: {self.reason_code!r}")
        if len(self.justification) < MIN_JUSTIFICATION_LENGTH:
            raise ValidationError(f"justification too short: minimum {MIN_JUSTIFICATION_LENGTH} characters")
        if len(self.justification) > MAX_JUSTIFICATION_LENGTH:
            raise ValidationError(f"justification too long: maximum {MAX_JUSTIFICATION_LENGTH} characters")
        if self.status not in VALID_STATUSES:
            raise ValidationError(f"invalid status: {self.status!r}")
        if self.duration <= timedelta(0):
            raise ValidationError("duration must be positive")
        if self.duration > MAX_BREAK_GLASS_DURATION:
            raise ValidationError(f"duration exceeds maximum of {MAX_BREAK_GLASS_DURATION}")

    def can_transition_to(self, status: str) -> bool:
        return self.status == STATUS_ACTIVE and status in (STATUS_CLOSED, STATUS_EXPIRED)

    def is_live(self, now: datetime) -> bool:
        return self.status == STATUS_ACTIVE and now < self.expires_at


@dataclass(frozen=True)
class BreakGlassPolicyRule:
    name: str
    users: tuple[str, ...] = ()
    profiles: tuple[str, ...] = ()
    allowed_reason_codes: tuple[str, ...] = ()
    time: TimeWindow | None = None
    max_duration: timedelta = timedelta(0)


@dataclass(frozen=True)
class BreakGlassPolicy:
    version: str = ""
    rules: tuple[BreakGlassPolicyRule, ...] = ()


def parse_break_glass_policy(data: str | bytes) -> BreakGlassPolicy:
    doc = load_document(data)
    raw_rules = doc.get("rules") or []
    if not isinstance(raw_rules, list):
        raise PolicyParseError("rules must be a list")
    rules: list[BreakGlassPolicyRule] = []
    for index, raw in enumerate(raw_rules):
        if not isinstance(raw, dict):
            raise PolicyParseError(f"break-glass policy rule at index {index} must be a mapping")
        name = str(raw.get("name") or "").strip()
        try:
            max_duration = parse_duration(raw.get("max_duration"))
        except ValueError as e:
            raise PolicyParseError(f"invalid max_duration in rule '{name}': {e}") from e
        rules.append(
            BreakGlassPolicyRule(
                name=name,
                users=str_tuple(raw.get("users"), label="users"),
                profiles=str_tuple(raw.get("profiles"), label="profiles"),
                allowed_reason_codes=tuple(
                    c.lower() for c in str_tuple(raw.get("allowed_reason_codes"), label="allowed_reason_codes")
                ),
                time=time_window_from_dict(raw.get("time")),
                max_duration=max_duration,
            )
        )
    return BreakGlassPolicy(version=str(doc.get("version") or "").strip(), rules=tuple(rules))


def validate_break_glass_policy(policy: BreakGlassPolicy) -> None:
    if not policy.rules:
        raise PolicyValidationError("break-glass policy must have at least one rule")
    for index, rule in enumerate(policy.rules):
        if not rule.name:
            raise PolicyValidationError(f"break-glass policy rule at index {index} missing name")
        if not rule.users:
            raise PolicyValidationError(f"break-glass policy rule '{rule.name}' must have at least one user")
        for code in rule.allowed_reason_codes:
            if code not in VALID_REASON_CODES:
                raise PolicyValidationError(
                    f"break-glass policy rule '{rule.name}' has invalid reason code '{code}'"
                )
        if rule.time is not None:
            validate_time_window(rule.time, rule.name)
        if rule.max_duration < timedelta(0):
            raise PolicyValidationError(f"break-glass policy rule '{rule.name}' has negative max_duration")
        if rule.max_duration > MAX_BREAK_GLASS_DURATION:
            raise PolicyValidationError(
                f"break-glass policy rule '{rule.name}' max_duration exceeds maximum of {MAX_BREAK_GLASS_DURATION}"
            )


def load_break_glass_policy(data: str | bytes) -> BreakGlassPolicy:
    policy = parse_break_glass_policy(data)
    validate_break_glass_policy(policy)
    return policy


def find_break_glass_policy_rule(policy: BreakGlassPolicy | None, profile: str) -> BreakGlassPolicyRule | None:
    if policy is None:
        return None
    for rule in policy.rules:
        if not rule.profiles or profile in rule.profiles:
            return rule
    return None


def can_invoke_break_glass(rule: BreakGlassPolicyRule | None, user: str) -> bool:
    if rule is None:
        return False
    return user in rule.users


def is_break_glass_allowed(
    rule: BreakGlassPolicyRule | None,
    user: str,
    reason_code: str,
    now: datetime,
    duration: timedelta,
) -> bool:
    if rule is None or not can_invoke_break_glass(rule, user):
        return False
    if rule.allowed_reason_codes and reason_code not in rule.allowed_reason_codes:
        return False
    if not matches_time_window(rule.time, now):
        return False
    if rule.max_duration > timedelta(0) and duration > rule.max_duration:
        return False
    return True


def find_active_break_glass(
    ctx: CallContext,
    store: BreakGlassStore,
    invoker: str,
    profile: str,
    *,
    now: datetime | None = None,
) -> BreakGlassEvent | None:
    ctx.check()
    events = store.list_by_invoker(ctx, invoker, MAX_QUERY_LIMIT)
    at = now or utcnow()
    best: BreakGlassEvent | None = None
    for event in events:
        if event.profile != profile or not event.is_live(at):
            continue
        if best is None or event.created_at > best.created_at:
            best = event
    return best


def remaining_duration(event: BreakGlassEvent, *, now: datetime | None = None) -> timedelta:
    remaining = event.expires_at - (now or utcnow())
    if remaining < timedelta(0):
        return timedelta(0)
    return remaining


def invoke_break_glass(
    ctx: CallContext,
    store: BreakGlassStore,
    *,
    invoker: str,
    profile: str,
    reason_code: str,
    justification: str,
    duration: timedelta,
    policy: BreakGlassPolicy | None,
    rate_limits: RateLimitPolicy | None = None,
    request_id: str = "",
    audit: DecisionAuditLog | None = None,
    now: datetime | None = None,
) -> BreakGlassEvent:
    at = now or utcnow()
    rule = find_break_glass_policy_rule(policy, profile)
    if rule is None:
        raise AuthorizationError(f"no break-glass policy rule for profile '{profile}'")
    if not is_break_glass_allowed(rule, invoker, reason_code, at, duration):
        raise AuthorizationError(f"user '{invoker}' is not allowed to invoke break-glass for profile '{profile}'")

    existing = find_active_break_glass(ctx, store, invoker, profile, now=at)
    if existing is not None:
        raise ActiveBreakGlassExistsError(
            f"active break-glass event {existing.id} already exists for profile '{profile}'"
        )

    limit = check_rate_limit(ctx, store, rate_limits, invoker, profile, at)
    if not limit.allowed:
        raise RateLimitExceededError(
            f"break-glass rate limit for profile '{profile}': {limit.reason}",
            retry_after=limit.retry_after,
        )
    if limit.should_escalate:
        warn(
            "break-glass escalation threshold reached",
            invoker=invoker,
            profile=profile,
            user_count=limit.user_count,
        )

    event = BreakGlassEvent(
        id=new_hex_id(),
        invoker=invoker,
        profile=profile,
        reason_code=reason_code,
        justification=justification,
        duration=duration,
        status=STATUS_ACTIVE,
        created_at=at,
        updated_at=at,
        expires_at=at + duration,
        request_id=request_id,
    )
    event.validate()
    ctx.check()
    store.create(ctx, event)
    (audit or DecisionAuditLog()).append_break_glass(new_break_glass_log_entry(EVENT_BREAK_GLASS_INVOKED, event))
    return event


def close_break_glass(
    ctx: CallContext,
    store: BreakGlassStore,
    event_id: str,
    *,
    closed_by: str,
    reason: str,
    audit: DecisionAuditLog | None = None,
) -> BreakGlassEvent:
    if not is_hex_id(event_id):
        raise ValidationError("invalid break-glass ID format")
    if not reason:
        raise ValidationError("reason is required to close break-glass")
    ctx.check()
    event = store.get(ctx, event_id)
    if not event.can_transition_to(STATUS_CLOSED):
        raise InvalidTransitionError(f"cannot close break-glass event in status {event.status}")
    event.status = STATUS_CLOSED
    event.closed_by = closed_by
    event.closed_reason = reason
    ctx.check()
    store.update(ctx, event)
    (audit or DecisionAuditLog()).append_break_glass(new_break_glass_log_entry(EVENT_BREAK_GLASS_CLOSED, event))
    return event
