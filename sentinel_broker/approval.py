"""Approval requests and approval routing.

A request starts ``pending`` and moves exactly once to a terminal status.
An approved request only grants access while both its TTL and its access
window (``created_at + duration``) are open.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .audit import (
    EVENT_REQUEST_APPROVED,
    EVENT_REQUEST_CREATED,
    EVENT_REQUEST_DENIED,
    DecisionAuditLog,
    new_approval_log_entry,
)
from .clock import format_duration, iso, parse_duration, utcnow
from .errors import (
    AuthorizationError,
    InvalidTransitionError,
    PolicyParseError,
    PolicyValidationError,
    ValidationError,
)
from .ids import ID_LENGTH, is_hex_id, new_hex_id
from .policy import (
    TimeWindow,
    load_document,
    matches_time_window,
    str_tuple,
    time_window_from_dict,
    validate_time_window,
)
from .stores import MAX_QUERY_LIMIT

if TYPE_CHECKING:
    from .context import CallContext
    from .stores import RequestStore

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_DENIED = "denied"
STATUS_EXPIRED = "expired"
STATUS_CANCELLED = "cancelled"
VALID_STATUSES = {STATUS_PENDING, STATUS_APPROVED, STATUS_DENIED, STATUS_EXPIRED, STATUS_CANCELLED}

DEFAULT_REQUEST_TTL = timedelta(hours=24)
MAX_REQUEST_DURATION = timedelta(hours=8)
MIN_JUSTIFICATION_LENGTH = 10
MAX_JUSTIFICATION_LENGTH = 500

AUTO_APPROVE_COMMENT = "auto-approved by policy"


@dataclass
class Request:
    id: str
    requester: str
    profile: str
    justification: str
    duration: timedelta
    status: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    approver: str = ""
    approver_comment: str = ""
    # updated_at exactly as last read from the store; the optimistic-lock token.
    version: str = field(default="", repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "requester": self.requester,
            "profile": self.profile,
            "justification": self.justification,
            "duration": format_duration(self.duration),
            "status": self.status,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "expires_at": iso(self.expires_at),
            "approver": self.approver,
            "approver_comment": self.approver_comment,
        }

    def validate(self) -> None:
        if not is_hex_id(self.id):
            raise ValidationError(f"invalid request ID: must be {ID_LENGTH} lowercase hex characters")
        if not self.requester:
            raise ValidationError("requester cannot be empty")
        if not self.profile:
            raise ValidationError("profile cannot be empty")
        if len(self.justification) < MIN_JUSTIFICATION_LENGTH:
            raise ValidationError(f"justification too short: minimum {MIN_JUSTIFICATION_LENGTH} characters")
        if len(self.justification) > MAX_JUSTIFICATION_LENGTH:
            raise ValidationError(f"justification too long: maximum {MAX_JUSTIFICATION_LENGTH} characters")
        if self.status not in VALID_STATUSES:
            raise ValidationError(f"invalid status: {self.status!r}")
        if self.duration <= timedelta(0):
            raise ValidationError("duration must be positive")
        if self.duration > MAX_REQUEST_DURATION:
            raise ValidationError(f"duration exceeds maximum of {MAX_REQUEST_DURATION}")

    def can_transition_to(self, status: str) -> bool:
        return self.status == STATUS_PENDING and status in VALID_STATUSES and status != STATUS_PENDING

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at and now < self.created_at + self.duration


@dataclass(frozen=True)
class AutoApproveCondition:
    users: tuple[str, ...] = ()
    time: TimeWindow | None = None
    max_duration: timedelta = timedelta(0)

    def is_empty(self) -> bool:
        return not self.users and self.time is None and not self.max_duration


@dataclass(frozen=True)
class ApprovalRule:
    name: str
    profiles: tuple[str, ...] = ()
    approvers: tuple[str, ...] = ()
    auto_approve: AutoApproveCondition | None = None


@dataclass(frozen=True)
class ApprovalPolicy:
    version: str = ""
    rules: tuple[ApprovalRule, ...] = field(default_factory=tuple)


def _max_duration(raw: Any, rule_name: str) -> timedelta:
    try:
        return parse_duration(raw)
    except ValueError as e:
        raise PolicyParseError(f"invalid max_duration in rule '{rule_name}': {e}") from e


def parse_approval_policy(data: str | bytes) -> ApprovalPolicy:
    doc = load_document(data)
    raw_rules = doc.get("rules") or []
    if not isinstance(raw_rules, list):
        raise PolicyParseError("rules must be a list")
    rules: list[ApprovalRule] = []
    for index, raw in enumerate(raw_rules):
        if not isinstance(raw, dict):
            raise PolicyParseError(f"approval rule at index {index} must be a mapping")
        name = str(raw.get("name") or "").strip()
        auto = None
        raw_auto = raw.get("auto_approve")
        if raw_auto is not None:
            if not isinstance(raw_auto, dict):
                raise PolicyParseError(f"auto_approve in rule '{name}' must be a mapping")
            auto = AutoApproveCondition(
                users=str_tuple(raw_auto.get("users"), label="auto_approve.users"),
                time=time_window_from_dict(raw_auto.get("time")),
                max_duration=_max_duration(raw_auto.get("max_duration"), name),
            )
        rules.append(
            ApprovalRule(
                name=name,
                profiles=str_tuple(raw.get("profiles"), label="profiles"),
                approvers=str_tuple(raw.get("approvers"), label="approvers"),
                auto_approve=auto,
            )
        )
    return ApprovalPolicy(version=str(doc.get("version") or "").strip(), rules=tuple(rules))


def validate_approval_policy(policy: ApprovalPolicy) -> None:
    if not policy.rules:
        raise PolicyValidationError("approval policy must have at least one rule")
    for index, rule in enumerate(policy.rules):
        if not rule.name:
            raise PolicyValidationError(f"approval rule at index {index} missing name")
        if not rule.approvers:
            raise PolicyValidationError(f"approval rule '{rule.name}' must have at least one approver")
        auto = rule.auto_approve
        if auto is None:
            continue
        if auto.is_empty():
            raise PolicyValidationError(f"auto_approve in rule '{rule.name}' must have at least one condition")
        if auto.time is not None:
            validate_time_window(auto.time, rule.name)
        if auto.max_duration < timedelta(0):
            raise PolicyValidationError(f"auto_approve in rule '{rule.name}' has negative max_duration")
        if auto.max_duration > MAX_REQUEST_DURATION:
            raise PolicyValidationError(
                f"auto_approve max_duration in rule '{rule.name}' exceeds maximum of {MAX_REQUEST_DURATION}"
            )


def load_approval_policy(data: str | bytes) -> ApprovalPolicy:
    policy = parse_approval_policy(data)
    validate_approval_policy(policy)
    return policy


def find_approval_rule(policy: ApprovalPolicy | None, profile: str) -> ApprovalRule | None:
    if policy is None:
        return None
    for rule in policy.rules:
        # No profiles means the rule applies to every profile.
        if not rule.profiles or profile in rule.profiles:
            return rule
    return None


def can_approve(rule: ApprovalRule | None, approver: str) -> bool:
    if rule is None:
        return False
    return approver in rule.approvers


def get_approvers(policy: ApprovalPolicy | None, profile: str) -> list[str]:
    rule = find_approval_rule(policy, profile)
    if rule is None:
        return []
    return list(rule.approvers)


def should_auto_approve(
    rule: ApprovalRule | None, username: str, now: datetime, duration: timedelta
) -> bool:
    if rule is None or rule.auto_approve is None:
        return False
    auto = rule.auto_approve
    if auto.users and username not in auto.users:
        return False
    if not matches_time_window(auto.time, now):
        return False
    if auto.max_duration > timedelta(0) and duration > auto.max_duration:
        return False
    return True


def find_approved_request(
    ctx: CallContext,
    store: RequestStore,
    requester: str,
    profile: str,
    *,
    now: datetime | None = None,
) -> Request | None:
    """Newest live approved request for (requester, profile), or None.

    Store errors propagate unchanged.
    """
    ctx.check()
    requests = store.list_by_requester(ctx, requester, MAX_QUERY_LIMIT)
    at = now or utcnow()
    best: Request | None = None
    for req in requests:
        if req.status != STATUS_APPROVED or req.profile != profile:
            continue
        if not req.is_live(at):
            continue
        if best is None or req.created_at > best.created_at:
            best = req
    return best


def create_request(
    ctx: CallContext,
    store: RequestStore,
    *,
    requester: str,
    profile: str,
    justification: str,
    duration: timedelta,
    approval_policy: ApprovalPolicy | None = None,
    audit: DecisionAuditLog | None = None,
    now: datetime | None = None,
) -> Request:
    at = now or utcnow()
    if duration > MAX_REQUEST_DURATION:
        duration = MAX_REQUEST_DURATION
    req = Request(
        id=new_hex_id(),
        requester=requester,
        profile=profile,
        justification=justification,
        duration=duration,
        status=STATUS_PENDING,
        created_at=at,
        updated_at=at,
        expires_at=at + DEFAULT_REQUEST_TTL,
    )
    rule = find_approval_rule(approval_policy, profile)
    auto = should_auto_approve(rule, requester, at, duration)
    if auto:
        req.status = STATUS_APPROVED
        req.approver = requester
        req.approver_comment = AUTO_APPROVE_COMMENT
    req.validate()

    ctx.check()
    store.create(ctx, req)

    log = audit or DecisionAuditLog()
    log.append_approval(new_approval_log_entry(EVENT_REQUEST_CREATED, req, requester))
    if auto:
        log.append_approval(new_approval_log_entry(EVENT_REQUEST_APPROVED, req, requester, auto_approved=True))
    return req


def _transition(
    ctx: CallContext,
    store: RequestStore,
    request_id: str,
    *,
    status: str,
    approver: str,
    comment: str,
    approval_policy: ApprovalPolicy | None,
) -> Request:
    if not is_hex_id(request_id):
        raise ValidationError("invalid request ID format")
    if not approver:
        raise ValidationError("approver is required")
    ctx.check()
    req = store.get(ctx, request_id)
    if approval_policy is not None:
        rule = find_approval_rule(approval_policy, req.profile)
        if not can_approve(rule, approver):
            raise AuthorizationError(f"user '{approver}' is not an approver for profile '{req.profile}'")
    if not req.can_transition_to(status):
        raise InvalidTransitionError(f"cannot transition request from {req.status} to {status}")
    req.status = status
    req.approver = approver
    req.approver_comment = comment
    ctx.check()
    store.update(ctx, req)
    return req


def approve_request(
    ctx: CallContext,
    store: RequestStore,
    request_id: str,
    *,
    approver: str,
    comment: str = "",
    approval_policy: ApprovalPolicy | None = None,
    audit: DecisionAuditLog | None = None,
) -> Request:
    req = _transition(
        ctx,
        store,
        request_id,
        status=STATUS_APPROVED,
        approver=approver,
        comment=comment,
        approval_policy=approval_policy,
    )
    (audit or DecisionAuditLog()).append_approval(new_approval_log_entry(EVENT_REQUEST_APPROVED, req, approver))
    return req


def deny_request(
    ctx: CallContext,
    store: RequestStore,
    request_id: str,
    *,
    approver: str,
    comment: str = "",
    approval_policy: ApprovalPolicy | None = None,
    audit: DecisionAuditLog | None = None,
) -> Request:
    req = _transition(
        ctx,
        store,
        request_id,
        status=STATUS_DENIED,
        approver=approver,
        comment=comment,
        approval_policy=approval_policy,
    )
    (audit or DecisionAuditLog()).append_approval(new_approval_log_entry(EVENT_REQUEST_DENIED, req, approver))
    return req
