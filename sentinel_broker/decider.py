"""Policy evaluation plus override resolution, in fixed priority order.

A policy allow is final. A policy deny is handed to each override resolver in
turn (approval first, then break-glass by default); the first resolver that
produces an override wins and later resolvers are not consulted. A resolver
that fails counts as "no override" so a backend error can never turn a deny
into an allow.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Protocol, Sequence

from .approval import find_approved_request
from .audit import (
    CredentialIssuanceFields,
    DecisionAuditLog,
    DecisionLogEntry,
    new_enhanced_decision_log_entry,
)
from .breakglass import find_active_break_glass, remaining_duration
from .clock import utcnow
from .drift import DRIFT_UNKNOWN, DriftCheckResult
from .errors import ContextCancelledError
from .events import warn
from .policy import EFFECT_ALLOW, AccessRequest, Decision, evaluate

if TYPE_CHECKING:
    from .context import CallContext
    from .drift import DriftChecker
    from .policy import Policy
    from .stores import BreakGlassStore, Logger, RequestStore

OVERRIDE_APPROVAL = "approval"
OVERRIDE_BREAK_GLASS = "break_glass"


@dataclass(frozen=True)
class Override:
    kind: str
    record_id: str
    # Upper bound on the issued session, or None for no extra cap.
    max_duration: timedelta | None = None


class OverrideResolver(Protocol):
    name: str

    def resolve(self, ctx: CallContext, request: AccessRequest, now: datetime) -> Override | None: ...


class ApprovalOverrideResolver:
    name = OVERRIDE_APPROVAL

    def __init__(self, store: RequestStore) -> None:
        self._store = store

    def resolve(self, ctx: CallContext, request: AccessRequest, now: datetime) -> Override | None:
        req = find_approved_request(ctx, self._store, request.user, request.profile, now=now)
        if req is None:
            return None
        return Override(kind=OVERRIDE_APPROVAL, record_id=req.id)


class BreakGlassOverrideResolver:
    name = OVERRIDE_BREAK_GLASS

    def __init__(self, store: BreakGlassStore) -> None:
        self._store = store

    def resolve(self, ctx: CallContext, request: AccessRequest, now: datetime) -> Override | None:
        event = find_active_break_glass(ctx, self._store, request.user, request.profile, now=now)
        if event is None:
            return None
        return Override(
            kind=OVERRIDE_BREAK_GLASS,
            record_id=event.id,
            max_duration=remaining_duration(event, now=now),
        )


@dataclass(frozen=True)
class ResolverFailure:
    resolver: str
    error: str


@dataclass(frozen=True)
class FinalDecision:
    effect: str
    policy_decision: Decision
    effective_duration: timedelta
    override: str = ""
    approved_request_id: str = ""
    break_glass_event_id: str = ""
    lookup_errors: tuple[ResolverFailure, ...] = ()
    drift: DriftCheckResult | None = None
    log_entry: DecisionLogEntry | None = None

    @property
    def allowed(self) -> bool:
        return self.effect == EFFECT_ALLOW


class AuthorizationDecider:
    def __init__(
        self,
        resolvers: Sequence[OverrideResolver] = (),
        *,
        logger: Logger | None = None,
        drift_checker: DriftChecker | None = None,
        policy_path: str = "",
    ) -> None:
        self._resolvers = list(resolvers)
        self._audit = DecisionAuditLog(logger)
        self._drift_checker = drift_checker
        self._policy_path = policy_path

    @classmethod
    def from_stores(
        cls,
        request_store: RequestStore | None = None,
        break_glass_store: BreakGlassStore | None = None,
        **kwargs,
    ) -> AuthorizationDecider:
        resolvers: list[OverrideResolver] = []
        if request_store is not None:
            resolvers.append(ApprovalOverrideResolver(request_store))
        if break_glass_store is not None:
            resolvers.append(BreakGlassOverrideResolver(break_glass_store))
        return cls(resolvers, **kwargs)

    def decide(
        self,
        ctx: CallContext,
        policy: Policy | None,
        request: AccessRequest | None,
        *,
        requested_duration: timedelta,
        role_arn: str = "",
        request_id: str = "",
        source_identity: str = "",
        now: datetime | None = None,
    ) -> FinalDecision:
        ctx.check()
        at = now or utcnow()
        if request is not None and request.time is None:
            request = AccessRequest(user=request.user, profile=request.profile, time=at)

        decision = evaluate(policy, request)
        override: Override | None = None
        failures: list[ResolverFailure] = []
        if not decision.allowed and request is not None:
            override, failures = self._resolve(ctx, request, at)

        effect = decision.effect
        duration = timedelta(0)
        if decision.allowed or override is not None:
            effect = EFFECT_ALLOW
            duration = requested_duration
            if override is not None and override.max_duration is not None:
                duration = min(requested_duration, override.max_duration)

        drift = None
        if effect == EFFECT_ALLOW and role_arn and self._drift_checker is not None:
            drift = _check_drift(self._drift_checker, ctx, role_arn)

        creds = CredentialIssuanceFields(
            request_id=request_id,
            source_identity=source_identity,
            role_arn=role_arn,
            session_duration=duration,
            approved_request_id=override.record_id if override and override.kind == OVERRIDE_APPROVAL else "",
            break_glass_event_id=override.record_id if override and override.kind == OVERRIDE_BREAK_GLASS else "",
            drift_status=drift.status if drift else "",
            drift_message=_drift_message(drift),
        )
        entry = new_enhanced_decision_log_entry(
            request or AccessRequest(user="", profile=""),
            decision,
            self._policy_path,
            creds,
        )
        self._audit.append(entry)

        return FinalDecision(
            effect=effect,
            policy_decision=decision,
            effective_duration=duration,
            override=override.kind if override else "",
            approved_request_id=creds.approved_request_id,
            break_glass_event_id=creds.break_glass_event_id,
            lookup_errors=tuple(failures),
            drift=drift,
            log_entry=entry,
        )

    def _resolve(
        self, ctx: CallContext, request: AccessRequest, now: datetime
    ) -> tuple[Override | None, list[ResolverFailure]]:
        failures: list[ResolverFailure] = []
        for resolver in self._resolvers:
            ctx.check()
            try:
                found = resolver.resolve(ctx, request, now)
            except ContextCancelledError:
                raise
            except Exception as e:
                # Fail closed: a failed lookup is an absent override.
                failures.append(ResolverFailure(resolver=resolver.name, error=str(e)))
                warn(
                    "override lookup failed",
                    resolver=resolver.name,
                    user=request.user,
                    profile=request.profile,
                    error=e,
                )
                continue
            if found is not None:
                return found, failures
        return None, failures


def _check_drift(checker: DriftChecker, ctx: CallContext, role_arn: str) -> DriftCheckResult:
    try:
        return checker.check_role(ctx, role_arn)
    except ContextCancelledError:
        raise
    except Exception as e:
        warn("drift check failed", role_arn=role_arn, error=e)
        return DriftCheckResult(
            status=DRIFT_UNKNOWN,
            role_arn=role_arn,
            message="drift check failed",
            error=str(e),
        )


def _drift_message(result: DriftCheckResult | None) -> str:
    if result is None:
        return ""
    if result.error:
        return f"{result.message}: {result.error}"
    return result.message
