"""Assembles loaders, stores, the audit sink and the decider from ``Settings``.

Nothing here touches AWS or the filesystem until a component is first used;
boto3 resources and clients are created by the stores and loaders on demand.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Callable, TypeVar

from .approval import (
    ApprovalPolicy,
    Request,
    approve_request,
    create_request,
    deny_request,
    load_approval_policy,
)
from .audit import DecisionAuditLog, build_logger
from .breakglass import (
    BreakGlassEvent,
    BreakGlassPolicy,
    close_break_glass,
    invoke_break_glass,
    load_break_glass_policy,
)
from .config import (
    SENTINEL_BREAK_GLASS_TABLE,
    SENTINEL_POLICY_FILE,
    SENTINEL_POLICY_PARAMETER,
    SENTINEL_REQUEST_TABLE,
    SENTINEL_SESSION_TABLE,
    Settings,
)
from .decider import AuthorizationDecider, FinalDecision
from .drift import IamDriftChecker
from .dynamodb import DynamoBreakGlassStore, DynamoRequestStore, DynamoSessionStore
from .errors import ValidationError
from .policy import AccessRequest, Policy
from .policy_loader import CachedPolicyLoader, FilePolicyLoader, SsmPolicyLoader
from .ratelimit import RateLimitPolicy, load_rate_limit_policy
from .session import SessionManager

if TYPE_CHECKING:
    from .context import CallContext
    from .drift import DriftChecker
    from .policy_loader import PolicyLoader
    from .stores import BreakGlassStore, Logger, RequestStore, SessionStore

_UNSET = object()

T = TypeVar("T")


def _read_optional_policy(path: str, loader: Callable[[bytes], T]) -> T | None:
    if not path:
        return None
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise ValidationError(f"cannot read policy file {path}: {e}") from e
    return loader(data)


class Broker:
    def __init__(
        self,
        settings: Settings,
        *,
        policy_loader: PolicyLoader | None = None,
        request_store: RequestStore | None = None,
        break_glass_store: BreakGlassStore | None = None,
        session_store: SessionStore | None = None,
        logger: Logger | None | object = _UNSET,
        drift_checker: DriftChecker | None = None,
    ) -> None:
        self.settings = settings
        self._policy_loader = policy_loader
        self._request_store = request_store
        self._break_glass_store = break_glass_store
        self._session_store = session_store
        self._logger = logger
        self._drift_checker = drift_checker

    @classmethod
    def from_settings(cls, settings: Settings) -> Broker:
        region = settings.region or None
        loader: PolicyLoader | None = None
        if settings.policy_parameter:
            loader = SsmPolicyLoader(region=region)
        elif settings.policy_file:
            loader = FilePolicyLoader()
        if loader is not None and settings.policy_cache_ttl_seconds > 0:
            loader = CachedPolicyLoader(loader, settings.policy_cache_ttl_seconds)
        return cls(
            settings,
            policy_loader=loader,
            request_store=DynamoRequestStore(settings.request_table, region=region)
            if settings.request_table
            else None,
            break_glass_store=DynamoBreakGlassStore(settings.break_glass_table, region=region)
            if settings.break_glass_table
            else None,
            session_store=DynamoSessionStore(settings.session_table, region=region)
            if settings.session_table
            else None,
            drift_checker=IamDriftChecker(region=region),
        )

    @property
    def policy_name(self) -> str:
        return self.settings.policy_parameter or self.settings.policy_file

    @property
    def logger(self) -> Logger | None:
        if self._logger is _UNSET:
            self._logger = build_logger(
                log_file=self.settings.decision_log_file,
                to_stdout=self.settings.decision_log_stdout,
            )
        return self._logger  # type: ignore[return-value]

    def audit(self) -> DecisionAuditLog:
        return DecisionAuditLog(self.logger)

    def load_policy(self, ctx: CallContext) -> Policy:
        if self._policy_loader is None or not self.policy_name:
            raise ValidationError(f"missing policy source (set {SENTINEL_POLICY_PARAMETER} or {SENTINEL_POLICY_FILE})")
        return self._policy_loader.load(ctx, self.policy_name)

    def approval_policy(self) -> ApprovalPolicy | None:
        return _read_optional_policy(self.settings.approval_policy_file, load_approval_policy)

    def break_glass_policy(self) -> BreakGlassPolicy | None:
        return _read_optional_policy(self.settings.break_glass_policy_file, load_break_glass_policy)

    def rate_limit_policy(self) -> RateLimitPolicy | None:
        return _read_optional_policy(self.settings.rate_limit_policy_file, load_rate_limit_policy)

    def requests(self) -> RequestStore:
        if self._request_store is None:
            raise ValidationError(f"missing request_table (set {SENTINEL_REQUEST_TABLE})")
        return self._request_store

    def break_glass_events(self) -> BreakGlassStore:
        if self._break_glass_store is None:
            raise ValidationError(f"missing break_glass_table (set {SENTINEL_BREAK_GLASS_TABLE})")
        return self._break_glass_store

    def sessions(self) -> SessionManager:
        if self._session_store is None:
            raise ValidationError(f"missing session_table (set {SENTINEL_SESSION_TABLE})")
        return SessionManager(self._session_store)

    def decider(self, *, check_drift: bool = False) -> AuthorizationDecider:
        # Overrides are only consulted for the tables that are configured.
        return AuthorizationDecider.from_stores(
            self._request_store,
            self._break_glass_store,
            logger=self.logger,
            drift_checker=self._drift_checker if check_drift else None,
            policy_path=self.policy_name,
        )

    def decide(
        self,
        ctx: CallContext,
        user: str,
        profile: str,
        *,
        requested_duration: timedelta,
        role_arn: str = "",
        request_id: str = "",
        source_identity: str = "",
        now: datetime | None = None,
    ) -> FinalDecision:
        policy = self.load_policy(ctx)
        return self.decider(check_drift=bool(role_arn)).decide(
            ctx,
            policy,
            AccessRequest(user=user, profile=profile, time=now),
            requested_duration=requested_duration,
            role_arn=role_arn,
            request_id=request_id,
            source_identity=source_identity,
            now=now,
        )

    def create_request(
        self,
        ctx: CallContext,
        *,
        requester: str,
        profile: str,
        justification: str,
        duration: timedelta,
        now: datetime | None = None,
    ) -> Request:
        return create_request(
            ctx,
            self.requests(),
            requester=requester,
            profile=profile,
            justification=justification,
            duration=duration,
            approval_policy=self.approval_policy(),
            audit=self.audit(),
            now=now,
        )

    def approve_request(self, ctx: CallContext, request_id: str, *, approver: str, comment: str = "") -> Request:
        return approve_request(
            ctx,
            self.requests(),
            request_id,
            approver=approver,
            comment=comment,
            approval_policy=self.approval_policy(),
            audit=self.audit(),
        )

    def deny_request(self, ctx: CallContext, request_id: str, *, approver: str, comment: str = "") -> Request:
        return deny_request(
            ctx,
            self.requests(),
            request_id,
            approver=approver,
            comment=comment,
            approval_policy=self.approval_policy(),
            audit=self.audit(),
        )

    def invoke_break_glass(
        self,
        ctx: CallContext,
        *,
        invoker: str,
        profile: str,
        reason_code: str,
        justification: str,
        duration: timedelta,
        now: datetime | None = None,
    ) -> BreakGlassEvent:
        return invoke_break_glass(
            ctx,
            self.break_glass_events(),
            invoker=invoker,
            profile=profile,
            reason_code=reason_code,
            justification=justification,
            duration=duration,
            policy=self.break_glass_policy(),
            rate_limits=self.rate_limit_policy(),
            audit=self.audit(),
            now=now,
        )

    def close_break_glass(self, ctx: CallContext, event_id: str, *, closed_by: str, reason: str) -> BreakGlassEvent:
        return close_break_glass(
            ctx,
            self.break_glass_events(),
            event_id,
            closed_by=closed_by,
            reason=reason,
            audit=self.audit(),
        )
