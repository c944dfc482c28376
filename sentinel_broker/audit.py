"""Append-only audit records for decisions, approvals and break-glass.

Field names are consumed by compliance tooling; keep them stable. Optional
fields are dropped from the serialized record when empty.
"""

from __future__ import annotations

import os
import sys
import threading
from dataclasses import asdict, dataclass
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Sequence, TextIO

from .clock import iso, utcnow
from .events import dumps_line, warn

if TYPE_CHECKING:
    from .approval import Request
    from .breakglass import BreakGlassEvent
    from .policy import AccessRequest, Decision
    from .stores import Logger

EVENT_REQUEST_CREATED = "request.created"
EVENT_REQUEST_APPROVED = "request.approved"
EVENT_REQUEST_DENIED = "request.denied"

EVENT_BREAK_GLASS_INVOKED = "breakglass.invoked"
EVENT_BREAK_GLASS_CLOSED = "breakglass.closed"
EVENT_BREAK_GLASS_EXPIRED = "breakglass.expired"


def _compact(raw: dict[str, Any], optional: Sequence[str]) -> dict[str, Any]:
    out = dict(raw)
    for key in optional:
        if not out.get(key):
            out.pop(key, None)
    return out


@dataclass(frozen=True)
class DecisionLogEntry:
    timestamp: str
    user: str
    profile: str
    effect: str
    rule: str
    rule_index: int
    reason: str
    policy_path: str
    request_id: str = ""
    source_identity: str = ""
    role_arn: str = ""
    session_duration_seconds: int = 0
    approved_request_id: str = ""
    break_glass_event_id: str = ""
    drift_status: str = ""
    drift_message: str = ""

    _OPTIONAL = (
        "request_id",
        "source_identity",
        "role_arn",
        "session_duration_seconds",
        "approved_request_id",
        "break_glass_event_id",
        "drift_status",
        "drift_message",
    )

    def to_dict(self) -> dict[str, Any]:
        return _compact(asdict(self), self._OPTIONAL)


@dataclass(frozen=True)
class CredentialIssuanceFields:
    request_id: str = ""
    source_identity: str = ""
    role_arn: str = ""
    session_duration: timedelta = timedelta(0)
    approved_request_id: str = ""
    break_glass_event_id: str = ""
    drift_status: str = ""
    drift_message: str = ""


def new_decision_log_entry(
    request: AccessRequest,
    decision: Decision,
    policy_path: str,
) -> DecisionLogEntry:
    return DecisionLogEntry(
        timestamp=iso(utcnow()),
        user=request.user,
        profile=request.profile,
        effect=decision.effect,
        rule=decision.matched_rule,
        rule_index=decision.rule_index,
        reason=decision.reason,
        policy_path=policy_path,
    )


def new_enhanced_decision_log_entry(
    request: AccessRequest,
    decision: Decision,
    policy_path: str,
    creds: CredentialIssuanceFields | None,
) -> DecisionLogEntry:
    entry = new_decision_log_entry(request, decision, policy_path)
    if creds is None:
        return entry
    seconds = int(creds.session_duration.total_seconds())
    return DecisionLogEntry(
        timestamp=entry.timestamp,
        user=entry.user,
        profile=entry.profile,
        effect=entry.effect,
        rule=entry.rule,
        rule_index=entry.rule_index,
        reason=entry.reason,
        policy_path=entry.policy_path,
        request_id=creds.request_id,
        source_identity=creds.source_identity,
        role_arn=creds.role_arn,
        session_duration_seconds=seconds if seconds > 0 else 0,
        approved_request_id=creds.approved_request_id,
        break_glass_event_id=creds.break_glass_event_id,
        drift_status=creds.drift_status,
        drift_message=creds.drift_message,
    )


@dataclass(frozen=True)
class ApprovalLogEntry:
    timestamp: str
    event: str
    request_id: str
    requester: str
    profile: str
    status: str
    actor: str
    justification: str = ""
    duration_seconds: int = 0
    approver: str = ""
    approver_comment: str = ""
    auto_approved: bool = False

    _OPTIONAL = ("justification", "duration_seconds", "approver", "approver_comment", "auto_approved")

    def to_dict(self) -> dict[str, Any]:
        return _compact(asdict(self), self._OPTIONAL)


def new_approval_log_entry(
    event: str, request: Request, actor: str, *, auto_approved: bool = False
) -> ApprovalLogEntry:
    justification = ""
    duration_seconds = 0
    approver = ""
    approver_comment = ""
    if event == EVENT_REQUEST_CREATED:
        justification = request.justification
        duration_seconds = max(0, int(request.duration.total_seconds()))
    elif event in (EVENT_REQUEST_APPROVED, EVENT_REQUEST_DENIED):
        approver = request.approver
        approver_comment = request.approver_comment
    return ApprovalLogEntry(
        timestamp=iso(utcnow()),
        event=event,
        request_id=request.id,
        requester=request.requester,
        profile=request.profile,
        status=request.status,
        actor=actor,
        justification=justification,
        duration_seconds=duration_seconds,
        approver=approver,
        approver_comment=approver_comment,
        auto_approved=auto_approved,
    )


@dataclass(frozen=True)
class BreakGlassLogEntry:
    timestamp: str
    event: str
    event_id: str
    request_id: str
    invoker: str
    profile: str
    reason_code: str
    justification: str
    status: str
    duration_seconds: int
    expires_at: str
    closed_by: str = ""
    closed_reason: str = ""

    _OPTIONAL = ("closed_by", "closed_reason")

    def to_dict(self) -> dict[str, Any]:
        return _compact(asdict(self), self._OPTIONAL)


def new_break_glass_log_entry(event: str, bg: BreakGlassEvent) -> BreakGlassLogEntry:
    closed = event == EVENT_BREAK_GLASS_CLOSED
    return BreakGlassLogEntry(
        timestamp=iso(utcnow()),
        event=event,
        event_id=bg.id,
        request_id=bg.request_id,
        invoker=bg.invoker,
        profile=bg.profile,
        reason_code=bg.reason_code,
        justification=bg.justification,
        status=bg.status,
        duration_seconds=int(bg.duration.total_seconds()),
        expires_at=iso(bg.expires_at),
        closed_by=bg.closed_by if closed else "",
        closed_reason=bg.closed_reason if closed else "",
    )


class JsonLogger:
    """Writes one compact JSON object per line."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def _write(self, obj: dict[str, Any]) -> None:
        line = dumps_line(obj) + "\n"
        with self._lock:
            self._stream.write(line)
            self._stream.flush()

    def log_decision(self, entry: DecisionLogEntry) -> None:
        self._write(entry.to_dict())

    def log_approval(self, entry: ApprovalLogEntry) -> None:
        self._write(entry.to_dict())

    def log_break_glass(self, entry: BreakGlassLogEntry) -> None:
        self._write(entry.to_dict())


class NopLogger:
    def log_decision(self, entry: DecisionLogEntry) -> None:
        return None

    def log_approval(self, entry: ApprovalLogEntry) -> None:
        return None

    def log_break_glass(self, entry: BreakGlassLogEntry) -> None:
        return None


class FanOutLogger:
    """Feeds every entry to each destination. Not retried, not transactional."""

    def __init__(self, loggers: Sequence[Logger]) -> None:
        self._loggers = list(loggers)

    def _each(self, method: str, entry: Any) -> None:
        for logger in self._loggers:
            try:
                getattr(logger, method)(entry)
            except Exception as e:
                warn("audit destination failed", destination=type(logger).__name__, error=e)

    def log_decision(self, entry: DecisionLogEntry) -> None:
        self._each("log_decision", entry)

    def log_approval(self, entry: ApprovalLogEntry) -> None:
        self._each("log_approval", entry)

    def log_break_glass(self, entry: BreakGlassLogEntry) -> None:
        self._each("log_break_glass", entry)


def open_file_logger(path: str | Path) -> JsonLogger:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    stream = p.open("a", encoding="utf-8")
    try:
        os.chmod(p, 0o600)
    except OSError as e:
        warn("failed to apply 0600 permissions to decision log", path=str(p), error=e)
    return JsonLogger(stream)


def build_logger(*, log_file: str = "", to_stdout: bool = False) -> Logger | None:
    destinations: list[Logger] = []
    if to_stdout:
        destinations.append(JsonLogger(sys.stdout))
    if log_file:
        destinations.append(open_file_logger(log_file))
    if not destinations:
        return None
    if len(destinations) == 1:
        return destinations[0]
    return FanOutLogger(destinations)


class DecisionAuditLog:
    """Side-effect-only sink in front of a ``Logger``.

    A missing logger is a silent no-op, and a failing logger is reported on
    stderr; neither ever reaches the caller.
    """

    def __init__(self, logger: Logger | None = None) -> None:
        self._logger = logger

    @property
    def enabled(self) -> bool:
        return self._logger is not None

    def append(self, entry: DecisionLogEntry) -> None:
        self._call("log_decision", entry)

    def append_approval(self, entry: ApprovalLogEntry) -> None:
        self._call("log_approval", entry)

    def append_break_glass(self, entry: BreakGlassLogEntry) -> None:
        self._call("log_break_glass", entry)

    def _call(self, method: str, entry: Any) -> None:
        if self._logger is None:
            return
        try:
            getattr(self._logger, method)(entry)
        except Exception as e:
            warn("audit log write failed", method=method, error=e)
