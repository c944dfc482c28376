"""Issued-access sessions and their revoke/expire state machine.

``active`` moves to ``revoked`` only through ``SessionManager.revoke``; both
``revoked`` and ``expired`` are terminal. Expiry is also derived at read
time from ``expires_at``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .clock import iso, utcnow
from .errors import (
    SessionAlreadyRevokedError,
    SessionExpiredError,
    SessionNotFoundError,
    ValidationError,
)
from .ids import is_hex_id, new_hex_id

if TYPE_CHECKING:
    from .context import CallContext
    from .stores import SessionStore

STATUS_ACTIVE = "active"
STATUS_REVOKED = "revoked"
STATUS_EXPIRED = "expired"
VALID_STATUSES = {STATUS_ACTIVE, STATUS_REVOKED, STATUS_EXPIRED}
TERMINAL_STATUSES = {STATUS_REVOKED, STATUS_EXPIRED}

DEFAULT_SESSION_TTL = timedelta(hours=1)


def validate_session_id(session_id: str) -> bool:
    return is_hex_id(session_id)


def new_session_id() -> str:
    return new_hex_id()


def _require_session_id(session_id: str) -> None:
    if not validate_session_id(session_id):
        raise ValidationError("invalid session ID format")


def parse_status(raw: str) -> str:
    s = str(raw or "").strip().lower()
    if s not in VALID_STATUSES:
        raise ValidationError(f"invalid status: {raw!r} (valid: {', '.join(sorted(VALID_STATUSES))})")
    return s


@dataclass
class ServerSession:
    id: str
    user: str
    profile: str
    server_instance_id: str
    status: str
    started_at: datetime
    last_access_at: datetime
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    request_count: int = 0
    source_identity: str = ""
    revoked_by: str = ""
    revoked_reason: str = ""
    version: str = field(default="", repr=False, compare=False)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.status == STATUS_EXPIRED or (now or utcnow()) >= self.expires_at

    def is_active(self, now: datetime | None = None) -> bool:
        return self.status == STATUS_ACTIVE and not self.is_expired(now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user": self.user,
            "profile": self.profile,
            "server_instance_id": self.server_instance_id,
            "status": self.status,
            "started_at": iso(self.started_at),
            "last_access_at": iso(self.last_access_at),
            "expires_at": iso(self.expires_at),
            "request_count": self.request_count,
            "source_identity": self.source_identity,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "revoked_by": self.revoked_by,
            "revoked_reason": self.revoked_reason,
        }

    def validate(self) -> None:
        if not validate_session_id(self.id):
            raise ValidationError("invalid session ID format")
        if not self.user:
            raise ValidationError("user cannot be empty")
        if not self.profile:
            raise ValidationError("profile cannot be empty")
        if self.status not in VALID_STATUSES:
            raise ValidationError(f"invalid status: {self.status!r}")


def new_server_session(
    *,
    user: str,
    profile: str,
    server_instance_id: str,
    source_identity: str = "",
    ttl: timedelta = DEFAULT_SESSION_TTL,
    now: datetime | None = None,
) -> ServerSession:
    at = now or utcnow()
    return ServerSession(
        id=new_session_id(),
        user=user,
        profile=profile,
        server_instance_id=server_instance_id,
        status=STATUS_ACTIVE,
        started_at=at,
        last_access_at=at,
        expires_at=at + ttl,
        created_at=at,
        updated_at=at,
        source_identity=source_identity,
    )


@dataclass(frozen=True)
class RevokeInput:
    session_id: str
    revoked_by: str
    reason: str


class SessionManager:
    """Session operations over an injected ``SessionStore``.

    Inputs are validated before any store call. Store errors propagate
    unchanged; no retries are attempted here.
    """

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    def _check_id(self, session_id: str) -> None:
        _require_session_id(session_id)

    def create(self, ctx: CallContext, session: ServerSession) -> ServerSession:
        session.validate()
        if session.status != STATUS_ACTIVE:
            raise ValidationError("new sessions must be active")
        ctx.check()
        self._store.create(ctx, session)
        return session

    def get(self, ctx: CallContext, session_id: str) -> ServerSession:
        self._check_id(session_id)
        ctx.check()
        return self._store.get(ctx, session_id)

    def touch(self, ctx: CallContext, session_id: str) -> None:
        self._check_id(session_id)
        ctx.check()
        self._store.touch(ctx, session_id)

    def delete(self, ctx: CallContext, session_id: str) -> None:
        self._check_id(session_id)
        ctx.check()
        self._store.delete(ctx, session_id)

    def revoke(self, ctx: CallContext, inp: RevokeInput, *, now: datetime | None = None) -> ServerSession:
        self._check_id(inp.session_id)
        if not inp.reason:
            raise ValidationError("reason is required for revocation")
        if not inp.revoked_by:
            raise ValidationError("revoked_by is required for revocation")
        ctx.check()
        sess = self._store.get(ctx, inp.session_id)

        at = now or utcnow()
        if sess.status == STATUS_REVOKED:
            raise SessionAlreadyRevokedError()
        if sess.is_expired(at):
            raise SessionExpiredError()
        if sess.status != STATUS_ACTIVE:
            # Unknown stored status: refuse rather than overwrite.
            raise SessionAlreadyRevokedError(f"session in unexpected status {sess.status!r}")

        sess.status = STATUS_REVOKED
        sess.revoked_by = inp.revoked_by
        sess.revoked_reason = inp.reason
        ctx.check()
        self._store.update(ctx, sess)
        return sess

    def list_by_user(self, ctx: CallContext, user: str, limit: int) -> list[ServerSession]:
        ctx.check()
        return self._store.list_by_user(ctx, user, limit)

    def list_by_status(self, ctx: CallContext, status: str, limit: int) -> list[ServerSession]:
        ctx.check()
        return self._store.list_by_status(ctx, status, limit)

    def list_by_profile(self, ctx: CallContext, profile: str, limit: int) -> list[ServerSession]:
        ctx.check()
        return self._store.list_by_profile(ctx, profile, limit)

    def list_by_time_range(
        self, ctx: CallContext, start: datetime, end: datetime, limit: int
    ) -> list[ServerSession]:
        ctx.check()
        return self._store.list_by_time_range(ctx, start, end, limit)

    def find_active_by_server_instance(self, ctx: CallContext, server_instance_id: str) -> ServerSession | None:
        ctx.check()
        return self._store.find_active_by_server_instance(ctx, server_instance_id)

    def get_by_source_identity(self, ctx: CallContext, source_identity: str) -> ServerSession | None:
        ctx.check()
        return self._store.get_by_source_identity(ctx, source_identity)

    def list_sessions(
        self,
        ctx: CallContext,
        *,
        limit: int,
        user: str = "",
        status: str = "",
        profile: str = "",
        since: datetime | None = None,
        now: datetime | None = None,
    ) -> list[ServerSession]:
        """Combine filters over the single-attribute store queries.

        A time range is fetched as a superset and narrowed in memory. Without
        one, the most selective index is queried in the order status, profile,
        user; with no filters at all, active sessions are listed.
        """
        if status:
            status = parse_status(status)

        if since is not None:
            out = self.list_by_time_range(ctx, since, now or utcnow(), limit)
            return [
                s
                for s in out
                if (not status or s.status == status)
                and (not profile or s.profile == profile)
                and (not user or s.user == user)
            ]
        if status:
            out = self.list_by_status(ctx, status, limit)
            return [s for s in out if (not user or s.user == user) and (not profile or s.profile == profile)]
        if profile:
            out = self.list_by_profile(ctx, profile, limit)
            return [s for s in out if not user or s.user == user]
        if user:
            return self.list_by_user(ctx, user, limit)
        return self.list_by_status(ctx, STATUS_ACTIVE, limit)


def is_session_revoked(ctx: CallContext, store: SessionStore, session_id: str) -> bool:
    """True only for an existing revoked session. Not-found reads as not revoked."""
    _require_session_id(session_id)
    ctx.check()
    try:
        sess = store.get(ctx, session_id)
    except SessionNotFoundError:
        return False
    return sess.status == STATUS_REVOKED
