"""Store and sink contracts consumed by the core.

Implementations live outside the decision logic: ``sentinel_broker.dynamodb``
for production, hand-written fakes in the test suite.

``update`` owns ``updated_at``: the value on the record passed in is the one
last read, and a store that supports conditional writes rejects the update
with ``ConcurrentModificationError`` when the stored value differs.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .approval import Request
    from .audit import ApprovalLogEntry, BreakGlassLogEntry, DecisionLogEntry
    from .breakglass import BreakGlassEvent
    from .context import CallContext
    from .session import ServerSession

DEFAULT_QUERY_LIMIT = 100
MAX_QUERY_LIMIT = 1000


def effective_limit(limit: int) -> int:
    if limit <= 0:
        return DEFAULT_QUERY_LIMIT
    return min(limit, MAX_QUERY_LIMIT)


class RequestStore(Protocol):
    def create(self, ctx: CallContext, request: Request) -> None: ...

    def get(self, ctx: CallContext, request_id: str) -> Request: ...

    def update(self, ctx: CallContext, request: Request) -> None: ...

    def list_by_requester(self, ctx: CallContext, requester: str, limit: int) -> list[Request]: ...


class BreakGlassStore(Protocol):
    def create(self, ctx: CallContext, event: BreakGlassEvent) -> None: ...

    def get(self, ctx: CallContext, event_id: str) -> BreakGlassEvent: ...

    def update(self, ctx: CallContext, event: BreakGlassEvent) -> None: ...

    def list_by_invoker(self, ctx: CallContext, invoker: str, limit: int) -> list[BreakGlassEvent]: ...

    def get_last_by_invoker_and_profile(
        self, ctx: CallContext, invoker: str, profile: str
    ) -> BreakGlassEvent | None: ...

    def count_by_invoker_since(self, ctx: CallContext, invoker: str, since: datetime) -> int: ...

    def count_by_profile_since(self, ctx: CallContext, profile: str, since: datetime) -> int: ...


class SessionStore(Protocol):
    def create(self, ctx: CallContext, session: ServerSession) -> None: ...

    def get(self, ctx: CallContext, session_id: str) -> ServerSession: ...

    def update(self, ctx: CallContext, session: ServerSession) -> None: ...

    def delete(self, ctx: CallContext, session_id: str) -> None: ...

    def list_by_user(self, ctx: CallContext, user: str, limit: int) -> list[ServerSession]: ...

    def list_by_status(self, ctx: CallContext, status: str, limit: int) -> list[ServerSession]: ...

    def list_by_profile(self, ctx: CallContext, profile: str, limit: int) -> list[ServerSession]: ...

    def list_by_time_range(
        self, ctx: CallContext, start: datetime, end: datetime, limit: int
    ) -> list[ServerSession]: ...

    def find_active_by_server_instance(
        self, ctx: CallContext, server_instance_id: str
    ) -> ServerSession | None: ...

    def touch(self, ctx: CallContext, session_id: str) -> None: ...

    def get_by_source_identity(self, ctx: CallContext, source_identity: str) -> ServerSession | None: ...


class Logger(Protocol):
    def log_decision(self, entry: DecisionLogEntry) -> None: ...

    def log_approval(self, entry: ApprovalLogEntry) -> None: ...

    def log_break_glass(self, entry: BreakGlassLogEntry) -> None: ...
