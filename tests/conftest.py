from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone

import pytest

from sentinel_broker.errors import (
    BreakGlassNotFoundError,
    RequestNotFoundError,
    SessionExistsError,
    SessionNotFoundError,
)
from sentinel_broker.drift import DRIFT_OK, DriftCheckResult
from sentinel_broker.session import STATUS_ACTIVE

NOW = datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc)  # Wednesday


class FakeRequestStore:
    def __init__(self, items=None, *, error: Exception | None = None) -> None:
        self.items = {r.id: r for r in (items or [])}
        self.error = error
        self.calls: list[tuple] = []

    def create(self, ctx, request) -> None:
        self.calls.append(("create", request.id))
        self.items[request.id] = copy.deepcopy(request)

    def get(self, ctx, request_id):
        self.calls.append(("get", request_id))
        if request_id not in self.items:
            raise RequestNotFoundError(f"{request_id}: request not found")
        return copy.deepcopy(self.items[request_id])

    def update(self, ctx, request) -> None:
        self.calls.append(("update", request.id))
        self.items[request.id] = copy.deepcopy(request)

    def list_by_requester(self, ctx, requester, limit):
        self.calls.append(("list_by_requester", requester, limit))
        if self.error is not None:
            raise self.error
        return [copy.deepcopy(r) for r in self.items.values() if r.requester == requester][:limit]


class FakeBreakGlassStore:
    def __init__(self, items=None, *, error: Exception | None = None) -> None:
        self.items = {e.id: e for e in (items or [])}
        self.error = error
        self.calls: list[tuple] = []

    def create(self, ctx, event) -> None:
        self.calls.append(("create", event.id))
        self.items[event.id] = copy.deepcopy(event)

    def get(self, ctx, event_id):
        self.calls.append(("get", event_id))
        if event_id not in self.items:
            raise BreakGlassNotFoundError(f"{event_id}: break-glass event not found")
        return copy.deepcopy(self.items[event_id])

    def update(self, ctx, event) -> None:
        self.calls.append(("update", event.id))
        self.items[event.id] = copy.deepcopy(event)

    def list_by_invoker(self, ctx, invoker, limit):
        self.calls.append(("list_by_invoker", invoker, limit))
        if self.error is not None:
            raise self.error
        return [copy.deepcopy(e) for e in self.items.values() if e.invoker == invoker][:limit]

    def get_last_by_invoker_and_profile(self, ctx, invoker, profile):
        self.calls.append(("get_last_by_invoker_and_profile", invoker, profile))
        rows = [e for e in self.items.values() if e.invoker == invoker and e.profile == profile]
        if not rows:
            return None
        return copy.deepcopy(max(rows, key=lambda e: e.created_at))

    def count_by_invoker_since(self, ctx, invoker, since):
        self.calls.append(("count_by_invoker_since", invoker, since))
        return sum(1 for e in self.items.values() if e.invoker == invoker and e.created_at >= since)

    def count_by_profile_since(self, ctx, profile, since):
        self.calls.append(("count_by_profile_since", profile, since))
        return sum(1 for e in self.items.values() if e.profile == profile and e.created_at >= since)


class FakeSessionStore:
    def __init__(self, items=None) -> None:
        self.items = {s.id: s for s in (items or [])}
        self.calls: list[tuple] = []

    def _count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    @property
    def update_calls(self) -> int:
        return self._count("update")

    @property
    def get_calls(self) -> int:
        return self._count("get")

    def create(self, ctx, session) -> None:
        self.calls.append(("create", session.id))
        if session.id in self.items:
            raise SessionExistsError(f"{session.id}: session already exists")
        self.items[session.id] = copy.deepcopy(session)

    def get(self, ctx, session_id):
        self.calls.append(("get", session_id))
        if session_id not in self.items:
            raise SessionNotFoundError(f"{session_id}: session not found")
        return copy.deepcopy(self.items[session_id])

    def update(self, ctx, session) -> None:
        self.calls.append(("update", session.id))
        self.items[session.id] = copy.deepcopy(session)

    def delete(self, ctx, session_id) -> None:
        self.calls.append(("delete", session_id))
        self.items.pop(session_id, None)

    def _newest(self, rows, limit):
        return sorted(rows, key=lambda s: s.created_at, reverse=True)[:limit]

    def list_by_user(self, ctx, user, limit):
        self.calls.append(("list_by_user", user, limit))
        return self._newest([s for s in self.items.values() if s.user == user], limit)

    def list_by_status(self, ctx, status, limit):
        self.calls.append(("list_by_status", status, limit))
        return self._newest([s for s in self.items.values() if s.status == status], limit)

    def list_by_profile(self, ctx, profile, limit):
        self.calls.append(("list_by_profile", profile, limit))
        return self._newest([s for s in self.items.values() if s.profile == profile], limit)

    def list_by_time_range(self, ctx, start, end, limit):
        self.calls.append(("list_by_time_range", start, end, limit))
        return self._newest([s for s in self.items.values() if start <= s.created_at <= end], limit)

    def find_active_by_server_instance(self, ctx, server_instance_id):
        self.calls.append(("find_active_by_server_instance", server_instance_id))
        rows = [
            s
            for s in self.items.values()
            if s.server_instance_id == server_instance_id and s.status == STATUS_ACTIVE
        ]
        return self._newest(rows, 1)[0] if rows else None

    def touch(self, ctx, session_id) -> None:
        self.calls.append(("touch", session_id))
        if session_id not in self.items:
            raise SessionNotFoundError(f"{session_id}: session not found")
        self.items[session_id].request_count += 1

    def get_by_source_identity(self, ctx, source_identity):
        self.calls.append(("get_by_source_identity", source_identity))
        for s in self.items.values():
            if s.source_identity == source_identity:
                return copy.deepcopy(s)
        return None


class RecordingLogger:
    def __init__(self) -> None:
        self.decisions: list = []
        self.approvals: list = []
        self.break_glass: list = []

    def log_decision(self, entry) -> None:
        self.decisions.append(entry)

    def log_approval(self, entry) -> None:
        self.approvals.append(entry)

    def log_break_glass(self, entry) -> None:
        self.break_glass.append(entry)


class ExplodingLogger:
    def log_decision(self, entry) -> None:
        raise RuntimeError("disk full")

    def log_approval(self, entry) -> None:
        raise RuntimeError("disk full")

    def log_break_glass(self, entry) -> None:
        raise RuntimeError("disk full")


class StaticDriftChecker:
    def __init__(self, status: str = DRIFT_OK, message: str = "", error: Exception | None = None) -> None:
        self.status = status
        self.message = message
        self.error = error
        self.calls: list[str] = []

    def check_role(self, ctx, role_arn):
        self.calls.append(role_arn)
        if self.error is not None:
            raise self.error
        return DriftCheckResult(status=self.status, role_arn=role_arn, message=self.message)


def hours(n: float) -> timedelta:
    return timedelta(hours=n)


@pytest.fixture
def now() -> datetime:
    return NOW
