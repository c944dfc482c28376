from __future__ import annotations

import json
from datetime import timedelta

import pytest

from sentinel_broker.breakglass import (
    REASON_INCIDENT,
    STATUS_CLOSED,
    BreakGlassEvent,
    invoke_break_glass,
    load_break_glass_policy,
)
from sentinel_broker.context import background
from sentinel_broker.errors import (
    AuthorizationError,
    PolicyParseError,
    PolicyValidationError,
    RateLimitExceededError,
    StoreError,
)
from sentinel_broker.ids import new_hex_id
from sentinel_broker.ratelimit import (
    REASON_COOLDOWN,
    REASON_PROFILE_QUOTA,
    REASON_USER_QUOTA,
    check_rate_limit,
    find_rate_limit_rule,
    load_rate_limit_policy,
)

from conftest import NOW, FakeBreakGlassStore, hours

RATE_LIMITS = """
version: "1"
rules:
  - name: prod
    profiles: [production]
    cooldown: 30m
    max_per_user: 3
    max_per_profile: 5
    quota_window: 24h
    escalation_threshold: 2
  - name: default
    cooldown: 5m
"""

BREAK_GLASS_POLICY = """
rules:
  - name: prod-oncall
    profiles: [production]
    users: [alice, bob, carol]
"""

JUSTIFICATION = "primary database is down, paging on-call"


def _closed(invoker: str = "alice", profile: str = "production", age: timedelta = hours(2)) -> BreakGlassEvent:
    return BreakGlassEvent(
        id=new_hex_id(),
        invoker=invoker,
        profile=profile,
        reason_code=REASON_INCIDENT,
        justification=JUSTIFICATION,
        duration=hours(1),
        status=STATUS_CLOSED,
        created_at=NOW - age,
        updated_at=NOW - age,
        expires_at=NOW - age + hours(1),
    )


def test_rule_lookup_falls_back_to_wildcard():
    policy = load_rate_limit_policy(RATE_LIMITS)
    assert find_rate_limit_rule(policy, "production").name == "prod"
    assert find_rate_limit_rule(policy, "dev").name == "default"
    assert find_rate_limit_rule(None, "production") is None
    assert policy.rules[0].quota_window == hours(24)


@pytest.mark.parametrize(
    "text,message",
    [
        ("rules: []", "at least one rule"),
        ("rules:\n  - cooldown: 5m", "missing name"),
        ("rules:\n  - name: r\n    max_per_user: 2", "quota_window"),
        ("rules:\n  - name: r\n    escalation_threshold: 2", "must set cooldown"),
        ("rules:\n  - name: r\n    cooldown: 5m\n    max_per_profile: -1", "negative max_per_profile"),
    ],
)
def test_rate_limit_policy_validation(text, message):
    with pytest.raises(PolicyValidationError, match=message):
        load_rate_limit_policy(text)


def test_rate_limit_policy_rejects_non_integer_quota():
    with pytest.raises(PolicyParseError):
        load_rate_limit_policy("rules:\n  - name: r\n    max_per_user: lots\n    quota_window: 1h")


def test_no_policy_allows_without_store_calls():
    store = FakeBreakGlassStore([_closed(age=timedelta(minutes=1))])
    result = check_rate_limit(background(), store, None, "alice", "production", NOW)
    assert result.allowed
    assert store.calls == []


def test_cooldown_blocks_with_retry_after():
    store = FakeBreakGlassStore([_closed(age=timedelta(minutes=10))])
    policy = load_rate_limit_policy(RATE_LIMITS)

    result = check_rate_limit(background(), store, policy, "alice", "production", NOW)

    assert not result.allowed
    assert result.reason == REASON_COOLDOWN
    assert result.retry_after == timedelta(minutes=20)


def test_cooldown_is_per_profile():
    store = FakeBreakGlassStore([_closed(profile="staging", age=timedelta(minutes=1))])
    policy = load_rate_limit_policy(RATE_LIMITS)
    assert check_rate_limit(background(), store, policy, "alice", "production", NOW).allowed


def test_user_quota_counts_only_inside_window():
    events = [_closed(age=hours(h)) for h in (1, 2, 3)] + [_closed(age=hours(30))]
    policy = load_rate_limit_policy(RATE_LIMITS)

    result = check_rate_limit(background(), FakeBreakGlassStore(events), policy, "alice", "production", NOW)

    assert not result.allowed
    assert result.reason == REASON_USER_QUOTA
    assert result.user_count == 3


def test_profile_quota_spans_invokers():
    events = [_closed(invoker=f"user{i}", age=hours(i + 1)) for i in range(5)]
    policy = load_rate_limit_policy(RATE_LIMITS)

    result = check_rate_limit(background(), FakeBreakGlassStore(events), policy, "alice", "production", NOW)

    assert not result.allowed
    assert result.reason == REASON_PROFILE_QUOTA
    assert result.profile_count == 5


def test_escalation_flags_without_blocking():
    events = [_closed(age=hours(1)), _closed(age=hours(2))]
    policy = load_rate_limit_policy(RATE_LIMITS)

    result = check_rate_limit(background(), FakeBreakGlassStore(events), policy, "alice", "production", NOW)

    assert result.allowed
    assert result.should_escalate
    assert result.user_count == 2


def _invoke(store, rate_limits):
    return invoke_break_glass(
        background(),
        store,
        invoker="alice",
        profile="production",
        reason_code=REASON_INCIDENT,
        justification=JUSTIFICATION,
        duration=hours(1),
        policy=load_break_glass_policy(BREAK_GLASS_POLICY),
        rate_limits=rate_limits,
        now=NOW,
    )


def test_invoke_break_glass_enforces_cooldown():
    store = FakeBreakGlassStore([_closed(age=timedelta(minutes=10))])

    with pytest.raises(RateLimitExceededError) as exc:
        _invoke(store, load_rate_limit_policy(RATE_LIMITS))

    assert isinstance(exc.value, AuthorizationError)
    assert exc.value.retry_after == timedelta(minutes=20)
    assert not any(c[0] == "create" for c in store.calls)


def test_invoke_break_glass_warns_on_escalation(capsys):
    store = FakeBreakGlassStore([_closed(age=hours(1)), _closed(age=hours(2))])

    event = _invoke(store, load_rate_limit_policy(RATE_LIMITS))

    assert event.id in store.items
    warning = json.loads(capsys.readouterr().err.strip().splitlines()[0])
    assert warning["message"] == "break-glass escalation threshold reached"
    assert warning["user_count"] == 2


def test_invoke_break_glass_rate_limit_store_error_is_not_an_allow():
    class BrokenCounts(FakeBreakGlassStore):
        def count_by_invoker_since(self, ctx, invoker, since):
            raise StoreError("throttled", table="break-glass", operation="Query")

    store = BrokenCounts()
    with pytest.raises(StoreError):
        _invoke(store, load_rate_limit_policy(RATE_LIMITS))
    assert not any(c[0] == "create" for c in store.calls)
