from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest

from sentinel_broker.approval import AUTO_APPROVE_COMMENT, STATUS_APPROVED, STATUS_DENIED
from sentinel_broker.audit import EVENT_REQUEST_APPROVED, EVENT_REQUEST_CREATED
from sentinel_broker.breakglass import REASON_INCIDENT, STATUS_CLOSED
from sentinel_broker.broker import Broker
from sentinel_broker.config import Settings
from sentinel_broker.context import background
from sentinel_broker.decider import OVERRIDE_APPROVAL
from sentinel_broker.dynamodb import DynamoBreakGlassStore, DynamoRequestStore, DynamoSessionStore
from sentinel_broker.errors import RateLimitExceededError, ValidationError
from sentinel_broker.policy import EFFECT_ALLOW, EFFECT_DENY
from sentinel_broker.policy_loader import CachedPolicyLoader, FilePolicyLoader, SsmPolicyLoader

from conftest import NOW, FakeBreakGlassStore, FakeRequestStore, RecordingLogger, hours

POLICY = """
version: "1"
rules:
  - name: deny-production
    effect: deny
    conditions:
      profiles: [production]
  - name: allow-dev
    effect: allow
    conditions:
      profiles: [dev]
"""

APPROVAL_POLICY = """
rules:
  - name: prod
    profiles: [production]
    approvers: [carol]
    auto_approve:
      users: [alice]
      max_duration: 2h
"""

BREAK_GLASS_POLICY = """
rules:
  - name: prod-oncall
    profiles: [production]
    users: [alice]
"""

RATE_LIMITS = """
rules:
  - name: prod
    profiles: [production]
    cooldown: 1h
"""

JUSTIFICATION = "primary database is down, paging on-call"


def _write(tmp_path: Path, name: str, text: str) -> str:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_from_settings_assembles_lazy_aws_components():
    settings = Settings(
        region="us-east-2",
        policy_parameter="/sentinel/policies/prod",
        request_table="SentinelRequests",
        break_glass_table="SentinelBreakGlass",
        session_table="SentinelSessions",
        policy_cache_ttl_seconds=15,
    )

    broker = Broker.from_settings(settings)

    assert isinstance(broker._policy_loader, CachedPolicyLoader)
    assert isinstance(broker._policy_loader._loader, SsmPolicyLoader)
    assert broker.policy_name == "/sentinel/policies/prod"
    assert isinstance(broker.requests(), DynamoRequestStore)
    assert broker.requests().table_name == "SentinelRequests"
    assert isinstance(broker.break_glass_events(), DynamoBreakGlassStore)
    assert isinstance(broker.sessions()._store, DynamoSessionStore)
    assert broker.logger is None


def test_zero_ttl_skips_the_cache(tmp_path):
    broker = Broker.from_settings(Settings(policy_file=_write(tmp_path, "p.yaml", POLICY), policy_cache_ttl_seconds=0))
    assert isinstance(broker._policy_loader, FilePolicyLoader)


@pytest.mark.parametrize(
    "call,env_name",
    [
        (lambda b: b.load_policy(background()), "SENTINEL_POLICY_PARAMETER"),
        (lambda b: b.requests(), "SENTINEL_REQUEST_TABLE"),
        (lambda b: b.break_glass_events(), "SENTINEL_BREAK_GLASS_TABLE"),
        (lambda b: b.sessions(), "SENTINEL_SESSION_TABLE"),
    ],
)
def test_missing_configuration_names_the_variable(call, env_name):
    with pytest.raises(ValidationError) as exc:
        call(Broker.from_settings(Settings()))
    assert env_name in str(exc.value)


def test_decide_reads_policy_file_and_writes_decision_log(tmp_path):
    log_path = tmp_path / "logs" / "decisions.jsonl"
    settings = Settings(
        policy_file=_write(tmp_path, "policy.yaml", POLICY),
        decision_log_file=str(log_path),
    )
    broker = Broker.from_settings(settings)

    out = broker.decide(background(), "bob", "dev", requested_duration=hours(1), now=NOW)

    assert out.effect == EFFECT_ALLOW
    assert out.lookup_errors == ()
    entry = json.loads(log_path.read_text(encoding="utf-8").strip())
    assert entry["effect"] == EFFECT_ALLOW
    assert entry["policy_path"] == settings.policy_file


def test_decide_consults_configured_override_stores(tmp_path):
    requests = FakeRequestStore()
    logger = RecordingLogger()
    broker = Broker(
        Settings(
            policy_file=_write(tmp_path, "policy.yaml", POLICY),
            approval_policy_file=_write(tmp_path, "a.yaml", APPROVAL_POLICY),
        ),
        policy_loader=FilePolicyLoader(),
        request_store=requests,
        logger=logger,
    )
    req = broker.create_request(
        background(),
        requester="alice",
        profile="production",
        justification="deploying hotfix 1234",
        duration=hours(1),
        now=NOW - timedelta(minutes=5),
    )
    assert req.status == STATUS_APPROVED
    assert req.approver_comment == AUTO_APPROVE_COMMENT

    out = broker.decide(background(), "alice", "production", requested_duration=hours(1), now=NOW)

    assert out.override == OVERRIDE_APPROVAL
    assert out.approved_request_id == req.id
    assert logger.decisions[-1].to_dict()["effect"] == EFFECT_DENY
    assert [e.event for e in logger.approvals] == [EVENT_REQUEST_CREATED, EVENT_REQUEST_APPROVED]


def test_approve_and_deny_use_approval_policy(tmp_path):
    requests = FakeRequestStore()
    broker = Broker(
        Settings(approval_policy_file=_write(tmp_path, "a.yaml", APPROVAL_POLICY)),
        request_store=requests,
        logger=None,
    )
    first, second = (
        broker.create_request(
            background(),
            requester="bob",
            profile="production",
            justification="rotate database keys",
            duration=hours(1),
            now=NOW,
        )
        for _ in range(2)
    )

    assert broker.approve_request(background(), first.id, approver="carol").status == STATUS_APPROVED
    assert broker.deny_request(background(), second.id, approver="carol", comment="not today").status == STATUS_DENIED


def test_break_glass_uses_policy_and_rate_limit_files(tmp_path):
    events = FakeBreakGlassStore()
    broker = Broker(
        Settings(
            break_glass_policy_file=_write(tmp_path, "bg.yaml", BREAK_GLASS_POLICY),
            rate_limit_policy_file=_write(tmp_path, "rl.yaml", RATE_LIMITS),
        ),
        break_glass_store=events,
        logger=None,
    )

    def invoke(at):
        return broker.invoke_break_glass(
            background(),
            invoker="alice",
            profile="production",
            reason_code=REASON_INCIDENT,
            justification=JUSTIFICATION,
            duration=hours(1),
            now=at,
        )

    event = invoke(NOW)
    closed = broker.close_break_glass(background(), event.id, closed_by="alice", reason="resolved")
    assert closed.status == STATUS_CLOSED

    with pytest.raises(RateLimitExceededError):
        invoke(NOW + timedelta(minutes=10))


def test_unreadable_policy_file_is_a_validation_error(tmp_path):
    broker = Broker(Settings(break_glass_policy_file=str(tmp_path / "missing.yaml")))
    with pytest.raises(ValidationError, match="cannot read policy file"):
        broker.break_glass_policy()
