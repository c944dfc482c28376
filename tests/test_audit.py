from __future__ import annotations

import io
import json
import os
import stat
from datetime import timedelta

from sentinel_broker.approval import STATUS_PENDING, Request
from sentinel_broker.audit import (
    EVENT_REQUEST_CREATED,
    CredentialIssuanceFields,
    DecisionAuditLog,
    FanOutLogger,
    JsonLogger,
    NopLogger,
    build_logger,
    new_approval_log_entry,
    new_decision_log_entry,
    new_enhanced_decision_log_entry,
    open_file_logger,
)
from sentinel_broker.policy import AccessRequest, Decision

from conftest import NOW, ExplodingLogger, RecordingLogger, hours

DECISION = Decision(effect="allow", matched_rule="oncall", rule_index=2, reason="")
REQUEST = AccessRequest(user="alice", profile="production", time=NOW)


def test_basic_entry_omits_optional_fields():
    entry = new_decision_log_entry(REQUEST, DECISION, "/sentinel/policy")
    out = entry.to_dict()
    assert out["user"] == "alice"
    assert out["rule"] == "oncall"
    assert out["rule_index"] == 2
    assert out["policy_path"] == "/sentinel/policy"
    for key in ("request_id", "role_arn", "session_duration_seconds", "approved_request_id", "drift_status"):
        assert key not in out


def test_enhanced_entry_carries_issuance_fields():
    creds = CredentialIssuanceFields(
        request_id="req-1",
        source_identity="sentinel:alice:abc",
        role_arn="arn:aws:iam::123456789012:role/Prod",
        session_duration=timedelta(minutes=45),
        break_glass_event_id="0123456789abcdef",
    )
    out = new_enhanced_decision_log_entry(REQUEST, DECISION, "p", creds).to_dict()
    assert out["session_duration_seconds"] == 45 * 60
    assert out["break_glass_event_id"] == "0123456789abcdef"
    assert "approved_request_id" not in out


def test_entry_records_policy_effect():
    deny = Decision(effect="deny", matched_rule="deny-prod", rule_index=0, reason="locked")
    out = new_enhanced_decision_log_entry(REQUEST, deny, "p", None).to_dict()
    assert out["effect"] == "deny"
    assert out["rule"] == "deny-prod"


def test_json_logger_writes_compact_sorted_lines():
    buf = io.StringIO()
    logger = JsonLogger(buf)
    logger.log_decision(new_decision_log_entry(REQUEST, DECISION, "p"))
    logger.log_decision(new_decision_log_entry(REQUEST, DECISION, "p"))
    lines = buf.getvalue().splitlines()
    assert len(lines) == 2
    assert ", " not in lines[0] and ": " not in lines[0]
    parsed = json.loads(lines[0])
    assert list(parsed) == sorted(parsed)


def test_approval_entry_for_created_event():
    req = Request(
        id="0123456789abcdef",
        requester="bob",
        profile="production",
        justification="rotate the database keys",
        duration=hours(2),
        status=STATUS_PENDING,
        created_at=NOW,
        updated_at=NOW,
        expires_at=NOW + hours(24),
    )
    out = new_approval_log_entry(EVENT_REQUEST_CREATED, req, "bob").to_dict()
    assert out["event"] == "request.created"
    assert out["justification"] == "rotate the database keys"
    assert out["duration_seconds"] == 7200
    assert "auto_approved" not in out
    assert "approver" not in out


def test_fan_out_continues_past_failing_destination(capsys):
    good = RecordingLogger()
    fan = FanOutLogger([ExplodingLogger(), good, NopLogger()])
    entry = new_decision_log_entry(REQUEST, DECISION, "p")
    fan.log_decision(entry)
    assert good.decisions == [entry]
    warning = json.loads(capsys.readouterr().err.strip())
    assert warning["destination"] == "ExplodingLogger"


def test_audit_log_without_logger_is_noop():
    log = DecisionAuditLog()
    assert not log.enabled
    log.append(new_decision_log_entry(REQUEST, DECISION, "p"))


def test_audit_log_swallows_logger_errors(capsys):
    log = DecisionAuditLog(ExplodingLogger())
    log.append(new_decision_log_entry(REQUEST, DECISION, "p"))
    assert "disk full" in capsys.readouterr().err


def test_open_file_logger_appends_with_private_mode(tmp_path):
    path = tmp_path / "logs" / "decisions.jsonl"
    first = open_file_logger(path)
    first.log_decision(new_decision_log_entry(REQUEST, DECISION, "p"))
    second = open_file_logger(path)
    second.log_decision(new_decision_log_entry(REQUEST, DECISION, "p"))
    assert len(path.read_text(encoding="utf-8").splitlines()) == 2
    if os.name == "posix":
        assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_build_logger_destinations(tmp_path):
    assert build_logger() is None
    assert isinstance(build_logger(to_stdout=True), JsonLogger)
    assert isinstance(build_logger(log_file=str(tmp_path / "d.jsonl"), to_stdout=True), FanOutLogger)
