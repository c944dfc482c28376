"""Advisory check that a role's trust policy still requires a broker-stamped
SourceIdentity. Results are informational and never gate issuance."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import unquote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

if TYPE_CHECKING:
    from .context import CallContext

DRIFT_OK = "ok"
DRIFT_PARTIAL = "partial"
DRIFT_NONE = "none"
DRIFT_UNKNOWN = "unknown"

SOURCE_IDENTITY_KEY = "sts:sourceidentity"
SOURCE_IDENTITY_PREFIX = "sentinel:"


@dataclass(frozen=True)
class DriftCheckResult:
    status: str
    role_arn: str
    message: str
    error: str = ""

    def to_dict(self) -> dict[str, str]:
        out = {"status": self.status, "role_arn": self.role_arn, "message": self.message}
        if self.error:
            out["error"] = self.error
        return out


class DriftChecker(Protocol):
    def check_role(self, ctx: CallContext, role_arn: str) -> DriftCheckResult: ...


def role_name_from_arn(role_arn: str) -> str:
    # arn:aws:iam::123456789012:role/path/name
    _, _, resource = str(role_arn or "").partition(":role/")
    if not resource:
        raise ValueError(f"not an IAM role ARN: {role_arn!r}")
    return resource.rsplit("/", 1)[-1]


def _as_list(raw: Any) -> list[Any]:
    if raw is None:
        return []
    if isinstance(raw, list):
        return raw
    return [raw]


def source_identity_patterns(statement: dict[str, Any]) -> list[str]:
    out: list[str] = []
    conditions = statement.get("Condition") or {}
    if not isinstance(conditions, dict):
        return out
    for block in conditions.values():
        if not isinstance(block, dict):
            continue
        for key, values in block.items():
            if str(key).lower() == SOURCE_IDENTITY_KEY:
                out.extend(str(v) for v in _as_list(values))
    return out


def analyze_trust_policy(document: dict[str, Any] | None) -> tuple[str, str]:
    """Return ``(status, message)`` for a trust policy document."""
    if not document:
        return DRIFT_NONE, "trust policy document is empty"

    enforced = 0
    foreign = 0
    legacy = 0
    for stmt in _as_list(document.get("Statement")):
        if not isinstance(stmt, dict) or stmt.get("Effect") != "Allow":
            continue
        patterns = source_identity_patterns(stmt)
        if not patterns:
            legacy += 1
        elif any(p.startswith(SOURCE_IDENTITY_PREFIX) for p in patterns):
            enforced += 1
        else:
            foreign += 1

    if enforced == 0 and foreign == 0:
        return DRIFT_NONE, "no sts:SourceIdentity condition found in any Allow statement"
    if enforced and not legacy and not foreign:
        return DRIFT_OK, "role requires a broker SourceIdentity"
    if enforced and legacy:
        return DRIFT_PARTIAL, "some Allow statements lack a SourceIdentity condition"
    return DRIFT_PARTIAL, f"SourceIdentity condition does not match {SOURCE_IDENTITY_PREFIX}*"


def _decode_document(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    return json.loads(unquote(str(raw or "")))


class IamDriftChecker:
    def __init__(self, client: Any | None = None, *, region: str | None = None) -> None:
        self._client = client
        self._region = region

    def _iam(self) -> Any:
        if self._client is None:
            self._client = boto3.client("iam", region_name=self._region)
        return self._client

    def check_role(self, ctx: CallContext, role_arn: str) -> DriftCheckResult:
        ctx.check()
        try:
            name = role_name_from_arn(role_arn)
            resp = self._iam().get_role(RoleName=name)
            document = _decode_document((resp.get("Role") or {}).get("AssumeRolePolicyDocument"))
        except (ClientError, BotoCoreError, ValueError) as e:
            return DriftCheckResult(
                status=DRIFT_UNKNOWN,
                role_arn=role_arn,
                message="failed to analyze role",
                error=str(e),
            )
        status, message = analyze_trust_policy(document)
        return DriftCheckResult(status=status, role_arn=role_arn, message=message)

