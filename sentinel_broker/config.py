from __future__ import annotations

import os
from dataclasses import dataclass

from .errors import ValidationError

SENTINEL_POLICY_PARAMETER = "SENTINEL_POLICY_PARAMETER"
SENTINEL_POLICY_FILE = "SENTINEL_POLICY_FILE"
SENTINEL_APPROVAL_POLICY_FILE = "SENTINEL_APPROVAL_POLICY_FILE"
SENTINEL_BREAK_GLASS_POLICY_FILE = "SENTINEL_BREAK_GLASS_POLICY_FILE"
SENTINEL_RATE_LIMIT_POLICY_FILE = "SENTINEL_RATE_LIMIT_POLICY_FILE"
SENTINEL_REQUEST_TABLE = "SENTINEL_REQUEST_TABLE"
SENTINEL_BREAK_GLASS_TABLE = "SENTINEL_BREAK_GLASS_TABLE"
SENTINEL_SESSION_TABLE = "SENTINEL_SESSION_TABLE"
SENTINEL_DECISION_LOG_FILE = "SENTINEL_DECISION_LOG_FILE"
SENTINEL_DECISION_LOG_STDOUT = "SENTINEL_DECISION_LOG_STDOUT"
SENTINEL_POLICY_CACHE_TTL_SECONDS = "SENTINEL_POLICY_CACHE_TTL_SECONDS"

DEFAULT_POLICY_CACHE_TTL_SECONDS = 30.0

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def env_flag(name: str) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValidationError(f"invalid boolean for {name}: {raw!r}")


def env_float(name: str, default: float) -> float:
    raw = env_or_none(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValidationError(f"invalid number for {name}: {raw!r}") from e
    if value < 0:
        raise ValidationError(f"{name} must be >= 0")
    return value


@dataclass(frozen=True)
class Settings:
    region: str = ""
    policy_parameter: str = ""
    policy_file: str = ""
    approval_policy_file: str = ""
    break_glass_policy_file: str = ""
    rate_limit_policy_file: str = ""
    request_table: str = ""
    break_glass_table: str = ""
    session_table: str = ""
    decision_log_file: str = ""
    decision_log_stdout: bool = False
    policy_cache_ttl_seconds: float = DEFAULT_POLICY_CACHE_TTL_SECONDS

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            region=env_or_none("AWS_REGION", "AWS_DEFAULT_REGION") or "",
            policy_parameter=env_or_none(SENTINEL_POLICY_PARAMETER) or "",
            policy_file=env_or_none(SENTINEL_POLICY_FILE) or "",
            approval_policy_file=env_or_none(SENTINEL_APPROVAL_POLICY_FILE) or "",
            break_glass_policy_file=env_or_none(SENTINEL_BREAK_GLASS_POLICY_FILE) or "",
            rate_limit_policy_file=env_or_none(SENTINEL_RATE_LIMIT_POLICY_FILE) or "",
            request_table=env_or_none(SENTINEL_REQUEST_TABLE) or "",
            break_glass_table=env_or_none(SENTINEL_BREAK_GLASS_TABLE) or "",
            session_table=env_or_none(SENTINEL_SESSION_TABLE) or "",
            decision_log_file=env_or_none(SENTINEL_DECISION_LOG_FILE) or "",
            decision_log_stdout=env_flag(SENTINEL_DECISION_LOG_STDOUT),
            policy_cache_ttl_seconds=env_float(SENTINEL_POLICY_CACHE_TTL_SECONDS, DEFAULT_POLICY_CACHE_TTL_SECONDS),
        )

    def require(self, field_name: str, env_name: str) -> str:
        value = str(getattr(self, field_name) or "").strip()
        if not value:
            raise ValidationError(f"missing {field_name} (set {env_name})")
        return value
