from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import PolicyNotFoundError, StoreError
from .policy import Policy, load_policy

if TYPE_CHECKING:
    from .context import CallContext


class PolicyLoader(Protocol):
    def load(self, ctx: CallContext, name: str) -> Policy: ...


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code") or "")


class SsmPolicyLoader:
    """Reads a policy document from an SSM parameter (SecureString allowed)."""

    def __init__(self, client: Any | None = None, *, region: str | None = None) -> None:
        self._client = client
        self._region = region

    def _ssm(self) -> Any:
        if self._client is None:
            self._client = boto3.client("ssm", region_name=self._region)
        return self._client

    def load(self, ctx: CallContext, name: str) -> Policy:
        ctx.check()
        try:
            resp = self._ssm().get_parameter(Name=name, WithDecryption=True)
        except ClientError as e:
            if _error_code(e) == "ParameterNotFound":
                raise PolicyNotFoundError(f"{name}: policy not found") from e
            raise StoreError(str(e), table=name, operation="ssm:GetParameter") from e
        except BotoCoreError as e:
            raise StoreError(str(e), table=name, operation="ssm:GetParameter") from e
        value = (resp.get("Parameter") or {}).get("Value")
        if value is None:
            raise PolicyNotFoundError(f"{name}: parameter has no value")
        return load_policy(value)


class FilePolicyLoader:
    def load(self, ctx: CallContext, name: str) -> Policy:
        ctx.check()
        path = Path(name)
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise PolicyNotFoundError(f"{name}: policy not found") from e
        except OSError as e:
            raise StoreError(str(e), table=name, operation="read") from e
        return load_policy(data)


@dataclass(frozen=True)
class _CacheEntry:
    policy: Policy
    expiry: float


class CachedPolicyLoader:
    """TTL cache in front of another loader. Errors are never cached."""

    def __init__(
        self,
        loader: PolicyLoader,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: dict[str, _CacheEntry] = {}

    def load(self, ctx: CallContext, name: str) -> Policy:
        with self._lock:
            entry = self._cache.get(name)
            if entry is not None and self._clock() < entry.expiry:
                return entry.policy
            policy = self._loader.load(ctx, name)
            self._cache[name] = _CacheEntry(policy=policy, expiry=self._clock() + self._ttl)
            return policy

    def invalidate(self, name: str | None = None) -> None:
        with self._lock:
            if name is None:
                self._cache.clear()
            else:
                self._cache.pop(name, None)
