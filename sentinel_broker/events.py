from __future__ import annotations

import json
import sys
from typing import Any, TextIO

from .clock import iso, utcnow

WARNING_KIND = "sentinel.warning.v1"


def dumps_line(obj: dict[str, Any]) -> str:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, default=str)


def error_fields(exc: BaseException) -> dict[str, str]:
    return {"type": type(exc).__name__, "message": str(exc)}


def warn(message: str, *, stream: TextIO | None = None, **fields: Any) -> None:
    # Never log credential material.
    event: dict[str, Any] = {"kind": WARNING_KIND, "timestamp": iso(utcnow()), "message": message}
    for key, value in fields.items():
        if isinstance(value, BaseException):
            value = error_fields(value)
        event[key] = value
    print(dumps_line(event), file=stream if stream is not None else sys.stderr)
