from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def parse_iso(raw: str) -> datetime:
    s = str(raw or "").strip()
    if not s:
        raise ValueError("timestamp is empty")
    # Stored records may carry a trailing Z and up to 9 fractional digits.
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    m = re.match(r"^(.*T\d{2}:\d{2}:\d{2})\.(\d+)(.*)$", s)
    if m:
        s = f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}{m.group(3)}"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_duration(raw: str | int | float | timedelta | None) -> timedelta:
    """Parse ``"1h30m"``, ``"90m"``, ``"45s"`` or a number of seconds."""
    if raw is None:
        return timedelta(0)
    if isinstance(raw, timedelta):
        return raw
    if isinstance(raw, bool):
        raise ValueError(f"invalid duration {raw!r}")
    if isinstance(raw, (int, float)):
        return timedelta(seconds=raw)
    s = str(raw).strip().lower()
    if not s:
        raise ValueError("duration is empty")
    if re.fullmatch(r"\d+(?:\.\d+)?", s):
        return timedelta(seconds=float(s))
    total = timedelta(0)
    pos = 0
    for m in _DURATION_PART_RE.finditer(s):
        if m.start() != pos:
            raise ValueError(f"invalid duration {raw!r}")
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos != len(s):
        raise ValueError(f"invalid duration {raw!r}")
    return total


def format_duration(value: timedelta) -> str:
    seconds = int(value.total_seconds())
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if minutes:
        out += f"{minutes}m"
    if secs or not out:
        out += f"{secs}s"
    return out
