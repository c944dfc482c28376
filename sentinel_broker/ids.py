from __future__ import annotations

import re
import secrets

ID_BYTES = 8
ID_LENGTH = 16

_HEX_ID_RE = re.compile(r"^[0-9a-f]{16}$")


def new_hex_id() -> str:
    """64 bits of randomness as 16 lowercase hex characters."""
    return secrets.token_bytes(ID_BYTES).hex()


def is_hex_id(value: str) -> bool:
    if not isinstance(value, str) or len(value) != ID_LENGTH:
        return False
    return bool(_HEX_ID_RE.fullmatch(value))
