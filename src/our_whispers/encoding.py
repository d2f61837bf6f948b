"""Hex and canonical JSON helpers shared by the wire types.

All binary values travel as lowercase hex with no prefix and exactly twice
the byte length. Canonical JSON is compact and keeps the field order the
caller built the dict with.
"""

from __future__ import annotations

import json
import re
from typing import Any

from .exceptions import MalformedRequestError, WhispersError

_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")


def to_hex(data: bytes) -> str:
    """Encode bytes as canonical lowercase hex."""
    return bytes(data).hex()


def from_hex(
    value: Any,
    *,
    field: str,
    size: int | None = None,
    allow_prefix: bool = False,
    error: type[WhispersError] = MalformedRequestError,
) -> bytes:
    """Decode a hex string, enforcing an exact byte size when given.

    Args:
        value: The candidate hex string
        field: Field name used in the error message
        size: Required decoded length in bytes
        allow_prefix: Strip a leading ``0x`` before decoding
        error: Exception class raised on any mismatch

    Returns:
        The decoded bytes
    """
    if not isinstance(value, str):
        raise error(f"{field} must be a hex string", {"field": field})
    text = value
    if allow_prefix and text[:2] in ("0x", "0X"):
        text = text[2:]
    if len(text) % 2 or not _HEX_RE.match(text):
        raise error(f"{field} is not valid hex", {"field": field})
    if size is not None and len(text) != size * 2:
        raise error(
            f"{field} must be {size} bytes ({size * 2} hex chars)",
            {"field": field, "expected": size * 2, "actual": len(text)},
        )
    return bytes.fromhex(text)


def canonical_json(obj: Any) -> bytes:
    """Compact JSON bytes for hashing, signing and comparison."""
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
