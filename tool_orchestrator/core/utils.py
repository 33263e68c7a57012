"""Shared utility functions for the tool orchestrator.

Reusable helpers with no dependencies on the rest of the package:
- JSON helpers (_safe_json_loads, _pretty_json, _json_dumps_compact)
- String normalization
- Retry-After parsing
- ULID-style identifier generation
"""

from __future__ import annotations

import datetime
import email.utils
import json
import secrets
import time
from typing import Any, Optional

# -----------------------------------------------------------------------------
# Identifier generation
# -----------------------------------------------------------------------------

ULID_LENGTH = 20
ULID_TIME_LENGTH = 16
ULID_RANDOM_LENGTH = ULID_LENGTH - ULID_TIME_LENGTH
CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_ULID_TIME_MASK = (1 << (ULID_TIME_LENGTH * 5)) - 1


def _encode_crockford(value: int, length: int) -> str:
    chars = ["0"] * length
    for idx in range(length - 1, -1, -1):
        chars[idx] = CROCKFORD_ALPHABET[value & 0x1F]
        value >>= 5
    return "".join(chars)


def generate_item_id() -> str:
    """Return a 20-char, time-ordered identifier (16-char time + 4-char random tail)."""
    timestamp = time.time_ns() & _ULID_TIME_MASK
    time_component = _encode_crockford(timestamp, ULID_TIME_LENGTH)
    random_component = _encode_crockford(secrets.randbits(ULID_RANDOM_LENGTH * 5), ULID_RANDOM_LENGTH)
    return f"{time_component}{random_component}"


# -----------------------------------------------------------------------------
# JSON Helpers
# -----------------------------------------------------------------------------

def _safe_json_loads(payload: Optional[str]) -> Any:
    """Return parsed JSON or None without raising."""
    if not payload:
        return None
    try:
        return json.loads(payload)
    except (TypeError, ValueError):
        return None


def _pretty_json(value: Any) -> str:
    """Return a human-readable JSON string or an empty string when not applicable."""
    if value is None:
        return ""
    if isinstance(value, (str, bytes)):
        text = value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
        return text.strip()
    try:
        return json.dumps(value, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _json_dumps_compact(value: Any) -> str:
    """Encode ``value`` for the wire, falling back to ``str()`` for foreign objects."""
    return json.dumps(value, ensure_ascii=False, default=str)


def _normalize_optional_str(value: Any) -> Optional[str]:
    """Convert arbitrary input into a trimmed string or None."""
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    return value or None


# -----------------------------------------------------------------------------
# HTTP Utilities
# -----------------------------------------------------------------------------

def _retry_after_seconds(value: Optional[str]) -> Optional[float]:
    """Convert a Retry-After header value (seconds or HTTP date) into seconds."""
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    try:
        return max(0.0, float(trimmed))
    except ValueError:
        pass
    try:
        dt = email.utils.parsedate_to_datetime(trimmed)
        if dt is None:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=datetime.timezone.utc)
        now = datetime.datetime.now(datetime.timezone.utc)
        return max(0.0, (dt - now).total_seconds())
    except (TypeError, ValueError, OverflowError):
        return None
