"""Normalization helpers shared by append and offline merge."""

import json
from datetime import datetime, timezone
from typing import Any, Optional


def normalize_text(value: Optional[str]) -> Optional[str]:
    """Trim a string, mapping blank values to None."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def normalize_for_comparison(value: Optional[str]) -> str:
    """Case- and whitespace-insensitive comparison key."""
    normalized = normalize_text(value)
    return normalized.upper() if normalized else ""


def as_utc_naive(value: datetime) -> datetime:
    """Convert to naive UTC, the representation stored in the chain."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def canonical_payload(value: Any) -> Optional[str]:
    """Serialize an event payload deterministically.

    Structured values and JSON text are re-serialized with sorted keys;
    text that is not JSON is kept verbatim.
    """
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        if not value.strip():
            return None
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return value
        return json.dumps(parsed, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
