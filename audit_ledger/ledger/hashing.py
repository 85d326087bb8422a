"""
Hash engine for the audit chain.

Each event hash covers the predecessor's hash plus every content field in a
fixed order:

    [HASH_VERSION, previous_hash, event_id, timestamp, actor, action,
     entity_type, entity_id, correlation_id, event_data]

Nulls are rendered as empty strings and the list is serialized as a compact
JSON array before SHA-256. Changing HASH_FIELDS, the timestamp format or the
serialization is a breaking format change: bump HASH_VERSION and re-derive
the whole chain. The offline verifier shipped with archives
(``audit_ledger.archive.offline_verify``) mirrors this exactly.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Optional

from audit_ledger.models.audit import AuditEvent

HASH_VERSION = "audit-chain/v1"

HASH_FIELDS = (
    "event_id",
    "timestamp",
    "actor",
    "action",
    "entity_type",
    "entity_id",
    "correlation_id",
    "event_data",
)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_timestamp(value: Optional[datetime]) -> str:
    """Render a timestamp exactly as it enters the hash."""
    if value is None:
        return ""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(TIMESTAMP_FORMAT)


def _field_value(event: AuditEvent, field: str) -> str:
    value = getattr(event, field)
    if field == "timestamp":
        return format_timestamp(value)
    return "" if value is None else str(value)


def hash_input(event: AuditEvent, previous_hash: Optional[str]) -> bytes:
    """Build the byte string that is hashed for ``event``."""
    parts = [HASH_VERSION, previous_hash or ""]
    parts.extend(_field_value(event, field) for field in HASH_FIELDS)
    return json.dumps(parts, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_hash(event: AuditEvent, previous_hash: Optional[str]) -> str:
    """Compute the chain hash of ``event`` linked to ``previous_hash``."""
    return hashlib.sha256(hash_input(event, previous_hash)).hexdigest()


def verify_hash(event: AuditEvent, previous_hash: Optional[str]) -> bool:
    """Recompute the hash and compare it with ``event.current_hash``."""
    if not event.current_hash:
        return False
    return compute_hash(event, previous_hash) == event.current_hash
