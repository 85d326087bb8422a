"""Inbound event payloads."""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from audit_ledger.ledger.normalize import as_utc_naive, canonical_payload, normalize_text, utcnow
from audit_ledger.models.audit import AuditEvent


class AuditEventIn(BaseModel):
    """Event as submitted by a producer or an offline client.

    Everything is optional here: incomplete offline candidates are dropped by
    the reconciler rather than rejected at parse time.
    """

    model_config = ConfigDict(extra="ignore")

    event_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    actor: Optional[str] = None
    action: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    correlation_id: Optional[str] = None
    event_data: Any = None

    def normalized(self) -> Dict[str, Any]:
        """
        Content fields in the form they are stored and hashed.

        Raises:
            ValueError: If actor or action is blank.
        """
        actor = normalize_text(self.actor)
        action = normalize_text(self.action)
        if not actor or not action:
            raise ValueError("actor and action are required")

        try:
            event_id = str(uuid.UUID(str(self.event_id)))
        except ValueError:
            event_id = str(uuid.uuid4())

        return {
            "event_id": event_id,
            "timestamp": as_utc_naive(self.timestamp) if self.timestamp else utcnow(),
            "actor": actor,
            "action": action,
            "entity_type": normalize_text(self.entity_type),
            "entity_id": normalize_text(self.entity_id),
            "correlation_id": normalize_text(self.correlation_id) or event_id,
            "event_data": canonical_payload(self.event_data),
        }

    def to_event(self) -> AuditEvent:
        """Build an unsaved online event ready for ``EventStore.append``."""
        return AuditEvent(**self.normalized(), is_offline=False, is_archived=False, created_at=utcnow())
