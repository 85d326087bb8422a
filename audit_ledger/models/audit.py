"""Audit event chain models."""

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Index, Integer, String, Text

from audit_ledger.db.base import Base


class IntegrityStatus:
    """Per-event integrity states."""

    PENDING_REHASH = "PENDING_REHASH"
    REHASHED = "REHASHED"
    VERIFIED = "VERIFIED"
    BROKEN = "BROKEN"

    ALL = (PENDING_REHASH, REHASHED, VERIFIED, BROKEN)


class AuditEvent(Base):
    """One link of the tamper-evident audit chain.

    Canonical chain order is ``(timestamp, sequence)``; ``sequence`` is the
    store-assigned insertion counter and only breaks timestamp ties.
    """

    __tablename__ = "audit_events"

    sequence = Column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    event_id = Column(String(36), nullable=False, unique=True, default=lambda: str(uuid.uuid4()))

    timestamp = Column(DateTime, nullable=False, index=True)
    actor = Column(String(100), nullable=False)
    action = Column(String(100), nullable=False)
    entity_type = Column(String(100), nullable=True)
    entity_id = Column(String(100), nullable=True)
    correlation_id = Column(String(100), nullable=True, index=True)
    event_data = Column(Text, nullable=True)

    previous_hash = Column(String(64), nullable=True)  # NULL for genesis
    current_hash = Column(String(64), nullable=True)
    original_hash = Column(String(64), nullable=True)

    is_offline = Column(Boolean, nullable=False, default=False)
    offline_device_id = Column(String(100), nullable=True)
    offline_session_id = Column(String(100), nullable=True)
    offline_merge_id = Column(String(36), nullable=True, index=True)

    integrity_status = Column(String(20), nullable=False, default=IntegrityStatus.PENDING_REHASH)
    last_verified_at = Column(DateTime, nullable=True)

    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_events_chain_order", "timestamp", "sequence"),
    )

    @property
    def is_genesis(self) -> bool:
        """True iff the event has no predecessor link."""
        return not self.previous_hash

    def __repr__(self) -> str:
        return f"<AuditEvent {self.event_id} seq={self.sequence} ts={self.timestamp}>"
