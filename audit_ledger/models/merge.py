"""Offline merge history models."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text

from audit_ledger.db.base import Base


class MergeStatus:
    """Outcome of one reconciliation attempt."""

    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    FAILED = "FAILED"


class MergeRecord(Base):
    """One row per offline merge attempt, written on success and failure."""

    __tablename__ = "offline_merge_history"

    id = Column(Integer, primary_key=True, index=True)
    merge_id = Column(String(36), nullable=False, unique=True, index=True)
    user_id = Column(String(100), nullable=False)
    device_id = Column(String(100), nullable=False)
    offline_session_id = Column(String(100), nullable=False)

    events_received = Column(Integer, nullable=False, default=0)
    events_merged = Column(Integer, nullable=False, default=0)
    duplicates_skipped = Column(Integer, nullable=False, default=0)
    conflicts_detected = Column(Integer, nullable=False, default=0)
    events_rehashed = Column(Integer, nullable=False, default=0)

    merge_duration_ms = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False)
    error_details = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
