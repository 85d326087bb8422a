"""Chain verification history models."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text

from audit_ledger.db.base import Base


class ChainStatus:
    """Verifier outcomes."""

    VALID = "VALID"
    BROKEN = "BROKEN"
    EMPTY = "EMPTY"
    ERROR = "ERROR"  # infrastructure failure, not an integrity finding


class ChainVerification(Base):
    """Verification history: one row per verifier run."""

    __tablename__ = "audit_chain_verifications"

    id = Column(Integer, primary_key=True, index=True)
    verification_id = Column(String(36), nullable=False, unique=True, index=True)
    start_time = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    end_time = Column(DateTime, nullable=True)
    range_start = Column(DateTime, nullable=True)
    range_end = Column(DateTime, nullable=True)

    events_verified = Column(Integer, nullable=False, default=0)
    chain_status = Column(String(20), nullable=False)
    broken_event_id = Column(String(36), nullable=True)
    broken_event_timestamp = Column(DateTime, nullable=True)
    broken_position = Column(Integer, nullable=True)
    failure_reason = Column(Text, nullable=True)

    initiated_by = Column(String(100), nullable=False, default="system")
    duration_ms = Column(Integer, nullable=False, default=0)
