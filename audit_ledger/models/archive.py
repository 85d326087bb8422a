"""Audit archive metadata models."""

from datetime import datetime

from sqlalchemy import BigInteger, Column, Date, DateTime, Float, Index, Integer, String

from audit_ledger.db.base import Base


class ReplicationStatus:
    """Object storage replication states."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REPLICA = "REPLICA"

    NEEDS_CHECK = (PENDING, FAILED)


class ArchiveMetadata(Base):
    """One row per exported day window (append-only)."""

    __tablename__ = "audit_archive_metadata"

    id = Column(Integer, primary_key=True, index=True)
    archive_id = Column(String(36), nullable=False, unique=True, index=True)
    file_name = Column(String(255), nullable=False)
    object_key = Column(String(500), nullable=False)
    export_date = Column(Date, nullable=False, unique=True, index=True)
    exported_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    event_date_start = Column(DateTime, nullable=False)
    event_date_end = Column(DateTime, nullable=False)

    event_count = Column(Integer, nullable=False)
    file_size = Column(BigInteger, nullable=False)
    uncompressed_size = Column(BigInteger, nullable=False)
    compression_ratio = Column(Float, nullable=False)

    chain_start_hash = Column(String(64), nullable=True)
    chain_end_hash = Column(String(64), nullable=True)
    chain_link_hash = Column(String(64), nullable=True)  # previous_hash of first exported event

    retention_expiry_date = Column(DateTime, nullable=False)
    storage_location = Column(String(50), nullable=False, default="PRIMARY")
    replication_status = Column(String(20), nullable=True, default=ReplicationStatus.PENDING)
    last_replication_check_at = Column(DateTime, nullable=True)

    last_accessed_at = Column(DateTime, nullable=True)
    last_accessed_by = Column(String(100), nullable=True)

    __table_args__ = (
        Index("ix_audit_archive_metadata_replication", "replication_status"),
    )
