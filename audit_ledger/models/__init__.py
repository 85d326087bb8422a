"""Database models - import all models here for Alembic discovery."""

from audit_ledger.models.archive import ArchiveMetadata, ReplicationStatus
from audit_ledger.models.audit import AuditEvent, IntegrityStatus
from audit_ledger.models.merge import MergeRecord, MergeStatus
from audit_ledger.models.verification import ChainStatus, ChainVerification

__all__ = [
    "AuditEvent",
    "IntegrityStatus",
    "MergeRecord",
    "MergeStatus",
    "ArchiveMetadata",
    "ReplicationStatus",
    "ChainVerification",
    "ChainStatus",
]
