"""Replication monitor for exported archives (advisory)."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select

from audit_ledger.ledger.normalize import utcnow
from audit_ledger.ledger.store import EventStore
from audit_ledger.models.archive import ArchiveMetadata, ReplicationStatus
from audit_ledger.storage.service import StorageService
from audit_ledger.utils.metrics import replication_checks

logger = logging.getLogger(__name__)


@dataclass
class ReplicationSummary:
    """Outcome of one polling cycle."""

    checked: int = 0
    updated: int = 0
    errors: int = 0
    statuses: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "updated": self.updated,
            "errors": self.errors,
            "statuses": dict(self.statuses),
        }


class ReplicationMonitor:
    """Poll object storage for archives whose replication is not confirmed."""

    def __init__(self, store: EventStore, storage: StorageService):
        """Initialize replication monitor."""
        self.store = store
        self.storage = storage

    async def pending(self, limit: Optional[int] = None) -> List[ArchiveMetadata]:
        """Archives in PENDING or FAILED replication, oldest first."""
        stmt = (
            select(ArchiveMetadata)
            .where(ArchiveMetadata.replication_status.in_(ReplicationStatus.NEEDS_CHECK))
            .order_by(ArchiveMetadata.export_date.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        async with self.store.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_status(
        self,
        archive_id: str,
        status: Optional[str],
        checked_at: Optional[datetime] = None,
    ) -> bool:
        """Record a replication check; returns True if the status changed."""
        async with self.store.transaction() as session:
            result = await session.execute(
                select(ArchiveMetadata).where(ArchiveMetadata.archive_id == archive_id)
            )
            archive = result.scalars().first()
            if archive is None:
                return False
            archive.last_replication_check_at = checked_at or utcnow()
            if status and status != archive.replication_status:
                archive.replication_status = status
                return True
            return False

    async def check_pending(self, limit: Optional[int] = None) -> ReplicationSummary:
        """Run one polling cycle.

        Per-archive failures are logged and left for the next cycle.
        """
        summary = ReplicationSummary()
        for archive in await self.pending(limit):
            summary.checked += 1
            try:
                status = await self.storage.replication_status(archive.object_key)
            except Exception as e:
                summary.errors += 1
                replication_checks.labels(status="ERROR").inc()
                logger.warning(
                    f"Replication check failed for {archive.object_key}: {e}",
                    extra={"archive_id": archive.archive_id},
                )
                continue

            replication_checks.labels(status=status or ReplicationStatus.PENDING).inc()
            if await self.update_status(archive.archive_id, status):
                summary.updated += 1
                summary.statuses[archive.archive_id] = status
                logger.info(
                    f"Archive {archive.file_name} replication status is now {status}",
                    extra={"archive_id": archive.archive_id},
                )
        return summary
