"""Audit ledger service: the single entry point used by the API, CLI and worker."""

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from sqlalchemy import func, select

from audit_ledger.archive.exporter import ArchiveExporter, ExportResult
from audit_ledger.archive.replication import ReplicationMonitor, ReplicationSummary
from audit_ledger.ledger.errors import OutOfOrderAppendError
from audit_ledger.ledger.normalize import normalize_text, utcnow
from audit_ledger.ledger.reconciler import OfflineMergeReconciler
from audit_ledger.ledger.schemas import AuditEventIn
from audit_ledger.ledger.store import EventStore
from audit_ledger.ledger.verifier import ChainVerifier, VerificationResult
from audit_ledger.models import (
    ArchiveMetadata,
    AuditEvent,
    ChainVerification,
    IntegrityStatus,
    MergeRecord,
)
from audit_ledger.settings import Settings, get_settings
from audit_ledger.storage.service import StorageService
from audit_ledger.utils.metrics import ledger_appends

logger = logging.getLogger(__name__)

MIN_DOWNLOAD_TTL = 60
MAX_DOWNLOAD_TTL = 86400


class LedgerService:
    """Tamper-evident audit ledger with hash chaining."""

    def __init__(
        self,
        store: EventStore,
        storage: Optional[StorageService] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize ledger service."""
        self.store = store
        self.storage = storage
        self.settings = settings or get_settings()
        timeout = self.settings.operation_timeout_seconds
        self.verifier = ChainVerifier(store, timeout_seconds=timeout)
        self.reconciler = OfflineMergeReconciler(store, timeout_seconds=timeout)
        self._exporter: Optional[ArchiveExporter] = None
        self._replication: Optional[ReplicationMonitor] = None

    @property
    def exporter(self) -> ArchiveExporter:
        if self._exporter is None:
            self._exporter = ArchiveExporter(
                self.store,
                self._require_storage(),
                settings=self.settings,
                timeout_seconds=self.settings.operation_timeout_seconds,
            )
        return self._exporter

    @property
    def replication(self) -> ReplicationMonitor:
        if self._replication is None:
            self._replication = ReplicationMonitor(self.store, self._require_storage())
        return self._replication

    def _require_storage(self) -> StorageService:
        if self.storage is None:
            raise ValueError("Storage service not configured")
        return self.storage

    # Chain writes

    async def append_event(self, payload: AuditEventIn) -> AuditEvent:
        """
        Append an online event at the chain tail.

        Raises:
            ValueError: If actor or action is blank.
            OutOfOrderAppendError: If the event predates the chain tail.
        """
        event = payload.to_event()
        try:
            stored = await self.store.append(event)
        except OutOfOrderAppendError:
            ledger_appends.labels(result="rejected").inc()
            raise
        ledger_appends.labels(result="appended").inc()
        return stored

    async def request_merge(
        self,
        events: Iterable[Union[AuditEventIn, Mapping[str, Any]]],
        device_id: Optional[str],
        offline_session_id: Optional[str],
        user_id: Optional[str] = None,
        merge_id: Optional[str] = None,
    ) -> MergeRecord:
        """Reconcile an offline batch into the chain."""
        return await self.reconciler.merge(
            events, device_id, offline_session_id, user_id=user_id, merge_id=merge_id
        )

    async def get_merge(self, merge_id: str) -> Optional[MergeRecord]:
        """Look up the history row of one merge attempt."""
        async with self.store.session() as session:
            result = await session.execute(select(MergeRecord).where(MergeRecord.merge_id == merge_id))
            return result.scalars().first()

    # Verification

    async def request_verification(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        initiated_by: str = "system",
    ) -> VerificationResult:
        """Verify the chain over an optional range."""
        return await self.verifier.verify(start, end, initiated_by=initiated_by)

    async def verification_history(
        self, page: int = 1, page_size: int = 20
    ) -> Tuple[List[ChainVerification], int]:
        """Verification runs, newest first."""
        page, page_size = max(page, 1), min(max(page_size, 1), 100)
        async with self.store.session() as session:
            total = (
                await session.execute(select(func.count()).select_from(ChainVerification))
            ).scalar_one()
            result = await session.execute(
                select(ChainVerification)
                .order_by(ChainVerification.start_time.desc(), ChainVerification.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return list(result.scalars().all()), int(total)

    async def integrity_status(self) -> dict:
        """Summary of chain integrity and the most recent verification."""
        async with self.store.session() as session:
            total = await self.store.count(session)
            counts = {status: await self.store.count(session, status) for status in IntegrityStatus.ALL}
            result = await session.execute(
                select(ChainVerification)
                .order_by(ChainVerification.start_time.desc(), ChainVerification.id.desc())
                .limit(1)
            )
            last = result.scalars().first()

        linked = counts[IntegrityStatus.VERIFIED] + counts[IntegrityStatus.REHASHED]
        return {
            "total_events": total,
            "verified_events": counts[IntegrityStatus.VERIFIED],
            "rehashed_events": counts[IntegrityStatus.REHASHED],
            "pending_rehash_events": counts[IntegrityStatus.PENDING_REHASH],
            "broken_events": counts[IntegrityStatus.BROKEN],
            "coverage_percentage": round(linked * 100.0 / total, 2) if total else 0.0,
            "last_verification": (
                {
                    "verification_id": last.verification_id,
                    "chain_status": last.chain_status,
                    "events_verified": last.events_verified,
                    "start_time": last.start_time.isoformat() if last.start_time else None,
                    "end_time": last.end_time.isoformat() if last.end_time else None,
                    "broken_event_id": last.broken_event_id,
                }
                if last is not None
                else None
            ),
        }

    # Archives

    async def request_export(self, export_date: date) -> ExportResult:
        """Export one closed day window."""
        return await self.exporter.export_day(export_date)

    async def export_pending(self, lookback_days: Optional[int] = None) -> List[ExportResult]:
        """Export every unarchived closed day in the lookback window."""
        return await self.exporter.export_pending_windows(lookback_days)

    async def check_replication(self, limit: Optional[int] = None) -> ReplicationSummary:
        """Poll replication status of unconfirmed archives."""
        return await self.replication.check_pending(limit)

    async def search_archives(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[ArchiveMetadata], int]:
        """Archives whose event window overlaps ``[start_date, end_date]``."""
        page, page_size = max(page, 1), min(max(page_size, 1), 100)
        stmt = select(ArchiveMetadata)
        if start_date is not None:
            stmt = stmt.where(ArchiveMetadata.event_date_end >= datetime.combine(start_date, time.min))
        if end_date is not None:
            stmt = stmt.where(
                ArchiveMetadata.event_date_start < datetime.combine(end_date, time.min) + timedelta(days=1)
            )

        async with self.store.session() as session:
            total = (
                await session.execute(select(func.count()).select_from(stmt.subquery()))
            ).scalar_one()
            result = await session.execute(
                stmt.order_by(ArchiveMetadata.export_date.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return list(result.scalars().all()), int(total)

    async def archive_download_url(
        self,
        archive_id: str,
        accessed_by: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[dict]:
        """Presigned download URL for an archive, recording who accessed it."""
        storage = self._require_storage()
        ttl = ttl_seconds if ttl_seconds is not None else self.settings.archive_presigned_url_ttl
        ttl = min(max(ttl, MIN_DOWNLOAD_TTL), MAX_DOWNLOAD_TTL)

        async with self.store.transaction() as session:
            result = await session.execute(
                select(ArchiveMetadata).where(ArchiveMetadata.archive_id == archive_id)
            )
            archive = result.scalars().first()
            if archive is None:
                return None

            url = await storage.generate_signed_url(archive.object_key, ttl)
            now = utcnow()
            archive.last_accessed_at = now
            archive.last_accessed_by = normalize_text(accessed_by) or "unknown"

        logger.info(
            f"Issued archive download URL for {archive.file_name}",
            extra={"archive_id": archive_id, "accessed_by": archive.last_accessed_by},
        )
        return {
            "archive_id": archive_id,
            "file_name": archive.file_name,
            "url": url,
            "expires_at": (now + timedelta(seconds=ttl)).isoformat(),
        }
