"""
Archive exporter.

Exports one closed UTC day of the chain to object storage as gzip NDJSON,
together with a metadata document and the offline verification script, all
under a COMPLIANCE retention lock. The archive is self-verifying: each record
carries its stored hashes and the metadata names the hash that links the
day to its predecessor.

Object layout (per day):
    {yyyy}/{mm}/audit-events-{date}.jsonl.gz
    {yyyy}/{mm}/audit-events-{date}-metadata.json
    {yyyy}/{mm}/audit-events-{date}-verify.py
"""

import asyncio
import gzip
import io
import json
import logging
import tempfile
import uuid
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta
from importlib import resources
from typing import Any, BinaryIO, Dict, List, Optional

from sqlalchemy import select

from audit_ledger.ledger.errors import ArchiveExportError, OutOfOrderAppendError, WindowNotClosedError
from audit_ledger.ledger.hashing import HASH_VERSION, format_timestamp
from audit_ledger.ledger.normalize import utcnow
from audit_ledger.ledger.schemas import AuditEventIn
from audit_ledger.ledger.store import EventStore
from audit_ledger.models.archive import ArchiveMetadata, ReplicationStatus
from audit_ledger.models.audit import AuditEvent
from audit_ledger.settings import Settings, get_settings
from audit_ledger.storage.service import StorageService
from audit_ledger.utils.metrics import archive_export_bytes, archive_exports

logger = logging.getLogger(__name__)

EXPORT_ACTION = "AuditArchiveExported"


class ExportStatus:
    """Outcome of an export request."""

    EXPORTED = "EXPORTED"
    EMPTY = "EMPTY"
    ALREADY_EXPORTED = "ALREADY_EXPORTED"
    DISABLED = "DISABLED"


@dataclass
class ExportResult:
    """Result of exporting one day window."""

    export_date: date
    status: str
    event_count: int = 0
    archive_id: Optional[str] = None
    file_name: Optional[str] = None
    object_key: Optional[str] = None
    file_size: int = 0
    replication_status: Optional[str] = None

    def to_dict(self) -> dict:
        """Serialize for API and task results."""
        data = asdict(self)
        data["export_date"] = self.export_date.isoformat()
        return data


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def archive_record(event: AuditEvent) -> Dict[str, Any]:
    """NDJSON record for one event (timestamp rendered as hashed)."""
    return {
        "sequence": event.sequence,
        "event_id": event.event_id,
        "timestamp": format_timestamp(event.timestamp),
        "actor": event.actor,
        "action": event.action,
        "entity_type": event.entity_type,
        "entity_id": event.entity_id,
        "correlation_id": event.correlation_id,
        "event_data": event.event_data,
        "previous_hash": event.previous_hash,
        "current_hash": event.current_hash,
        "original_hash": event.original_hash,
        "is_genesis": event.is_genesis,
        "is_offline": event.is_offline,
        "offline_device_id": event.offline_device_id,
        "offline_session_id": event.offline_session_id,
        "offline_merge_id": event.offline_merge_id,
        "integrity_status": event.integrity_status,
        "last_verified_at": _iso(event.last_verified_at),
        "is_archived": event.is_archived,
        "archived_at": _iso(event.archived_at),
        "created_at": _iso(event.created_at),
    }


def object_keys(export_date: date) -> Dict[str, str]:
    """File name and object keys for a day window."""
    file_name = f"audit-events-{export_date.isoformat()}.jsonl.gz"
    archive_key = f"{export_date:%Y}/{export_date:%m}/{file_name}"
    return {
        "file_name": file_name,
        "archive": archive_key,
        "metadata": archive_key.replace(".jsonl.gz", "-metadata.json"),
        "verify": archive_key.replace(".jsonl.gz", "-verify.py"),
    }


def window_bounds(export_date: date):
    """``(start, end_exclusive)`` of a UTC day as naive datetimes."""
    start = datetime.combine(export_date, time.min)
    return start, start + timedelta(days=1)


def offline_verify_script() -> bytes:
    """Source of the standalone verifier shipped with each archive."""
    return resources.files("audit_ledger.archive").joinpath("offline_verify.py").read_bytes()


@dataclass
class _Spool:
    fileobj: BinaryIO
    event_count: int = 0
    uncompressed_size: int = 0
    compressed_size: int = 0
    first: Optional[AuditEvent] = None
    last: Optional[AuditEvent] = None


class ArchiveExporter:
    """Export closed day windows of the chain to object storage."""

    def __init__(
        self,
        store: EventStore,
        storage: StorageService,
        settings: Optional[Settings] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """Initialize exporter."""
        self.store = store
        self.storage = storage
        self.settings = settings or get_settings()
        self.timeout_seconds = timeout_seconds

    async def is_exported(self, export_date: date) -> bool:
        """Whether an archive row already exists for ``export_date``."""
        async with self.store.session() as session:
            result = await session.execute(
                select(ArchiveMetadata.id).where(ArchiveMetadata.export_date == export_date)
            )
            return result.first() is not None

    async def export_day(self, export_date: date, now: Optional[datetime] = None) -> ExportResult:
        """
        Export a single closed day window.

        Raises:
            WindowNotClosedError: If the day has not ended yet (UTC).
            ArchiveExportError: If any storage or store step fails.
        """
        if not self.settings.archive_exports_enabled:
            logger.info("Audit archive exports are disabled via configuration")
            archive_exports.labels(status=ExportStatus.DISABLED).inc()
            return ExportResult(export_date=export_date, status=ExportStatus.DISABLED)

        now = now or utcnow()
        start, end = window_bounds(export_date)
        if end > now:
            raise WindowNotClosedError(f"window {export_date.isoformat()} is not closed yet")

        try:
            async with asyncio.timeout(self.timeout_seconds):
                if await self.is_exported(export_date):
                    logger.info(f"Archive for {export_date.isoformat()} already exists; skipping")
                    return ExportResult(export_date=export_date, status=ExportStatus.ALREADY_EXPORTED)
                result = await self._export(export_date, start, end, now)
        except Exception as e:
            archive_exports.labels(status="FAILED").inc()
            logger.error(
                f"Failed to export audit events for {export_date.isoformat()}: {e}",
                exc_info=True,
                extra={"export_date": export_date.isoformat()},
            )
            raise ArchiveExportError(f"export of {export_date.isoformat()} failed: {e}") from e

        archive_exports.labels(status=result.status).inc()
        if result.status == ExportStatus.EXPORTED:
            await self._record_export_event(result, start, end)
        return result

    async def export_pending_windows(
        self,
        lookback_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[ExportResult]:
        """Export every closed day in the lookback window not yet archived.

        Days are processed oldest first; a failing day is logged and left for
        the next run.
        """
        now = now or utcnow()
        lookback = self.settings.archive_export_lookback_days if lookback_days is None else lookback_days
        today = now.date()

        results = []
        for offset in range(max(lookback, 1), 0, -1):
            day = today - timedelta(days=offset)
            try:
                results.append(await self.export_day(day, now=now))
            except ArchiveExportError:
                continue
        return results

    async def _export(self, export_date: date, start: datetime, end: datetime, now: datetime) -> ExportResult:
        keys = object_keys(export_date)

        with tempfile.TemporaryFile(prefix="audit-export-", suffix=".jsonl.gz") as tmp:
            spool = await self._spool_window(tmp, start, end)
            if spool.event_count == 0:
                logger.info(f"No audit events found for {export_date.isoformat()}; skipping archive export")
                return ExportResult(export_date=export_date, status=ExportStatus.EMPTY)

            retain_until = end + timedelta(
                days=self.settings.archive_retention_days + max(0, self.settings.archive_retention_grace_days)
            )
            first, last = spool.first, spool.last
            headers = {
                "export-date": export_date.isoformat(),
                "event-count": str(spool.event_count),
                "chain-start": first.current_hash or "",
                "chain-end": last.current_hash or "",
                "chain-link": first.previous_hash or "",
            }

            await self.storage.ensure_bucket()
            tmp.seek(0)
            await self.storage.put_object(
                keys["archive"],
                tmp,
                spool.compressed_size,
                content_type="application/gzip",
                metadata=headers,
                retain_until=retain_until,
            )

        archive_id = str(uuid.uuid4())
        document = {
            "archive_id": archive_id,
            "file_name": keys["file_name"],
            "object_key": keys["archive"],
            "export_date": export_date.isoformat(),
            "exported_at": now.isoformat(),
            "event_count": spool.event_count,
            "first_event_id": first.event_id,
            "last_event_id": last.event_id,
            "chain_start_hash": first.current_hash,
            "chain_end_hash": last.current_hash,
            "chain_link_hash": first.previous_hash,
            "hash_version": HASH_VERSION,
            "retention_expires_at": retain_until.isoformat(),
            "instructions": (
                "Run the companion verify.py with --chain-link <chain_link_hash> "
                "to validate the tamper-evident chain offline"
            ),
        }
        payload = json.dumps(document, indent=2, sort_keys=True).encode("utf-8")
        await self.storage.put_object(
            keys["metadata"],
            io.BytesIO(payload),
            len(payload),
            content_type="application/json",
            retain_until=retain_until,
        )

        script = offline_verify_script()
        await self.storage.put_object(
            keys["verify"],
            io.BytesIO(script),
            len(script),
            content_type="text/x-python",
            metadata={"archive": keys["file_name"]},
            retain_until=retain_until,
        )

        try:
            replication = await self.storage.replication_status(keys["archive"])
        except Exception as e:
            logger.warning(f"Unable to retrieve replication status for {keys['archive']}: {e}")
            replication = None

        metadata = ArchiveMetadata(
            archive_id=archive_id,
            file_name=keys["file_name"],
            object_key=keys["archive"],
            export_date=export_date,
            exported_at=now,
            event_date_start=first.timestamp,
            event_date_end=last.timestamp,
            event_count=spool.event_count,
            file_size=spool.compressed_size,
            uncompressed_size=spool.uncompressed_size,
            compression_ratio=(
                round(spool.compressed_size / spool.uncompressed_size, 2) if spool.uncompressed_size else 0.0
            ),
            chain_start_hash=first.current_hash,
            chain_end_hash=last.current_hash,
            chain_link_hash=first.previous_hash,
            retention_expiry_date=retain_until,
            storage_location="PRIMARY",
            replication_status=replication or ReplicationStatus.PENDING,
            last_replication_check_at=now if replication else None,
        )

        cutoff = datetime.combine(now.date(), time.min) - timedelta(
            days=self.settings.archive_cleanup_retention_days
        )
        async with self.store.transaction() as session:
            session.add(metadata)
            flagged = await self.store.mark_archived(session, cutoff, now)
        if flagged:
            logger.info(f"Marked {flagged} audit events as archived")

        archive_export_bytes.inc(spool.compressed_size)
        logger.info(
            f"Exported {spool.event_count} audit events to {keys['archive']} "
            f"({spool.compressed_size} bytes, ratio {metadata.compression_ratio})",
            extra={"archive_id": archive_id, "export_date": export_date.isoformat()},
        )
        return ExportResult(
            export_date=export_date,
            status=ExportStatus.EXPORTED,
            event_count=spool.event_count,
            archive_id=archive_id,
            file_name=keys["file_name"],
            object_key=keys["archive"],
            file_size=spool.compressed_size,
            replication_status=metadata.replication_status,
        )

    async def _spool_window(self, fileobj: BinaryIO, start: datetime, end: datetime) -> _Spool:
        """Stream the window as gzip NDJSON into ``fileobj``."""
        spool = _Spool(fileobj=fileobj)
        # mtime=0 keeps the gzip header stable across re-exports
        with gzip.GzipFile(fileobj=fileobj, mode="wb", mtime=0, filename="") as gz:
            async with self.store.session() as session:
                async for event in self.store.stream_range(session, start, end - timedelta(microseconds=1)):
                    line = json.dumps(archive_record(event), ensure_ascii=False).encode("utf-8") + b"\n"
                    gz.write(line)
                    spool.uncompressed_size += len(line)
                    spool.event_count += 1
                    if spool.first is None:
                        spool.first = event
                    spool.last = event
        spool.compressed_size = fileobj.tell()
        return spool

    async def _record_export_event(self, result: ExportResult, start: datetime, end: datetime) -> None:
        event = AuditEventIn(
            actor="system",
            action=EXPORT_ACTION,
            entity_type="AuditArchive",
            entity_id=result.archive_id,
            event_data={
                "file_name": result.file_name,
                "object_key": result.object_key,
                "event_count": result.event_count,
                "event_date_start": start.isoformat(),
                "event_date_end": end.isoformat(),
            },
        ).to_event()
        try:
            await self.store.append(event)
        except OutOfOrderAppendError as e:
            logger.warning(f"Archive export event not recorded: {e}")
        except Exception as e:
            logger.error(
                f"Archive export event not recorded: {e}",
                exc_info=True,
                extra={"archive_id": result.archive_id},
            )
