"""Tests for archive export and the offline verifier shipped with it."""

import gzip
import json
from datetime import date, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from audit_ledger.archive import offline_verify
from audit_ledger.archive.exporter import (
    EXPORT_ACTION,
    ArchiveExporter,
    ExportStatus,
    object_keys,
)
from audit_ledger.ledger import hashing
from audit_ledger.ledger.errors import ArchiveExportError, WindowNotClosedError
from audit_ledger.models import ArchiveMetadata, AuditEvent, ReplicationStatus
from audit_ledger.settings import Settings

DAY = date(2024, 1, 15)
DAY_START = datetime(2024, 1, 15)
NOW = datetime(2024, 1, 17, 3, 0)


async def archives(store):
    async with store.session() as session:
        result = await session.execute(select(ArchiveMetadata))
        return list(result.scalars().all())


def read_records(storage, key):
    return [json.loads(line) for line in gzip.decompress(storage.objects[key]["data"]).splitlines()]


async def seed_day(append_event, day_start=DAY_START, count=3):
    return [await append_event(day_start + timedelta(hours=i + 1), action=f"ACTION_{i}") for i in range(count)]


@pytest.mark.asyncio
async def test_export_writes_archive_metadata_and_verifier(store, storage, settings, append_event):
    """A closed day is exported with headers, companions and a metadata row."""
    before = await append_event(DAY_START - timedelta(hours=1), action="PREVIOUS_DAY")
    events = await seed_day(append_event)
    await append_event(DAY_START + timedelta(days=1, hours=1), action="NEXT_DAY")

    result = await ArchiveExporter(store, storage, settings=settings).export_day(DAY, now=NOW)

    keys = object_keys(DAY)
    assert keys["archive"] == "2024/01/audit-events-2024-01-15.jsonl.gz"
    assert result.status == ExportStatus.EXPORTED
    assert result.event_count == 3
    assert result.object_key == keys["archive"]
    assert storage.bucket_ready

    archive = storage.objects[keys["archive"]]
    assert archive["content_type"] == "application/gzip"
    assert archive["metadata"] == {
        "export-date": "2024-01-15",
        "event-count": "3",
        "chain-start": events[0].current_hash,
        "chain-end": events[-1].current_hash,
        "chain-link": before.current_hash,
    }
    assert archive["retain_until"] == datetime(2024, 1, 16) + timedelta(days=2555 + 30)

    records = read_records(storage, keys["archive"])
    assert [r["event_id"] for r in records] == [e.event_id for e in events]
    assert records[0]["timestamp"] == "2024-01-15T01:00:00.000000Z"
    assert records[0]["previous_hash"] == before.current_hash
    assert {"original_hash", "integrity_status", "is_offline", "sequence"} <= set(records[0])

    document = json.loads(storage.objects[keys["metadata"]]["data"])
    assert document["chain_link_hash"] == before.current_hash
    assert document["event_count"] == 3
    assert document["hash_version"] == hashing.HASH_VERSION

    script = storage.objects[keys["verify"]]
    assert script["content_type"] == "text/x-python"
    assert script["metadata"] == {"archive": keys["file_name"]}
    assert b"def verify_archive" in script["data"]

    (row,) = await archives(store)
    assert row.archive_id == result.archive_id
    assert row.event_count == 3
    assert row.file_size == archive["length"]
    assert row.uncompressed_size > row.file_size
    assert row.compression_ratio == round(row.file_size / row.uncompressed_size, 2)
    assert row.chain_link_hash == before.current_hash
    assert row.replication_status == ReplicationStatus.PENDING
    assert row.event_date_start == events[0].timestamp
    assert row.event_date_end == events[-1].timestamp


@pytest.mark.asyncio
async def test_export_appends_self_audit_event(store, storage, settings, append_event):
    """A successful export is itself recorded in the chain."""
    await seed_day(append_event)

    result = await ArchiveExporter(store, storage, settings=settings).export_day(DAY, now=NOW)

    async with store.session() as session:
        tail = await store.tail(session)
    assert tail.action == EXPORT_ACTION
    assert tail.actor == "system"
    assert tail.entity_id == result.archive_id


@pytest.mark.asyncio
async def test_empty_window_is_a_no_op(store, storage, settings):
    """No events means no objects and no metadata."""
    result = await ArchiveExporter(store, storage, settings=settings).export_day(DAY, now=NOW)

    assert result.status == ExportStatus.EMPTY
    assert storage.objects == {}
    assert await archives(store) == []


@pytest.mark.asyncio
async def test_existing_archive_is_skipped(store, storage, settings, append_event):
    """Exporting the same day twice does nothing the second time."""
    await seed_day(append_event)
    exporter = ArchiveExporter(store, storage, settings=settings)

    await exporter.export_day(DAY, now=NOW)
    storage.objects.clear()
    second = await exporter.export_day(DAY, now=NOW)

    assert second.status == ExportStatus.ALREADY_EXPORTED
    assert storage.objects == {}
    assert len(await archives(store)) == 1


@pytest.mark.asyncio
async def test_open_window_is_rejected(store, storage, settings):
    """Today's window cannot be exported."""
    with pytest.raises(WindowNotClosedError):
        await ArchiveExporter(store, storage, settings=settings).export_day(
            DAY, now=datetime(2024, 1, 15, 23, 59)
        )


@pytest.mark.asyncio
async def test_disabled_exports(store, storage, append_event):
    """The export switch short-circuits everything."""
    await seed_day(append_event)
    settings = Settings(_env_file=None, archive_exports_enabled=False)

    result = await ArchiveExporter(store, storage, settings=settings).export_day(DAY, now=NOW)

    assert result.status == ExportStatus.DISABLED
    assert storage.objects == {}


@pytest.mark.asyncio
async def test_storage_failure_raises_export_error(store, storage, settings, append_event):
    """Failures surface as ArchiveExportError and leave no metadata row."""
    await seed_day(append_event)
    storage.put_error = ConnectionError("minio unreachable")

    with pytest.raises(ArchiveExportError):
        await ArchiveExporter(store, storage, settings=settings).export_day(DAY, now=NOW)

    assert await archives(store) == []


@pytest.mark.asyncio
async def test_replication_status_from_immediate_stat(store, storage, settings, append_event):
    """A replication status reported at upload time is stored."""
    await seed_day(append_event)
    storage.replication[object_keys(DAY)["archive"]] = "COMPLETED"

    result = await ArchiveExporter(store, storage, settings=settings).export_day(DAY, now=NOW)

    assert result.replication_status == "COMPLETED"
    (row,) = await archives(store)
    assert row.last_replication_check_at == NOW


@pytest.mark.asyncio
async def test_old_events_are_flagged_archived(store, storage, append_event):
    """Events older than the cleanup retention are flagged, never deleted."""
    await seed_day(append_event)
    settings = Settings(_env_file=None, archive_cleanup_retention_days=1)

    await ArchiveExporter(store, storage, settings=settings).export_day(DAY, now=NOW)

    async with store.session() as session:
        result = await session.execute(select(AuditEvent).order_by(AuditEvent.sequence))
        events = list(result.scalars().all())
    assert [e.is_archived for e in events] == [True, True, True, False]
    assert events[0].archived_at == NOW


@pytest.mark.asyncio
async def test_export_pending_windows_catches_up(store, storage, settings, append_event):
    """Every closed day in the lookback is attempted once, oldest first."""
    await seed_day(append_event, day_start=datetime(2024, 1, 14), count=1)
    await seed_day(append_event, day_start=DAY_START, count=2)

    results = await ArchiveExporter(store, storage, settings=settings).export_pending_windows(now=NOW)

    assert [r.export_date for r in results] == [date(2024, 1, 14), date(2024, 1, 15), date(2024, 1, 16)]
    assert [r.status for r in results] == [ExportStatus.EXPORTED, ExportStatus.EXPORTED, ExportStatus.EMPTY]


@pytest.mark.asyncio
async def test_offline_verifier_accepts_export_and_detects_tampering(
    store, storage, settings, append_event, tmp_path
):
    """The shipped script validates the archive without the ledger."""
    before = await append_event(DAY_START - timedelta(hours=1))
    await seed_day(append_event)
    await ArchiveExporter(store, storage, settings=settings).export_day(DAY, now=NOW)
    data = storage.objects[object_keys(DAY)["archive"]]["data"]

    archive = tmp_path / "audit-events-2024-01-15.jsonl.gz"
    archive.write_bytes(data)
    assert offline_verify.main([str(archive), "--chain-link", before.current_hash]) == 0
    assert offline_verify.main([str(archive), "--chain-link", "0" * 64]) == 3

    records = [json.loads(line) for line in gzip.decompress(data).splitlines()]

    tampered = [dict(r) for r in records]
    tampered[1]["actor"] = "mallory"
    archive.write_bytes(gzip.compress("\n".join(json.dumps(r) for r in tampered).encode("utf-8")))
    assert offline_verify.main([str(archive)]) == 2

    removed = [records[0], records[2]]
    archive.write_bytes(gzip.compress("\n".join(json.dumps(r) for r in removed).encode("utf-8")))
    assert offline_verify.main([str(archive)]) == 3


def test_offline_verifier_usage_errors(tmp_path):
    """Missing or unreadable input exits 1."""
    assert offline_verify.main([str(tmp_path / "missing.jsonl.gz")]) == 1

    garbage = tmp_path / "garbage.jsonl.gz"
    garbage.write_bytes(b"not gzip")
    assert offline_verify.main([str(garbage)]) == 1

    with pytest.raises(SystemExit) as exc:
        offline_verify.main([])
    assert exc.value.code == 1


def test_offline_verifier_matches_hash_engine():
    """The standalone script hashes exactly like the ledger."""
    assert offline_verify.HASH_VERSION == hashing.HASH_VERSION
    assert offline_verify.HASH_FIELDS == hashing.HASH_FIELDS

    event = AuditEvent(
        event_id="6f1c1c8e-8c53-4a4e-9d55-2b0c4a3f1a10",
        timestamp=datetime(2024, 1, 15, 10, 30, 0, 5),
        actor="alice",
        action="LOGIN",
        entity_type=None,
        entity_id="u-1",
        correlation_id="c",
        event_data="plain text ü",
    )
    record = {
        "event_id": event.event_id,
        "timestamp": hashing.format_timestamp(event.timestamp),
        "actor": event.actor,
        "action": event.action,
        "entity_type": None,
        "entity_id": event.entity_id,
        "correlation_id": event.correlation_id,
        "event_data": event.event_data,
    }
    assert offline_verify.compute_hash(record, "p" * 64) == hashing.compute_hash(event, "p" * 64)


@pytest.mark.asyncio
async def test_self_audit_failure_does_not_fail_export(store, storage, settings, append_event):
    """The archive stands even when its export event cannot be appended."""
    await seed_day(append_event)

    with patch.object(store, "append", side_effect=RuntimeError("db down")):
        with patch("audit_ledger.archive.exporter.logger") as mock_logger:
            result = await ArchiveExporter(store, storage, settings=settings).export_day(DAY, now=NOW)

    assert result.status == ExportStatus.EXPORTED
    assert len(await archives(store)) == 1
    mock_logger.error.assert_called_once()


@pytest.mark.asyncio
async def test_existence_check_failure_raises_export_error(store, storage, settings):
    exporter = ArchiveExporter(store, storage, settings=settings)

    with patch.object(exporter, "is_exported", side_effect=RuntimeError("db down")):
        with pytest.raises(ArchiveExportError):
            await exporter.export_day(DAY, now=NOW)


@pytest.mark.asyncio
async def test_export_pending_windows_skips_failing_day(store, storage, settings, append_event):
    """A day that fails is left for the next run; later days still export."""
    await seed_day(append_event, day_start=datetime(2024, 1, 14), count=1)
    await seed_day(append_event, day_start=DAY_START, count=2)
    exporter = ArchiveExporter(store, storage, settings=settings)

    with patch.object(exporter, "is_exported", side_effect=[RuntimeError("db down"), False, False]):
        results = await exporter.export_pending_windows(now=NOW)

    assert [r.export_date for r in results] == [date(2024, 1, 15), date(2024, 1, 16)]
    assert [r.status for r in results] == [ExportStatus.EXPORTED, ExportStatus.EMPTY]
