"""Tests for offline merge reconciliation."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from audit_ledger.ledger.reconciler import OfflineMergeReconciler, determine_status
from audit_ledger.ledger.verifier import ChainVerifier
from audit_ledger.models import AuditEvent, ChainStatus, IntegrityStatus, MergeRecord, MergeStatus

T0 = datetime(2024, 1, 15, 9, 0, 0)


def offline(ts: datetime, **fields) -> dict:
    event = {
        "timestamp": ts.isoformat() + "Z",
        "actor": "bob",
        "action": "APPROVE_LOAN",
        "entity_type": "Loan",
        "entity_id": "loan-7",
        "correlation_id": "offline-corr-1",
        "event_data": {"amount": 100},
    }
    event.update(fields)
    return event


async def chain(store):
    async with store.session() as session:
        return await store.range_query(session)


async def merge_records(store):
    async with store.session() as session:
        result = await session.execute(select(MergeRecord))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_mid_chain_insert_repairs_suffix(store, append_event):
    """[G, A, B] + X between A and B yields a valid [G, A, X, B]."""
    g = await append_event(T0, action="G")
    a = await append_event(T0 + timedelta(seconds=10), action="A")
    b = await append_event(T0 + timedelta(seconds=20), action="B")

    record = await OfflineMergeReconciler(store).merge(
        [offline(T0 + timedelta(seconds=15))], device_id="tablet-1", offline_session_id="sess-1", user_id="bob"
    )

    assert record.status == MergeStatus.SUCCESS
    assert record.events_received == 1
    assert record.events_merged == 1
    assert record.events_rehashed == 2

    events = await chain(store)
    assert [e.action for e in events] == ["G", "A", "APPROVE_LOAN", "B"]
    stored_g, stored_a, x, stored_b = events

    assert stored_g.current_hash == g.current_hash
    assert stored_a.current_hash == a.current_hash
    assert stored_a.integrity_status == IntegrityStatus.VERIFIED

    assert x.previous_hash == a.current_hash
    assert x.is_offline
    assert x.offline_device_id == "tablet-1"
    assert x.offline_session_id == "sess-1"
    assert x.offline_merge_id == record.merge_id
    assert x.integrity_status == IntegrityStatus.REHASHED
    assert x.original_hash == x.current_hash

    assert stored_b.previous_hash == x.current_hash
    assert stored_b.current_hash != b.current_hash
    assert stored_b.original_hash == b.current_hash
    assert stored_b.integrity_status == IntegrityStatus.REHASHED
    assert stored_b.last_verified_at is None

    result = await ChainVerifier(store).verify()
    assert result.status == ChainStatus.VALID
    assert result.events_verified == 4


@pytest.mark.asyncio
async def test_insert_before_genesis(store, append_event):
    """An offline event older than the whole chain becomes the new genesis."""
    g = await append_event(T0, action="G")

    await OfflineMergeReconciler(store).merge([offline(T0 - timedelta(hours=1))], "tablet-1", "sess-1")

    events = await chain(store)
    assert events[0].is_genesis
    assert events[0].action == "APPROVE_LOAN"
    assert events[1].event_id == g.event_id
    assert events[1].previous_hash == events[0].current_hash
    assert (await ChainVerifier(store).verify()).status == ChainStatus.VALID


@pytest.mark.asyncio
async def test_replayed_batch_is_idempotent(store, append_event):
    """Merging the same batch twice inserts nothing the second time."""
    await append_event(T0)
    batch = [
        offline(T0 + timedelta(seconds=30), correlation_id="c-1"),
        offline(T0 + timedelta(minutes=5), correlation_id="c-2", entity_id="loan-8"),
    ]
    reconciler = OfflineMergeReconciler(store)

    first = await reconciler.merge(batch, "tablet-1", "sess-1")
    hashes = [e.current_hash for e in await chain(store)]

    replay = [dict(evt, correlation_id=f"  {evt['correlation_id'].upper()} ") for evt in batch]
    second = await reconciler.merge(replay, "tablet-1", "sess-1")

    assert first.events_merged == 2
    assert second.events_received == 2
    assert second.events_merged == 0
    assert second.duplicates_skipped == 2
    assert second.events_rehashed == 0
    assert second.status == MergeStatus.SUCCESS
    assert [e.current_hash for e in await chain(store)] == hashes


@pytest.mark.asyncio
async def test_duplicates_within_batch(store):
    """Only the first of two identical candidates is inserted."""
    record = await OfflineMergeReconciler(store).merge(
        [offline(T0), offline(T0)], "tablet-1", "sess-1"
    )

    assert record.events_merged == 1
    assert record.duplicates_skipped == 1
    assert record.status == MergeStatus.PARTIAL_SUCCESS
    assert len(await chain(store)) == 1


@pytest.mark.asyncio
async def test_conflict_with_stored_event_is_flagged_not_blocked(store, append_event):
    """Same actor/action/entity within 5s but another correlation id."""
    await append_event(
        T0,
        actor="bob",
        action="APPROVE_LOAN",
        entity_id="loan-7",
        correlation_id="online-corr",
    )

    record = await OfflineMergeReconciler(store).merge(
        [offline(T0 + timedelta(seconds=3))], "tablet-1", "sess-1"
    )

    assert record.conflicts_detected == 1
    assert record.events_merged == 1
    assert record.status == MergeStatus.PARTIAL_SUCCESS
    assert len(await chain(store)) == 2


@pytest.mark.asyncio
async def test_conflict_within_batch_counts_both(store):
    """Two batch candidates that conflict with each other are both counted."""
    record = await OfflineMergeReconciler(store).merge(
        [
            offline(T0, correlation_id="c-1"),
            offline(T0 + timedelta(seconds=2), correlation_id="c-2"),
        ],
        "tablet-1",
        "sess-1",
    )

    assert record.conflicts_detected == 2
    assert record.events_merged == 2


@pytest.mark.asyncio
async def test_events_outside_conflict_window_do_not_conflict(store, append_event):
    """Six seconds apart is not a conflict."""
    await append_event(T0, actor="bob", action="APPROVE_LOAN", entity_id="loan-7", correlation_id="x")

    record = await OfflineMergeReconciler(store).merge(
        [offline(T0 + timedelta(seconds=6))], "tablet-1", "sess-1"
    )

    assert record.conflicts_detected == 0
    assert record.status == MergeStatus.SUCCESS


@pytest.mark.asyncio
async def test_invalid_candidates_are_dropped_silently(store):
    """Candidates without actor/action or with unparseable fields are not counted."""
    record = await OfflineMergeReconciler(store).merge(
        [
            offline(T0, actor="   "),
            offline(T0, action=None),
            offline(T0, timestamp="not-a-date"),
            offline(T0 + timedelta(seconds=30), event_id="not-a-uuid", correlation_id=None),
        ],
        "tablet-1",
        "sess-1",
    )

    assert record.events_received == 1
    assert record.events_merged == 1
    (event,) = await chain(store)
    assert len(event.event_id) == 36
    assert event.correlation_id == event.event_id
    assert event.event_data == '{"amount":100}'


@pytest.mark.asyncio
async def test_empty_batch_records_success(store):
    """An empty batch still writes a history row."""
    record = await OfflineMergeReconciler(store).merge([], None, None)

    assert record.status == MergeStatus.SUCCESS
    assert record.events_received == 0
    assert record.device_id == "unknown-device"
    assert len(await merge_records(store)) == 1


@pytest.mark.asyncio
async def test_failure_rolls_back_and_records_failed(store, append_event):
    """A failing repair leaves the chain untouched and records FAILED."""
    original = await append_event(T0 + timedelta(minutes=1))
    reconciler = OfflineMergeReconciler(store)

    with patch.object(reconciler, "repair", side_effect=RuntimeError("disk full")):
        with pytest.raises(RuntimeError):
            await reconciler.merge([offline(T0)], "tablet-1", "sess-1", merge_id="merge-123")

    events = await chain(store)
    assert len(events) == 1
    assert events[0].current_hash == original.current_hash

    (record,) = await merge_records(store)
    assert record.merge_id == "merge-123"
    assert record.status == MergeStatus.FAILED
    assert record.events_merged == 0
    assert "disk full" in record.error_details


@pytest.mark.asyncio
async def test_timeout_rolls_back_and_records_failed(store, append_event):
    """A merge exceeding the time budget leaves the chain untouched."""
    original = await append_event(T0 + timedelta(minutes=1))
    reconciler = OfflineMergeReconciler(store, timeout_seconds=0.05)

    async def slow_repair(*args, **kwargs):
        await asyncio.sleep(1)
        return 0

    with patch.object(reconciler, "repair", side_effect=slow_repair):
        with pytest.raises(TimeoutError):
            await reconciler.merge([offline(T0)], "tablet-1", "sess-1", merge_id="merge-slow")

    events = await chain(store)
    assert len(events) == 1
    assert events[0].current_hash == original.current_hash

    (record,) = await merge_records(store)
    assert record.status == MergeStatus.FAILED
    assert record.events_merged == 0
    assert record.error_details == "TimeoutError"


def test_determine_status():
    """Status classification of committed merges."""
    assert determine_status(MergeRecord(events_merged=0, duplicates_skipped=3, conflicts_detected=0)) == (
        MergeStatus.SUCCESS
    )
    assert determine_status(MergeRecord(events_merged=2, duplicates_skipped=0, conflicts_detected=0)) == (
        MergeStatus.SUCCESS
    )
    assert determine_status(MergeRecord(events_merged=2, duplicates_skipped=1, conflicts_detected=0)) == (
        MergeStatus.PARTIAL_SUCCESS
    )
    assert determine_status(MergeRecord(events_merged=2, duplicates_skipped=0, conflicts_detected=1)) == (
        MergeStatus.PARTIAL_SUCCESS
    )
