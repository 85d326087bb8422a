"""
Offline merge reconciler.

Offline clients submit events with their own timestamps, which may fall
anywhere inside the existing chain. A merge:

1. normalizes candidates and silently drops those without actor/action,
2. deduplicates against stored events and earlier batch members,
3. flags (but keeps) likely double submissions as conflicts,
4. inserts accepted events as PENDING_REHASH, and
5. rehashes every event from the earliest inserted timestamp onwards.

Steps 2-5 run in one transaction under the chain lock, so a merge is either
fully visible with a repaired chain or not visible at all. A MergeRecord is
written for every attempt.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Mapping, Optional, Set, Tuple, Union

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from audit_ledger.ledger.hashing import compute_hash
from audit_ledger.ledger.normalize import normalize_for_comparison, normalize_text, utcnow
from audit_ledger.ledger.schemas import AuditEventIn
from audit_ledger.ledger.store import EventStore
from audit_ledger.models.audit import AuditEvent, IntegrityStatus
from audit_ledger.models.merge import MergeRecord, MergeStatus
from audit_ledger.utils.metrics import offline_merge_events, offline_merges

logger = logging.getLogger(__name__)

CONTEXT_WINDOW = timedelta(seconds=5)
CONFLICT_WINDOW = timedelta(seconds=5)

DuplicateKey = Tuple[str, datetime, str, str, str]


@dataclass
class _Candidate:
    event_id: str
    timestamp: datetime
    actor: str
    action: str
    entity_type: Optional[str]
    entity_id: Optional[str]
    correlation_id: str
    event_data: Optional[str]
    conflict: bool = False


@dataclass
class _MergeOutcome:
    merged: int = 0
    duplicates: int = 0
    conflicts: int = 0
    rehashed: int = 0


def duplicate_key(event) -> DuplicateKey:
    """Normalized identity used for idempotent replays."""
    return (
        normalize_for_comparison(event.correlation_id),
        event.timestamp,
        normalize_for_comparison(event.actor),
        normalize_for_comparison(event.action),
        normalize_for_comparison(event.entity_id),
    )


def is_conflict(candidate, other) -> bool:
    """Same actor/action/entity within the window but another correlation id."""
    if normalize_for_comparison(candidate.actor) != normalize_for_comparison(other.actor):
        return False
    if normalize_for_comparison(candidate.action) != normalize_for_comparison(other.action):
        return False
    if normalize_for_comparison(candidate.entity_id) != normalize_for_comparison(other.entity_id):
        return False
    if abs(candidate.timestamp - other.timestamp) > CONFLICT_WINDOW:
        return False
    return normalize_for_comparison(candidate.correlation_id) != normalize_for_comparison(
        other.correlation_id
    )


def determine_status(record: MergeRecord) -> str:
    """Classify a committed merge."""
    if record.events_merged == 0:
        return MergeStatus.SUCCESS
    if record.duplicates_skipped > 0 or record.conflicts_detected > 0:
        return MergeStatus.PARTIAL_SUCCESS
    return MergeStatus.SUCCESS


class OfflineMergeReconciler:
    """Merge offline-captured events into the chain and repair the suffix."""

    def __init__(self, store: EventStore, timeout_seconds: Optional[float] = None):
        """Initialize reconciler."""
        self.store = store
        self.timeout_seconds = timeout_seconds

    async def merge(
        self,
        events: Iterable[Union[AuditEventIn, Mapping[str, Any]]],
        device_id: Optional[str],
        offline_session_id: Optional[str],
        user_id: Optional[str] = None,
        merge_id: Optional[str] = None,
    ) -> MergeRecord:
        """Reconcile one offline batch.

        ``merge_id`` lets a caller that enqueued the merge poll for its record.

        Returns:
            The persisted MergeRecord.

        Raises:
            Any store error, after the transaction is rolled back and a
            FAILED MergeRecord has been written.
        """
        started = time.perf_counter()
        record = MergeRecord(
            merge_id=merge_id or str(uuid.uuid4()),
            user_id=normalize_text(user_id) or "unknown",
            device_id=normalize_text(device_id) or "unknown-device",
            offline_session_id=normalize_text(offline_session_id) or str(uuid.uuid4()),
            events_received=0,
            events_merged=0,
            duplicates_skipped=0,
            conflicts_detected=0,
            events_rehashed=0,
        )
        log_extra = {
            "merge_id": record.merge_id,
            "device_id": record.device_id,
            "offline_session_id": record.offline_session_id,
        }

        candidates = self.normalize(events)
        record.events_received = len(candidates)

        try:
            if candidates:
                async with asyncio.timeout(self.timeout_seconds):
                    outcome = await self.store.execute_transactionally(
                        lambda session: self._merge_locked(session, candidates, record)
                    )
                record.events_merged = outcome.merged
                record.events_rehashed = outcome.rehashed
                record.duplicates_skipped = outcome.duplicates
                record.conflicts_detected = outcome.conflicts
        except Exception as e:
            record.status = MergeStatus.FAILED
            record.error_details = (str(e) or type(e).__name__)[:4000]
            record.events_merged = 0
            record.events_rehashed = 0
            record.merge_duration_ms = int((time.perf_counter() - started) * 1000)
            offline_merges.labels(status=MergeStatus.FAILED).inc()
            logger.error(f"Offline audit merge failed: {e}", exc_info=True, extra=log_extra)
            try:
                await self.store.save(record)
            except Exception:
                logger.error(
                    "Failed to persist offline merge history", exc_info=True, extra=log_extra
                )
            raise

        record.status = determine_status(record)
        record.merge_duration_ms = int((time.perf_counter() - started) * 1000)
        await self.store.save(record)

        offline_merges.labels(status=record.status).inc()
        offline_merge_events.labels(outcome="merged").inc(record.events_merged)
        offline_merge_events.labels(outcome="duplicate").inc(record.duplicates_skipped)
        offline_merge_events.labels(outcome="conflict").inc(record.conflicts_detected)
        offline_merge_events.labels(outcome="rehashed").inc(record.events_rehashed)
        logger.info(
            f"Offline audit merge {record.status}: merged={record.events_merged} "
            f"duplicates={record.duplicates_skipped} conflicts={record.conflicts_detected} "
            f"rehashed={record.events_rehashed}",
            extra=log_extra,
        )
        return record

    @staticmethod
    def normalize(events: Iterable[Union[AuditEventIn, Mapping[str, Any]]]) -> List[_Candidate]:
        """Trim, default and validate raw candidates; sort canonically."""
        candidates = []
        for raw in events or ():
            if isinstance(raw, AuditEventIn):
                evt = raw
            else:
                try:
                    evt = AuditEventIn.model_validate(raw)
                except ValidationError:
                    continue

            try:
                candidates.append(_Candidate(**evt.normalized()))
            except ValueError:
                continue

        candidates.sort(key=lambda c: (c.timestamp, c.event_id))
        return candidates

    async def _merge_locked(
        self,
        session: AsyncSession,
        candidates: List[_Candidate],
        record: MergeRecord,
    ) -> _MergeOutcome:
        outcome = _MergeOutcome()

        earliest = candidates[0].timestamp - CONTEXT_WINDOW
        latest = candidates[-1].timestamp + CONTEXT_WINDOW
        existing = await self.store.range_query(session, earliest, latest)
        existing_keys: Set[DuplicateKey] = {duplicate_key(evt) for evt in existing}

        accepted = self._screen(candidates, existing, existing_keys, outcome)
        # Screening counts survive a failed insert or repair
        record.duplicates_skipped = outcome.duplicates
        record.conflicts_detected = outcome.conflicts
        if not accepted:
            return outcome

        inserted = [self._to_event(candidate, record) for candidate in accepted]
        await self.store.insert_many(session, inserted)
        outcome.merged = len(inserted)

        outcome.rehashed = await self.repair(session, min(evt.timestamp for evt in inserted))
        return outcome

    def _screen(
        self,
        candidates: List[_Candidate],
        existing: List[AuditEvent],
        existing_keys: Set[DuplicateKey],
        outcome: _MergeOutcome,
    ) -> List[_Candidate]:
        accepted: List[_Candidate] = []
        seen: Set[DuplicateKey] = set()

        for candidate in candidates:
            key = duplicate_key(candidate)
            if key in existing_keys or key in seen:
                outcome.duplicates += 1
                continue
            seen.add(key)

            if any(is_conflict(candidate, other) for other in existing):
                candidate.conflict = True
            for other in accepted:
                if is_conflict(candidate, other):
                    candidate.conflict = True
                    other.conflict = True
            accepted.append(candidate)

        flagged = [c for c in accepted if c.conflict]
        outcome.conflicts = len(flagged)
        for candidate in flagged:
            logger.warning(
                "Offline event flagged as possible double submission",
                extra={
                    "event_id": candidate.event_id,
                    "actor": candidate.actor,
                    "action": candidate.action,
                    "entity_id": candidate.entity_id,
                },
            )
        return accepted

    @staticmethod
    def _to_event(candidate: _Candidate, record: MergeRecord) -> AuditEvent:
        return AuditEvent(
            event_id=candidate.event_id,
            timestamp=candidate.timestamp,
            actor=candidate.actor,
            action=candidate.action,
            entity_type=candidate.entity_type,
            entity_id=candidate.entity_id,
            correlation_id=candidate.correlation_id,
            event_data=candidate.event_data,
            is_offline=True,
            offline_device_id=record.device_id,
            offline_session_id=record.offline_session_id,
            offline_merge_id=record.merge_id,
            integrity_status=IntegrityStatus.PENDING_REHASH,
            is_archived=False,
            created_at=utcnow(),
        )

    async def repair(self, session: AsyncSession, earliest: datetime) -> int:
        """Rehash every event with ``timestamp >= earliest`` in canonical order.

        Must run inside the caller's chain-locked transaction.
        """
        prior = await self.store.predecessor(session, earliest)
        suffix = await self.store.range_query(session, start=earliest)
        previous_hash = prior.current_hash if prior is not None else None

        for event in suffix:
            new_hash = compute_hash(event, previous_hash)
            if event.original_hash is None:
                event.original_hash = event.current_hash or new_hash
            event.previous_hash = previous_hash
            event.current_hash = new_hash
            event.integrity_status = IntegrityStatus.REHASHED
            event.last_verified_at = None
            previous_hash = new_hash

        await self.store.update_many(session, suffix)
        return len(suffix)
