"""Chain verifier: read-only walk over the stored chain."""

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from audit_ledger.ledger.hashing import compute_hash
from audit_ledger.ledger.normalize import as_utc_naive, utcnow
from audit_ledger.ledger.store import EventStore
from audit_ledger.models.verification import ChainStatus, ChainVerification
from audit_ledger.utils.metrics import chain_broken, chain_verification_duration, chain_verifications

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    """Outcome of one verifier run."""

    status: str
    events_verified: int
    duration_ms: int
    verification_id: str
    broken_event_id: Optional[str] = None
    broken_event_timestamp: Optional[datetime] = None
    position: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        """Serialize for API and task results."""
        data = asdict(self)
        if self.broken_event_timestamp is not None:
            data["broken_event_timestamp"] = self.broken_event_timestamp.isoformat()
        return data


class ChainVerifier:
    """Recompute and compare links over a canonical range of the chain.

    The verifier never mutates events; its only write is the verification
    history row. A broken chain is a finding, not an exception.
    """

    def __init__(self, store: EventStore, timeout_seconds: Optional[float] = None):
        """Initialize verifier."""
        self.store = store
        self.timeout_seconds = timeout_seconds

    async def verify(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        initiated_by: str = "system",
    ) -> VerificationResult:
        """Verify the chain over ``[start, end]`` (whole chain by default)."""
        start = as_utc_naive(start) if start is not None else None
        end = as_utc_naive(end) if end is not None else None
        record = ChainVerification(
            verification_id=str(uuid.uuid4()),
            start_time=utcnow(),
            range_start=start,
            range_end=end,
            initiated_by=(initiated_by or "system").strip() or "system",
        )
        started = time.perf_counter()

        try:
            async with asyncio.timeout(self.timeout_seconds):
                result = await self._walk(start, end, record.verification_id)
        except Exception:
            record.chain_status = ChainStatus.ERROR
            record.end_time = utcnow()
            record.duration_ms = int((time.perf_counter() - started) * 1000)
            chain_verifications.labels(status=ChainStatus.ERROR).inc()
            logger.error("Chain verification failed to complete", exc_info=True)
            await self.store.save(record)
            raise

        duration = time.perf_counter() - started
        result.duration_ms = int(duration * 1000)
        record.chain_status = result.status
        record.events_verified = result.events_verified
        record.broken_event_id = result.broken_event_id
        record.broken_event_timestamp = result.broken_event_timestamp
        record.broken_position = result.position
        record.failure_reason = result.reason
        record.end_time = utcnow()
        record.duration_ms = result.duration_ms
        await self.store.save(record)

        chain_verifications.labels(status=result.status).inc()
        chain_verification_duration.observe(duration)
        chain_broken.set(1 if result.status == ChainStatus.BROKEN else 0)

        if result.status == ChainStatus.BROKEN:
            logger.critical(
                f"Audit chain BROKEN at event {result.broken_event_id} "
                f"(position {result.position}): {result.reason}",
                extra={
                    "verification_id": result.verification_id,
                    "broken_event_id": result.broken_event_id,
                    "position": result.position,
                },
            )
        else:
            logger.info(
                f"Chain verification {result.status}: {result.events_verified} events",
                extra={"verification_id": result.verification_id},
            )
        return result

    async def _walk(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        verification_id: str,
    ) -> VerificationResult:
        async with self.store.session() as session:
            events = await self.store.range_query(session, start, end)
            if not events:
                return VerificationResult(
                    status=ChainStatus.EMPTY,
                    events_verified=0,
                    duration_ms=0,
                    verification_id=verification_id,
                )

            first = events[0]
            prior = await self.store.predecessor(session, first.timestamp, first.sequence)
            expected_previous = prior.current_hash if prior is not None else None

        for position, event in enumerate(events):
            reason = None
            if (event.previous_hash or "") != (expected_previous or ""):
                reason = (
                    f"previous hash mismatch: expected {expected_previous or '<genesis>'}, "
                    f"found {event.previous_hash or '<genesis>'}"
                )
            elif compute_hash(event, event.previous_hash) != event.current_hash:
                reason = "recomputed hash does not match stored hash"

            if reason is not None:
                return VerificationResult(
                    status=ChainStatus.BROKEN,
                    events_verified=position,
                    duration_ms=0,
                    verification_id=verification_id,
                    broken_event_id=event.event_id,
                    broken_event_timestamp=event.timestamp,
                    position=position,
                    reason=reason,
                )
            expected_previous = event.current_hash

        return VerificationResult(
            status=ChainStatus.VALID,
            events_verified=len(events),
            duration_ms=0,
            verification_id=verification_id,
        )
