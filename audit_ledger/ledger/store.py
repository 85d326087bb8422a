"""
Event store backed by SQLAlchemy.

Every chain mutation (append, offline merge) runs inside a transaction that
first takes the chain lock. On PostgreSQL this is a transaction-scoped
advisory lock, so it serializes writers across processes and is released on
commit or rollback. SQLite serializes writers on its own.
"""

import hashlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional, TypeVar

from sqlalchemy import and_, func, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audit_ledger.ledger.errors import OutOfOrderAppendError
from audit_ledger.ledger.hashing import compute_hash
from audit_ledger.models.audit import AuditEvent, IntegrityStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHAIN_LOCK_KEY = int.from_bytes(
    hashlib.sha256(b"audit-ledger:chain").digest()[:8], "big", signed=True
)

CANONICAL_ORDER = (AuditEvent.timestamp.asc(), AuditEvent.sequence.asc())


class EventStore:
    """Persistent, ordered, transactional store of audit events."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize event store."""
        self._session_factory = session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Plain session for read paths."""
        async with self._session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session with an open transaction; commits on exit, rolls back on error."""
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    async def lock_chain(self, session: AsyncSession) -> None:
        """Take the exclusive chain lock for the current transaction."""
        if session.get_bind().dialect.name == "postgresql":
            await session.execute(
                text("SELECT pg_advisory_xact_lock(:key)"), {"key": CHAIN_LOCK_KEY}
            )

    async def execute_transactionally(
        self, unit_of_work: Callable[[AsyncSession], Awaitable[T]]
    ) -> T:
        """Run ``unit_of_work`` under the chain lock in a single transaction."""
        async with self.transaction() as session:
            await self.lock_chain(session)
            return await unit_of_work(session)

    async def save(self, record) -> None:
        """Persist a standalone bookkeeping row in its own transaction."""
        async with self.transaction() as session:
            session.add(record)

    # Chain queries (caller supplies the session)

    async def tail(self, session: AsyncSession) -> Optional[AuditEvent]:
        """Last event in canonical order."""
        result = await session.execute(
            select(AuditEvent)
            .order_by(AuditEvent.timestamp.desc(), AuditEvent.sequence.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def predecessor(
        self,
        session: AsyncSession,
        timestamp: datetime,
        sequence: Optional[int] = None,
    ) -> Optional[AuditEvent]:
        """Event immediately before ``(timestamp, sequence)`` in canonical order.

        Without ``sequence`` every event at ``timestamp`` counts as later.
        """
        if sequence is None:
            condition = AuditEvent.timestamp < timestamp
        else:
            condition = or_(
                AuditEvent.timestamp < timestamp,
                and_(AuditEvent.timestamp == timestamp, AuditEvent.sequence < sequence),
            )
        result = await session.execute(
            select(AuditEvent)
            .where(condition)
            .order_by(AuditEvent.timestamp.desc(), AuditEvent.sequence.desc())
            .limit(1)
        )
        return result.scalars().first()

    def _range_statement(self, start: Optional[datetime], end: Optional[datetime]):
        stmt = select(AuditEvent)
        if start is not None:
            stmt = stmt.where(AuditEvent.timestamp >= start)
        if end is not None:
            stmt = stmt.where(AuditEvent.timestamp <= end)
        return stmt.order_by(*CANONICAL_ORDER)

    async def range_query(
        self,
        session: AsyncSession,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AuditEvent]:
        """Events with ``start <= timestamp <= end`` in canonical order."""
        result = await session.execute(self._range_statement(start, end))
        return list(result.scalars().all())

    async def stream_range(
        self,
        session: AsyncSession,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AsyncIterator[AuditEvent]:
        """Like ``range_query`` but yields rows as they are fetched."""
        result = await session.stream_scalars(self._range_statement(start, end))
        async for event in result:
            yield event

    async def insert_many(self, session: AsyncSession, events: Iterable[AuditEvent]) -> None:
        """Insert events; sequences are assigned on flush."""
        session.add_all(list(events))
        await session.flush()

    async def update_many(self, session: AsyncSession, events: Iterable[AuditEvent]) -> None:
        """Write back modified events."""
        session.add_all(list(events))
        await session.flush()

    async def count(self, session: AsyncSession, status: Optional[str] = None) -> int:
        """Count events, optionally by integrity status."""
        stmt = select(func.count()).select_from(AuditEvent)
        if status is not None:
            stmt = stmt.where(AuditEvent.integrity_status == status)
        return int((await session.execute(stmt)).scalar_one())

    async def mark_archived(self, session: AsyncSession, cutoff: datetime, archived_at: datetime) -> int:
        """Flag events older than ``cutoff`` as archived. Rows are kept."""
        result = await session.execute(
            update(AuditEvent)
            .where(
                AuditEvent.timestamp < cutoff,
                AuditEvent.is_archived == False,  # noqa: E712
            )
            .values(is_archived=True, archived_at=archived_at)
        )
        return result.rowcount or 0

    # Append

    async def append(self, event: AuditEvent) -> AuditEvent:
        """Append ``event`` at the tail, computing its link at write time.

        Raises:
            OutOfOrderAppendError: If the event's timestamp precedes the tail.
        """
        async with self.transaction() as session:
            await self.lock_chain(session)
            tail = await self.tail(session)
            if tail is not None and event.timestamp < tail.timestamp:
                raise OutOfOrderAppendError(
                    f"event {event.event_id} at {event.timestamp.isoformat()} precedes "
                    f"chain tail at {tail.timestamp.isoformat()}"
                )

            previous_hash = tail.current_hash if tail is not None else None
            event.previous_hash = previous_hash
            event.current_hash = compute_hash(event, previous_hash)
            event.original_hash = event.current_hash
            event.integrity_status = IntegrityStatus.VERIFIED
            event.last_verified_at = None
            session.add(event)
            await session.flush()

        logger.debug(
            "Appended audit event",
            extra={"event_id": event.event_id, "sequence": event.sequence},
        )
        return event
