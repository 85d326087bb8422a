"""Celery tasks for scheduled and queued ledger work."""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, TypeVar

from audit_ledger.db.session import create_engine_for, make_session_factory
from audit_ledger.ledger.service import LedgerService
from audit_ledger.ledger.store import EventStore
from audit_ledger.settings import get_settings
from audit_ledger.storage.service import get_storage_service
from audit_ledger_worker.celery_app import celery_app
from audit_ledger_worker.single_flight import single_flight

logger = logging.getLogger(__name__)

T = TypeVar("T")

SKIPPED = {"status": "SKIPPED"}


def run_with_service(job: Callable[[LedgerService], Awaitable[T]]) -> T:
    """Run ``job`` in a fresh event loop with its own NullPool engine."""

    async def runner():
        engine = create_engine_for(get_settings().database_url_computed, null_pool=True)
        try:
            service = LedgerService(EventStore(make_session_factory(engine)), get_storage_service())
            return await job(service)
        finally:
            await engine.dispose()

    return asyncio.run(runner())


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@celery_app.task(bind=True)
def verify_chain(self, start: Optional[str] = None, end: Optional[str] = None, initiated_by: str = "scheduler"):
    """Verify the chain. A BROKEN result is returned, never retried."""
    log_extra = {"task": "verify_chain", "task_id": self.request.id}
    with single_flight("verify-chain") as acquired:
        if not acquired:
            return SKIPPED
        result = run_with_service(
            lambda service: service.request_verification(_parse(start), _parse(end), initiated_by=initiated_by)
        )
    logger.info(f"Scheduled verification finished: {result.status}", extra=log_extra)
    return result.to_dict()


@celery_app.task(bind=True)
def export_archives(self, lookback_days: Optional[int] = None) -> List[dict]:
    """Export every closed, unarchived day in the lookback window."""
    log_extra = {"task": "export_archives", "task_id": self.request.id}
    with single_flight("export-archives") as acquired:
        if not acquired:
            return [SKIPPED]
        results = run_with_service(lambda service: service.export_pending(lookback_days))
    logger.info(f"Archive export run finished: {len(results)} windows checked", extra=log_extra)
    return [result.to_dict() for result in results]


@celery_app.task(bind=True)
def check_replication(self, limit: Optional[int] = None):
    """Poll replication state of PENDING/FAILED archives."""
    with single_flight("check-replication") as acquired:
        if not acquired:
            return SKIPPED
        summary = run_with_service(lambda service: service.check_replication(limit))
    return summary.to_dict()


@celery_app.task(bind=True, max_retries=0)
def merge_offline_batch(
    self,
    events: list,
    device_id: Optional[str],
    offline_session_id: Optional[str],
    user_id: Optional[str] = None,
    merge_id: Optional[str] = None,
):
    """Reconcile an offline batch; routed to the single-worker merge queue."""
    log_extra = {"task": "merge_offline_batch", "merge_id": merge_id or self.request.id}
    logger.info(f"Starting offline merge of {len(events or [])} events", extra=log_extra)
    record = run_with_service(
        lambda service: service.request_merge(
            events, device_id, offline_session_id, user_id=user_id, merge_id=merge_id or self.request.id
        )
    )
    return {
        "merge_id": record.merge_id,
        "status": record.status,
        "events_received": record.events_received,
        "events_merged": record.events_merged,
        "duplicates_skipped": record.duplicates_skipped,
        "conflicts_detected": record.conflicts_detected,
        "events_rehashed": record.events_rehashed,
    }
