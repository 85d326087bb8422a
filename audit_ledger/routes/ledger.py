"""Audit ledger routes: append, verification, offline merge and archives."""

import logging
import uuid
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from audit_ledger.celery_client import MERGE_QUEUE, MERGE_TASK, get_celery_app
from audit_ledger.db.session import get_session_factory
from audit_ledger.ledger.errors import ArchiveExportError, OutOfOrderAppendError, WindowNotClosedError
from audit_ledger.ledger.normalize import as_utc_naive
from audit_ledger.ledger.schemas import AuditEventIn
from audit_ledger.ledger.service import LedgerService
from audit_ledger.ledger.store import EventStore
from audit_ledger.storage.service import get_storage_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/audit", tags=["audit"])


def get_ledger_service() -> LedgerService:
    """Ledger service bound to the process-wide engine and storage."""
    return LedgerService(EventStore(get_session_factory()), get_storage_service())


class AuditEventResponse(BaseModel):
    """Stored event."""

    model_config = ConfigDict(from_attributes=True)

    event_id: str
    sequence: int
    timestamp: datetime
    actor: str
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    correlation_id: Optional[str] = None
    previous_hash: Optional[str] = None
    current_hash: str
    integrity_status: str


class VerifyRequest(BaseModel):
    """Chain verification request."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    initiated_by: str = "api"


class VerificationResponse(BaseModel):
    """One verification history row."""

    model_config = ConfigDict(from_attributes=True)

    verification_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    range_start: Optional[datetime] = None
    range_end: Optional[datetime] = None
    events_verified: int
    chain_status: str
    broken_event_id: Optional[str] = None
    broken_event_timestamp: Optional[datetime] = None
    broken_position: Optional[int] = None
    failure_reason: Optional[str] = None
    initiated_by: str
    duration_ms: int


class VerificationHistoryResponse(BaseModel):
    """Paged verification history."""

    items: List[VerificationResponse]
    total: int
    page: int
    page_size: int


class OfflineMergeRequest(BaseModel):
    """Offline batch submitted by a reconnecting client."""

    device_id: Optional[str] = None
    offline_session_id: Optional[str] = None
    user_id: Optional[str] = None
    events: List[dict] = Field(default_factory=list)


class MergeRecordResponse(BaseModel):
    """Offline merge history row."""

    model_config = ConfigDict(from_attributes=True)

    merge_id: str
    user_id: str
    device_id: str
    offline_session_id: str
    events_received: int
    events_merged: int
    duplicates_skipped: int
    conflicts_detected: int
    events_rehashed: int
    merge_duration_ms: int
    status: str
    error_details: Optional[str] = None
    created_at: datetime


class ExportRequest(BaseModel):
    """Archive export request for one UTC day."""

    export_date: date


class ArchiveResponse(BaseModel):
    """Archive metadata row."""

    model_config = ConfigDict(from_attributes=True)

    archive_id: str
    file_name: str
    object_key: str
    export_date: date
    exported_at: datetime
    event_date_start: datetime
    event_date_end: datetime
    event_count: int
    file_size: int
    uncompressed_size: int
    compression_ratio: float
    chain_start_hash: Optional[str] = None
    chain_end_hash: Optional[str] = None
    chain_link_hash: Optional[str] = None
    retention_expiry_date: datetime
    storage_location: str
    replication_status: Optional[str] = None
    last_replication_check_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    last_accessed_by: Optional[str] = None


class ArchiveSearchResponse(BaseModel):
    """Paged archive search results."""

    items: List[ArchiveResponse]
    total: int
    page: int
    page_size: int


@router.post("/events", response_model=AuditEventResponse, status_code=status.HTTP_201_CREATED)
async def append_event(
    payload: AuditEventIn,
    request: Request,
    service: LedgerService = Depends(get_ledger_service),
):
    """Append an event at the chain tail."""
    if not payload.correlation_id:
        payload.correlation_id = getattr(request.state, "correlation_id", None)
    try:
        return await service.append_event(payload)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except OutOfOrderAppendError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"{e}. Submit late events through the offline merge endpoint.",
        )


@router.post("/verify")
async def verify_chain(
    body: VerifyRequest,
    service: LedgerService = Depends(get_ledger_service),
):
    """Verify the chain over an optional range."""
    start = as_utc_naive(body.start) if body.start else None
    end = as_utc_naive(body.end) if body.end else None
    if start and end and start > end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start must not be after end")
    result = await service.request_verification(start, end, initiated_by=body.initiated_by)
    return result.to_dict()


@router.get("/integrity")
async def integrity_status(service: LedgerService = Depends(get_ledger_service)):
    """Integrity summary with the most recent verification."""
    return await service.integrity_status()


@router.get("/verifications", response_model=VerificationHistoryResponse)
async def verification_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    service: LedgerService = Depends(get_ledger_service),
):
    """Verification history, newest first."""
    items, total = await service.verification_history(page, page_size)
    return VerificationHistoryResponse(
        items=[VerificationResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/offline-merge", status_code=status.HTTP_202_ACCEPTED)
async def request_offline_merge(body: OfflineMergeRequest, request: Request):
    """Enqueue an offline batch on the dedicated merge queue."""
    correlation_id = getattr(request.state, "correlation_id", None)
    merge_id = str(uuid.uuid4())
    log_extra = {"correlation_id": correlation_id, "merge_id": merge_id, "device_id": body.device_id}

    try:
        celery_app = get_celery_app()
        task_signature = celery_app.signature(
            MERGE_TASK,
            args=[body.events, body.device_id, body.offline_session_id, body.user_id, merge_id],
            task_id=merge_id,
            queue=MERGE_QUEUE,
        )
        task_signature.apply_async()
    except Exception as e:
        logger.error(f"Failed to enqueue offline merge: {e}", extra=log_extra, exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "failed",
                "error_code": "BROKER_UNAVAILABLE",
                "detail": "Offline merge queue is unavailable",
            },
            headers={"Retry-After": "30"},
        )

    logger.info(f"Enqueued offline merge with {len(body.events)} events", extra=log_extra)
    return {
        "status": "pending",
        "merge_id": merge_id,
        "events_submitted": len(body.events),
        "poll_url": f"/v1/audit/offline-merge/{merge_id}",
    }


@router.get("/offline-merge/{merge_id}", response_model=MergeRecordResponse)
async def get_offline_merge(merge_id: str, service: LedgerService = Depends(get_ledger_service)):
    """Result of an offline merge."""
    record = await service.get_merge(merge_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Merge {merge_id} not found",
            headers={"Retry-After": "30"},
        )
    return record


@router.post("/archives/export")
async def export_archive(body: ExportRequest, service: LedgerService = Depends(get_ledger_service)):
    """Export one closed UTC day to archive storage."""
    try:
        result = await service.request_export(body.export_date)
    except WindowNotClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ArchiveExportError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return result.to_dict()


@router.get("/archives", response_model=ArchiveSearchResponse)
async def search_archives(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    service: LedgerService = Depends(get_ledger_service),
):
    """Archives overlapping a date range."""
    items, total = await service.search_archives(start_date, end_date, page, page_size)
    return ArchiveSearchResponse(
        items=[ArchiveResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/archives/{archive_id}/download")
async def download_archive(
    archive_id: str,
    request: Request,
    ttl_seconds: Optional[int] = None,
    service: LedgerService = Depends(get_ledger_service),
):
    """Presigned download URL for an archive."""
    accessed_by = request.headers.get("x-user-id")
    result = await service.archive_download_url(archive_id, accessed_by=accessed_by, ttl_seconds=ttl_seconds)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Archive {archive_id} not found")
    return result
