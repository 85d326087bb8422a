"""Pytest configuration and fixtures."""

import os
from datetime import date, datetime, timedelta
from typing import Dict, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from audit_ledger.db.base import Base
from audit_ledger.db.session import make_session_factory
from audit_ledger.ledger.schemas import AuditEventIn
from audit_ledger.ledger.store import EventStore
from audit_ledger.models import ArchiveMetadata, ReplicationStatus  # registers every ledger table
from audit_ledger.settings import Settings

# Use test database URL from environment or default to SQLite in-memory
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")


@pytest_asyncio.fixture
async def engine():
    """
    Create a test database engine with all ledger tables.

    For integration tests, point TEST_DATABASE_URL at a real PostgreSQL
    instance (postgresql+asyncpg://...) to exercise the advisory lock.
    """
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_async_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_async_engine(TEST_DATABASE_URL)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()


@pytest.fixture
def store(engine) -> EventStore:
    """Event store over the test database."""
    return EventStore(make_session_factory(engine))


@pytest.fixture
def settings() -> Settings:
    """Settings with test-friendly archive options."""
    return Settings(
        _env_file=None,
        environment="test",
        archive_retention_days=2555,
        archive_retention_grace_days=30,
        archive_cleanup_retention_days=90,
        archive_export_lookback_days=3,
        operation_timeout_seconds=30.0,
    )


@pytest.fixture
def append_event(store):
    """Append an online event: ``await append_event(timestamp, actor=..., ...)``."""

    async def _append(timestamp: datetime, actor: str = "alice", action: str = "LOGIN", **fields):
        payload = AuditEventIn(timestamp=timestamp, actor=actor, action=action, **fields)
        return await store.append(payload.to_event())

    return _append


class FakeStorage:
    """In-memory stand-in for StorageService."""

    def __init__(self, bucket: str = "audit-archives"):
        self.bucket = bucket
        self.bucket_ready = False
        self.objects: Dict[str, dict] = {}
        self.replication: Dict[str, object] = {}
        self.put_error: Optional[Exception] = None
        self.signed: list = []

    async def ensure_bucket(self) -> None:
        self.bucket_ready = True

    async def put_object(
        self,
        object_key,
        data,
        length,
        content_type="application/octet-stream",
        metadata=None,
        retain_until=None,
    ):
        if self.put_error is not None:
            raise self.put_error
        self.objects[object_key] = {
            "data": data.read(length),
            "length": length,
            "content_type": content_type,
            "metadata": dict(metadata or {}),
            "retain_until": retain_until,
        }
        return object_key

    async def get_object(self, object_key):
        if object_key not in self.objects:
            raise FileNotFoundError(f"Object not found: {object_key}")
        return self.objects[object_key]["data"]

    async def replication_status(self, object_key):
        value = self.replication.get(object_key)
        if isinstance(value, Exception):
            raise value
        return value

    async def generate_signed_url(self, object_key, expires_in_seconds=3600):
        self.signed.append((object_key, expires_in_seconds))
        return f"https://archive.test/{object_key}?expires={expires_in_seconds}"

    async def object_exists(self, object_key):
        return object_key in self.objects


@pytest.fixture
def storage() -> FakeStorage:
    """In-memory object storage."""
    return FakeStorage()


@pytest.fixture
def make_archive():
    """Build an ArchiveMetadata row for one export day."""

    def _make(export_date: date, status: str = ReplicationStatus.PENDING) -> ArchiveMetadata:
        start = datetime.combine(export_date, datetime.min.time())
        return ArchiveMetadata(
            archive_id=f"archive-{export_date.isoformat()}",
            file_name=f"audit-events-{export_date.isoformat()}.jsonl.gz",
            object_key=f"{export_date:%Y}/{export_date:%m}/audit-events-{export_date.isoformat()}.jsonl.gz",
            export_date=export_date,
            exported_at=start + timedelta(days=1),
            event_date_start=start,
            event_date_end=start + timedelta(hours=23),
            event_count=1,
            file_size=100,
            uncompressed_size=200,
            compression_ratio=0.5,
            retention_expiry_date=start + timedelta(days=2585),
            storage_location="PRIMARY",
            replication_status=status,
        )

    return _make
