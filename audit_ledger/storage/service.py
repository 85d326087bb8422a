"""Object storage service for audit archives.

Uses MinIO (S3-compatible) with object lock, so archive objects are written
under a COMPLIANCE retention and cannot be deleted or overwritten before
their expiry. The MinIO SDK is blocking; every call is pushed to a worker
thread so the ledger's event loop is never stalled.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import BinaryIO, Dict, Optional

from minio import Minio
from minio.commonconfig import COMPLIANCE
from minio.error import S3Error
from minio.retention import Retention

from audit_ledger.settings import get_settings

logger = logging.getLogger(__name__)

REPLICATION_HEADER = "x-amz-replication-status"


class StorageService:
    """Archive object storage."""

    def __init__(self, client: Optional[Minio] = None, bucket: Optional[str] = None):
        """Initialize storage service with a MinIO client."""
        settings = get_settings()
        self.bucket = bucket or settings.archive_bucket
        self.client = client or Minio(
            settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_use_ssl,
        )

    def _ensure_bucket(self) -> None:
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket, object_lock=True)
            logger.info(f"Created bucket: {self.bucket}")

    async def ensure_bucket(self) -> None:
        """Create the archive bucket (object lock enabled) if missing."""
        await asyncio.to_thread(self._ensure_bucket)

    async def put_object(
        self,
        object_key: str,
        data: BinaryIO,
        length: int,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
        retain_until: Optional[datetime] = None,
    ) -> str:
        """
        Upload object to storage.

        Args:
            object_key: Object key (e.g., "2024/01/audit-events-2024-01-15.jsonl.gz")
            data: Readable stream positioned at the start of the object
            length: Number of bytes to read from ``data``
            content_type: MIME type
            metadata: User metadata, stored as ``x-amz-meta-*`` headers
            retain_until: COMPLIANCE retention expiry (naive values are UTC)

        Returns:
            Object key (for consistency)
        """
        retention = None
        if retain_until is not None:
            if retain_until.tzinfo is None:
                retain_until = retain_until.replace(tzinfo=timezone.utc)
            retention = Retention(COMPLIANCE, retain_until)

        try:
            await asyncio.to_thread(
                self.client.put_object,
                self.bucket,
                object_key,
                data,
                length,
                content_type=content_type,
                metadata=metadata,
                retention=retention,
            )
        except S3Error as e:
            logger.error(f"Failed to upload object {object_key}: {e}")
            raise
        logger.debug(f"Uploaded object: {object_key} ({length} bytes)")
        return object_key

    def _get_object(self, object_key: str) -> bytes:
        response = self.client.get_object(self.bucket, object_key)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    async def get_object(self, object_key: str) -> bytes:
        """
        Retrieve object from storage.

        Raises:
            FileNotFoundError: If object does not exist
        """
        try:
            return await asyncio.to_thread(self._get_object, object_key)
        except S3Error as e:
            if e.code == "NoSuchKey":
                raise FileNotFoundError(f"Object not found: {object_key}")
            logger.error(f"Failed to retrieve object {object_key}: {e}")
            raise

    async def replication_status(self, object_key: str) -> Optional[str]:
        """Bucket replication state of an object, or None if not replicated."""
        stat = await asyncio.to_thread(self.client.stat_object, self.bucket, object_key)
        metadata = stat.metadata or {}
        value = metadata.get(REPLICATION_HEADER)
        return value.upper() if value else None

    async def generate_signed_url(self, object_key: str, expires_in_seconds: int = 3600) -> str:
        """Generate presigned GET URL for object access."""
        try:
            return await asyncio.to_thread(
                self.client.presigned_get_object,
                self.bucket,
                object_key,
                expires=timedelta(seconds=expires_in_seconds),
            )
        except S3Error as e:
            logger.error(f"Failed to generate signed URL for {object_key}: {e}")
            raise

    async def object_exists(self, object_key: str) -> bool:
        """Check if object exists in storage."""
        try:
            await asyncio.to_thread(self.client.stat_object, self.bucket, object_key)
            return True
        except S3Error:
            return False


# Global instance
_storage_service: Optional[StorageService] = None


def get_storage_service() -> StorageService:
    """Get or create storage service instance."""
    global _storage_service
    if _storage_service is None:
        _storage_service = StorageService()
    return _storage_service
