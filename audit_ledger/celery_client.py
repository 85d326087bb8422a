"""Shared Celery client for the API to enqueue ledger tasks.

This module provides a singleton Celery instance configured to match
the worker's expectations (serializer, timezone, etc.).
"""

import logging
from typing import Optional

from celery import Celery

from audit_ledger.settings import get_settings

logger = logging.getLogger(__name__)

MERGE_QUEUE = "ledger-merge"
MERGE_TASK = "audit_ledger_worker.tasks.merge_offline_batch"

_celery_app: Optional[Celery] = None


def get_celery_app() -> Celery:
    """
    Get or create singleton Celery app instance.

    Configured to match worker expectations:
    - JSON serializer
    - UTC timezone
    - Redis broker + backend
    """
    global _celery_app

    if _celery_app is None:
        settings = get_settings()

        _celery_app = Celery("audit_ledger")
        _celery_app.conf.update(
            broker_url=settings.redis_url,
            result_backend=settings.redis_url,
            task_serializer="json",
            accept_content=["json"],
            result_serializer="json",
            timezone="UTC",
            enable_utc=True,
            task_track_started=True,
            task_routes={MERGE_TASK: {"queue": MERGE_QUEUE}},
        )

        logger.info("Initialized Celery client for audit_ledger")

    return _celery_app
