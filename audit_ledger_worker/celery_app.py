"""Celery application configuration."""

from datetime import timedelta

from celery import Celery
from celery.schedules import crontab

from audit_ledger.celery_client import MERGE_QUEUE, MERGE_TASK
from audit_ledger.logging_config import configure_logging
from audit_ledger.settings import get_settings

settings = get_settings()

configure_logging()

celery_app = Celery(
    "audit_ledger_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_hijack_root_logger=False,
    # Run the merge queue with a single worker process: -Q ledger-merge -c 1
    task_routes={MERGE_TASK: {"queue": MERGE_QUEUE}},
    beat_schedule={
        "verify-chain": {
            "task": "audit_ledger_worker.tasks.verify_chain",
            "schedule": timedelta(seconds=settings.verification_interval_seconds),
        },
        "export-archives": {
            "task": "audit_ledger_worker.tasks.export_archives",
            "schedule": crontab(hour=settings.export_hour_utc, minute=0),
        },
        "check-replication": {
            "task": "audit_ledger_worker.tasks.check_replication",
            "schedule": timedelta(seconds=settings.replication_poll_interval_seconds),
        },
    },
)

# Import tasks to register them with Celery
# This must be done after celery_app is created
from audit_ledger_worker import tasks  # noqa: F401, E402
