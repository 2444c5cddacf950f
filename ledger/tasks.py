"""Celery app and periodic billing jobs."""

from __future__ import annotations

import logging
from typing import Any

from celery import Celery
from celery.schedules import crontab

from config import (
    CELERY_ALWAYS_EAGER,
    DEFERRED_INVOICE_CRON_HOUR,
    DEFERRED_INVOICE_CRON_MINUTE,
    REDIS_DISABLED,
    REDIS_URL,
)
from observability import get_logger, log_event

from .batcher import run_deferred_invoicing
from .notify import default_notifier

_LOGGER = get_logger("ledger.tasks")

_USE_REDIS = not (REDIS_DISABLED or CELERY_ALWAYS_EAGER)
_BROKER_URL = REDIS_URL if _USE_REDIS else "memory://"
_BACKEND_URL = REDIS_URL if _USE_REDIS else "cache+memory://"

celery_app = Celery("retouch_billing", broker=_BROKER_URL, backend=_BACKEND_URL)
if not _USE_REDIS:
    celery_app.conf.task_always_eager = True
    celery_app.conf.task_ignore_result = True
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.timezone = "UTC"
celery_app.conf.beat_schedule = {
    "deferred-invoicing-daily": {
        "task": "ledger.run_deferred_invoicing",
        "schedule": crontab(hour=DEFERRED_INVOICE_CRON_HOUR, minute=DEFERRED_INVOICE_CRON_MINUTE),
    },
}


@celery_app.task(name="ledger.run_deferred_invoicing")
def run_deferred_invoicing_task() -> dict[str, Any]:
    """Daily deferred-billing run. Safe to re-run: only uninvoiced orders are picked up."""
    summary = run_deferred_invoicing(notifier=default_notifier())
    log_event(
        _LOGGER,
        logging.INFO,
        "ledger.run_deferred_invoicing.completed",
        processed_users=summary.processed_users,
        invoices_created=summary.invoices_created,
        failed_users=summary.failed_users,
    )
    return {
        "success": summary.success,
        "message": summary.message,
        "processedUsers": summary.processed_users,
        "invoicesCreated": summary.invoices_created,
        "failedUsers": summary.failed_users,
    }
