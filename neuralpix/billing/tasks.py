"""
Celery tasks for scheduled billing operations.

Celery Beat triggers these on the schedules defined in schedules.py (synced
into django-celery-beat by ``manage.py sync_billing_schedules``).

Each task wraps a Django management command, providing:
    - Scheduled execution via crontab schedules
    - Automatic retries on transient failures (DB/network issues)
    - The same code path an operator gets from ``manage.py``

To run the worker:
    celery -A config worker --loglevel=info

To run the beat scheduler:
    celery -A config beat --loglevel=info \\
        --scheduler django_celery_beat.schedulers:DatabaseScheduler
"""

import logging
from datetime import UTC
from datetime import datetime
from io import StringIO

from celery import shared_task
from django.core.management import call_command
from django.db import OperationalError

logger = logging.getLogger(__name__)

# Exceptions that indicate transient failures worth retrying.
RETRYABLE_EXCEPTIONS = (
    OperationalError,  # Database connection issues
    ConnectionError,  # Network issues
    TimeoutError,  # Timeouts
)


def _run_management_command(command_name: str, *args: str) -> dict:
    """
    Run a management command and return its captured output.

    Exceptions propagate so Celery's autoretry_for can handle them.
    """
    out = StringIO()
    err = StringIO()
    call_command(command_name, *args, stdout=out, stderr=err)

    result = {
        "status": "completed",
        "command": command_name,
        "output": out.getvalue().strip(),
        "timestamp": datetime.now(tz=UTC).isoformat(),
    }
    errors = err.getvalue().strip()
    if errors:
        result["errors"] = errors
    return result


@shared_task(
    bind=True,
    name="neuralpix.renew_due_subscriptions",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=60,  # Exponential backoff starting at 60s
    retry_backoff_max=600,  # Max 10 minutes between retries
    acks_late=True,
)
def renew_due_subscriptions(self) -> dict:
    """
    Run the renewal transition for every subscription that is due.

    Default schedule: Daily at 00:05
    """
    logger.info("Starting scheduled subscription renewal (task_id=%s)", self.request.id)
    result = _run_management_command("renew_subscriptions")
    logger.info("Subscription renewal completed: %s", result.get("output", ""))
    return result


@shared_task(
    bind=True,
    name="neuralpix.expire_pending_transactions",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=60,
    retry_backoff_max=600,
    acks_late=True,
)
def expire_pending_transactions(self) -> dict:
    """
    Cancel PENDING transactions older than the TTL.

    Default schedule: Hourly at :00
    """
    logger.info("Starting pending transaction expiry (task_id=%s)", self.request.id)
    result = _run_management_command("expire_pending_transactions")
    logger.info("Pending transaction expiry completed: %s", result.get("output", ""))
    return result


@shared_task(
    bind=True,
    name="neuralpix.purge_usage_records",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=60,
    retry_backoff_max=600,
    acks_late=True,
)
def purge_usage_records(self) -> dict:
    """
    Delete usage counters older than the retention window.

    Default schedule: Weekly on Sunday at 2:00 AM
    """
    logger.info("Starting usage record purge (task_id=%s)", self.request.id)
    result = _run_management_command("purge_usage_records")
    logger.info("Usage record purge completed: %s", result.get("output", ""))
    return result
