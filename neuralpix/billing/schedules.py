"""
Scheduled billing jobs - single source of truth for their timings.

Each job is defined once here and synced into django-celery-beat
``PeriodicTask`` rows by ``manage.py sync_billing_schedules``. The Celery
tasks themselves live in tasks.py and wrap management commands.

Usage:

    from neuralpix.billing.schedules import BILLING_SCHEDULES

    for job in BILLING_SCHEDULES:
        print(f"{job.name}: {job.schedule_cron}")
"""

from dataclasses import dataclass

CRON_FIELD_COUNT = 5


@dataclass(frozen=True)
class ScheduledJob:
    """A periodic billing job and its cron schedule."""

    id: str  # e.g. "renew-subscriptions"
    name: str  # Human-readable name, also the PeriodicTask name
    celery_task: str  # Registered task name, e.g. "neuralpix.renew_due_subscriptions"
    schedule_cron: str  # minute hour day-of-month month day-of-week
    description: str = ""
    enabled: bool = True

    def crontab_fields(self) -> dict[str, str]:
        """Split the cron expression into django_celery_beat CrontabSchedule fields."""
        parts = self.schedule_cron.split()
        if len(parts) != CRON_FIELD_COUNT:
            raise ValueError(f"Invalid cron expression: {self.schedule_cron}")
        return {
            "minute": parts[0],
            "hour": parts[1],
            "day_of_month": parts[2],
            "month_of_year": parts[3],
            "day_of_week": parts[4],
        }


BILLING_SCHEDULES: tuple[ScheduledJob, ...] = (
    ScheduledJob(
        id="renew-subscriptions",
        name="Renew Due Subscriptions",
        celery_task="neuralpix.renew_due_subscriptions",
        schedule_cron="5 0 * * *",  # Daily at 00:05
        description="Renew, expire or mark past due every subscription that is due",
    ),
    ScheduledJob(
        id="expire-pending-transactions",
        name="Expire Pending Transactions",
        celery_task="neuralpix.expire_pending_transactions",
        schedule_cron="0 * * * *",  # Hourly at :00
        description="Cancel checkouts left PENDING past the TTL",
    ),
    ScheduledJob(
        id="purge-usage-records",
        name="Purge Usage Records",
        celery_task="neuralpix.purge_usage_records",
        schedule_cron="0 2 * * 0",  # Weekly on Sunday at 2:00 AM
        description="Delete usage counters older than the retention window",
    ),
)


def get_job(job_id: str) -> ScheduledJob | None:
    for job in BILLING_SCHEDULES:
        if job.id == job_id:
            return job
    return None
