"""
Management command to delete old usage counters.

Usage rows are only needed for the current day and month. Rows older than
the retention window (BILLING_USAGE_RETENTION_MONTHS, default 3) are deleted.

Usage:
    python manage.py purge_usage_records
    python manage.py purge_usage_records --months=6
    python manage.py purge_usage_records --dry-run
"""

from django.core.management.base import BaseCommand

from neuralpix.billing.models import UsageTracking
from neuralpix.billing.scheduler import BillingScheduler


class Command(BaseCommand):
    help = "Delete usage tracking rows older than the retention window."

    def add_arguments(self, parser):
        parser.add_argument(
            "--months",
            type=int,
            default=None,
            help="Override the retention window in months",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be deleted without actually deleting",
        )

    def handle(self, *args, **options):
        scheduler = BillingScheduler(usage_retention_months=options["months"])
        cutoff = scheduler.usage_cutoff()

        count = UsageTracking.objects.filter(usage_date__lt=cutoff).count()
        if count == 0:
            self.stdout.write(self.style.SUCCESS(f"No usage records older than {cutoff}."))
            return

        if options["dry_run"]:
            self.stdout.write(
                self.style.WARNING(
                    f"[DRY RUN] Would delete {count} usage record(s) older than {cutoff}."
                ),
            )
            return

        deleted = scheduler.purge_usage_records()
        self.stdout.write(
            self.style.SUCCESS(f"Deleted {deleted} usage record(s) older than {cutoff}.")
        )
