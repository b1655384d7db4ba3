"""
Management command to cancel stale pending transactions.

Checkouts that were never paid stay PENDING forever unless something closes
them. Transactions older than the TTL (BILLING_PENDING_TRANSACTION_TTL_HOURS,
default 24) are moved to CANCELLED.

Usage:
    python manage.py expire_pending_transactions
    python manage.py expire_pending_transactions --hours=48
    python manage.py expire_pending_transactions --dry-run
"""

from datetime import timedelta

from django.core.management.base import BaseCommand

from neuralpix.billing.scheduler import BillingScheduler


class Command(BaseCommand):
    help = "Cancel PENDING transactions older than the pending-transaction TTL."

    def add_arguments(self, parser):
        parser.add_argument(
            "--hours",
            type=int,
            default=None,
            help="Override the TTL in hours",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be cancelled without changing anything",
        )

    def handle(self, *args, **options):
        hours = options["hours"]
        scheduler = BillingScheduler(
            pending_ttl=timedelta(hours=hours) if hours else None,
        )

        count = scheduler.count_expirable_transactions()
        if count == 0:
            self.stdout.write(self.style.SUCCESS("No stale pending transactions found."))
            return

        if options["dry_run"]:
            self.stdout.write(
                self.style.WARNING(
                    f"[DRY RUN] Would cancel {count} pending transaction(s)."
                ),
            )
            return

        cancelled = scheduler.expire_pending_transactions()
        self.stdout.write(
            self.style.SUCCESS(f"Cancelled {cancelled} pending transaction(s).")
        )
