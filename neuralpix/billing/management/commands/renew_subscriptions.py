"""
Management command to run the subscription renewal transition.

Every ACTIVE subscription whose next billing date has passed is renewed:
expired if auto-renew is off, otherwise a renewal checkout is created, or the
subscription is moved to past due when the gateway fails.

Usage:
    python manage.py renew_subscriptions
    python manage.py renew_subscriptions --dry-run
"""

from django.core.management.base import BaseCommand

from neuralpix.billing.scheduler import BillingScheduler


class Command(BaseCommand):
    help = "Renew, expire or mark past due every subscription whose billing date has passed."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List due subscriptions without renewing them",
        )

    def handle(self, *args, **options):
        scheduler = BillingScheduler()

        if options["dry_run"]:
            due = scheduler.due_subscription_ids()
            if not due:
                self.stdout.write(self.style.SUCCESS("No subscriptions due for renewal."))
                return
            self.stdout.write(
                self.style.WARNING(
                    f"[DRY RUN] Would renew {len(due)} subscription(s): "
                    + ", ".join(str(pk) for pk in due),
                ),
            )
            return

        result = scheduler.run_renewals()
        if result.errors:
            for subscription_id, error in result.errors:
                self.stderr.write(f"Subscription {subscription_id}: {error}")
            self.stdout.write(self.style.WARNING(f"Renewal run finished with errors: {result.summary()}"))
            return
        self.stdout.write(self.style.SUCCESS(f"Renewal run finished: {result.summary()}"))
