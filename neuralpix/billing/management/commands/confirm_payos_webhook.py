"""
Management command to register the webhook URL with PayOS.

PayOS only delivers payment events to a URL that has been confirmed for the
merchant account. Run once per environment after deploying.

Usage:
    python manage.py confirm_payos_webhook https://api.neuralpix.app/api/v1/billing/webhooks/payos/
"""

from django.core.management.base import BaseCommand
from django.core.management.base import CommandError

from neuralpix.billing.exceptions import BillingError
from neuralpix.billing.gateway import PayOSGateway


class Command(BaseCommand):
    help = "Confirm the PayOS webhook URL for this merchant account."

    def add_arguments(self, parser):
        parser.add_argument("url", help="Public HTTPS URL of the PayOS webhook endpoint")

    def handle(self, *args, **options):
        url = options["url"]
        try:
            PayOSGateway().confirm_webhook_endpoint(url)
        except BillingError as exc:
            raise CommandError(f"Could not confirm webhook URL: {exc.detail}") from exc
        self.stdout.write(self.style.SUCCESS(f"Confirmed PayOS webhook URL {url}"))
