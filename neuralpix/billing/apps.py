from django.apps import AppConfig


class BillingConfig(AppConfig):
    """
    Django app configuration for the billing app.

    Handles PayOS payments, the subscription lifecycle and usage metering.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "neuralpix.billing"
    label = "billing"
    verbose_name = "Billing"
