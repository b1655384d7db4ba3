from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone
import model_utils.fields


TIER_CHOICES = [("free", "Free"), ("basic", "Basic"), ("premium", "Premium")]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created", model_utils.fields.AutoCreatedField(default=django.utils.timezone.now, editable=False, verbose_name="created")),
                ("modified", model_utils.fields.AutoLastModifiedField(default=django.utils.timezone.now, editable=False, verbose_name="modified")),
                ("tier", models.CharField(choices=TIER_CHOICES, default="free", max_length=20)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("active", "Active"),
                            ("past_due", "Past Due"),
                            ("cancelled", "Cancelled"),
                            ("expired", "Expired"),
                        ],
                        db_index=True,
                        default="active",
                        max_length=20,
                    ),
                ),
                ("billing_cycle", models.CharField(choices=[("monthly", "Monthly"), ("yearly", "Yearly")], default="monthly", max_length=20)),
                ("price", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("currency", models.CharField(default="VND", max_length=3)),
                ("payment_provider", models.CharField(default="payos", max_length=20)),
                (
                    "external_subscription_id",
                    models.CharField(blank=True, help_text="Gateway-side correlation key (order code of the signup payment).", max_length=100),
                ),
                ("auto_renew", models.BooleanField(default=True)),
                ("start_date", models.DateTimeField()),
                ("end_date", models.DateTimeField()),
                (
                    "next_billing_date",
                    models.DateTimeField(blank=True, db_index=True, help_text="Due date of the next renewal. Only acted on while ACTIVE.", null=True),
                ),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.CharField(blank=True, max_length=500)),
                (
                    "archived_at",
                    models.DateTimeField(blank=True, help_text="Set when the subscription is archived instead of deleted.", null=True),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created"],
                "indexes": [models.Index(fields=["user", "status"], name="billing_sub_user_id_8c2f4e_idx")],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("end_date__gte", models.F("start_date"))),
                        name="billing_subscription_end_after_start",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Transaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created", model_utils.fields.AutoCreatedField(default=django.utils.timezone.now, editable=False, verbose_name="created")),
                ("modified", model_utils.fields.AutoLastModifiedField(default=django.utils.timezone.now, editable=False, verbose_name="modified")),
                ("order_code", models.BigIntegerField(unique=True)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="VND", max_length=3)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("paid", "Paid"),
                            ("cancelled", "Cancelled"),
                            ("failed", "Failed"),
                            ("expired", "Expired"),
                            ("refunded", "Refunded"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                (
                    "transaction_type",
                    models.CharField(
                        choices=[
                            ("subscription_payment", "Subscription Payment"),
                            ("subscription_renewal", "Subscription Renewal"),
                            ("subscription_upgrade", "Subscription Upgrade"),
                            ("subscription_downgrade", "Subscription Downgrade"),
                            ("one_time_payment", "One-time Payment"),
                            ("refund", "Refund"),
                        ],
                        max_length=30,
                    ),
                ),
                ("payment_provider", models.CharField(default="payos", max_length=20)),
                (
                    "payment_method",
                    models.CharField(
                        blank=True,
                        choices=[("bank_transfer", "Bank Transfer"), ("credit_card", "Credit Card"), ("wallet", "Wallet")],
                        max_length=20,
                    ),
                ),
                ("description", models.CharField(blank=True, max_length=500)),
                ("buyer_email", models.EmailField(blank=True, max_length=254)),
                ("checkout_url", models.URLField(blank=True, max_length=500)),
                ("payment_link_id", models.CharField(blank=True, max_length=100)),
                ("gateway_reference", models.CharField(blank=True, max_length=100)),
                ("failure_reason", models.CharField(blank=True, max_length=500)),
                (
                    "billing_period_start",
                    models.DateTimeField(blank=True, help_text="For renewals: the due date this payment renews from.", null=True),
                ),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                (
                    "metadata",
                    models.JSONField(blank=True, default=dict, help_text="Checkout context such as requested tier and billing cycle."),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="billing.subscription",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="billing_transactions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created"],
                "indexes": [
                    models.Index(fields=["user", "-created"], name="billing_tra_user_id_3b7d1a_idx"),
                    models.Index(fields=["status", "created"], name="billing_tra_status_5e9c2b_idx"),
                    models.Index(fields=["subscription", "transaction_type"], name="billing_tra_subscri_7a4f0d_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="UsageTracking",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created", model_utils.fields.AutoCreatedField(default=django.utils.timezone.now, editable=False, verbose_name="created")),
                ("modified", model_utils.fields.AutoLastModifiedField(default=django.utils.timezone.now, editable=False, verbose_name="modified")),
                ("usage_date", models.DateField()),
                (
                    "usage_type",
                    models.CharField(
                        choices=[
                            ("daily_generation", "Daily Generation"),
                            ("monthly_generation", "Monthly Generation"),
                            ("api_request", "API Request"),
                        ],
                        max_length=30,
                    ),
                ),
                ("usage_count", models.PositiveIntegerField(default=0)),
                ("reset_at", models.DateTimeField(help_text="When this period ends and a fresh row takes over.")),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="usage_records",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-usage_date"],
                "indexes": [models.Index(fields=["usage_date"], name="billing_usa_usage_d_1f6e3c_idx")],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("user", "usage_date", "usage_type"),
                        name="billing_usage_unique_user_date_type",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="UserSubscriptionHistory",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "action_type",
                    models.CharField(
                        choices=[
                            ("created", "Created"),
                            ("upgraded", "Upgraded"),
                            ("downgraded", "Downgraded"),
                            ("renewed", "Renewed"),
                            ("cancelled", "Cancelled"),
                            ("reactivated", "Reactivated"),
                            ("expired", "Expired"),
                            ("past_due", "Past Due"),
                        ],
                        max_length=20,
                    ),
                ),
                ("old_tier", models.CharField(blank=True, choices=TIER_CHOICES, max_length=20)),
                ("new_tier", models.CharField(blank=True, choices=TIER_CHOICES, max_length=20)),
                ("amount_charged", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("proration_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("notes", models.TextField(blank=True)),
                ("created", models.DateTimeField(auto_now_add=True, db_index=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="history",
                        to="billing.subscription",
                    ),
                ),
                (
                    "transaction",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="history",
                        to="billing.transaction",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscription_history",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created", "-id"],
                "verbose_name_plural": "user subscription history",
            },
        ),
    ]
