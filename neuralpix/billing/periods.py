"""
Calendar arithmetic for billing cycles and usage periods.

Billing cycles use ``relativedelta`` so that adding a month to the 31st lands
on the last day of a shorter month (2024-01-31 + 1 month = 2024-02-29) instead
of overflowing into the next one.
"""

from __future__ import annotations

from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta

from dateutil.relativedelta import relativedelta
from django.utils import timezone

from neuralpix.billing.constants import BillingCycle
from neuralpix.billing.constants import coerce_choice

CYCLE_DURATIONS = {
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.YEARLY: relativedelta(years=1),
}


def add_billing_cycle(moment: datetime, billing_cycle: str) -> datetime:
    """Return ``moment`` advanced by exactly one billing cycle."""
    cycle = coerce_choice(BillingCycle, billing_cycle, default=BillingCycle.MONTHLY)
    return moment + CYCLE_DURATIONS[cycle]


def month_start(day: date) -> date:
    return day.replace(day=1)


def next_day_start(day: date) -> datetime:
    """Aware midnight at the start of the day after ``day``."""
    return timezone.make_aware(datetime.combine(day + timedelta(days=1), time.min))


def next_month_start(day: date) -> datetime:
    """Aware midnight at the start of the month after ``day``."""
    first = month_start(day) + relativedelta(months=1)
    return timezone.make_aware(datetime.combine(first, time.min))


def subtract_months(day: date, months: int) -> date:
    return day - relativedelta(months=months)
