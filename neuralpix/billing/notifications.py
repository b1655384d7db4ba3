"""
Email notifications for subscription lifecycle transitions.

This module sends fire-and-forget emails when:
- A subscription is created, renewed or reactivated
- A subscription changes tier
- A subscription is cancelled (immediately or at period end)
- A subscription expires
- A renewal payment fails and the subscription becomes past due

Sending never raises: failures are logged and reported as ``False`` so a
broken mail server cannot undo a billing transition.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.mail import send_mail
from django.utils.translation import gettext as _

from neuralpix.billing.constants import HistoryAction

if TYPE_CHECKING:
    from neuralpix.billing.models import Subscription

logger = logging.getLogger(__name__)


def get_site_url() -> str:
    return getattr(settings, "SITE_URL", "https://neuralpix.app")


def _format_date(value) -> str:
    return value.strftime("%Y-%m-%d") if value else "-"


class NotificationDispatcher:
    """Sends lifecycle emails to the subscription owner."""

    def __init__(self, from_email: str | None = None):
        self.from_email = from_email or settings.DEFAULT_FROM_EMAIL

    def subscription_confirmed(
        self,
        subscription: Subscription,
        action: str = HistoryAction.CREATED,
    ) -> bool:
        if action == HistoryAction.RENEWED:
            subject = _("Your NeuralPix subscription has been renewed")
        elif action == HistoryAction.REACTIVATED:
            subject = _("Welcome back to NeuralPix")
        else:
            subject = _("Your NeuralPix subscription is active")
        message = _(
            """Hi %(name)s,

Your %(tier)s plan (%(cycle)s) is active until %(end_date)s.
Amount: %(price)s %(currency)s

Manage your subscription at %(site_url)s/account/billing

The NeuralPix team
""",
        ) % self._context(subscription)
        return self._send(subscription, subject, message)

    def plan_changed(self, subscription: Subscription, old_tier: str) -> bool:
        context = self._context(subscription)
        context["old_tier"] = str(old_tier).title()
        subject = _("Your NeuralPix plan has changed")
        message = _(
            """Hi %(name)s,

Your plan changed from %(old_tier)s to %(tier)s.
The new plan is active until %(end_date)s.

The NeuralPix team
""",
        ) % context
        return self._send(subscription, subject, message)

    def subscription_cancelled(self, subscription: Subscription) -> bool:
        context = self._context(subscription)
        if subscription.is_active:
            context["access"] = _("You keep access until %(date)s.") % {
                "date": context["end_date"],
            }
        else:
            context["access"] = _("Your access has ended.")
        subject = _("Your NeuralPix subscription has been cancelled")
        message = _(
            """Hi %(name)s,

We have cancelled your %(tier)s subscription. %(access)s

You can subscribe again at any time at %(site_url)s/pricing

The NeuralPix team
""",
        ) % context
        return self._send(subscription, subject, message)

    def subscription_expired(self, subscription: Subscription) -> bool:
        subject = _("Your NeuralPix subscription has expired")
        message = _(
            """Hi %(name)s,

Your %(tier)s subscription expired on %(end_date)s. You are now on the
free plan.

Renew at %(site_url)s/pricing

The NeuralPix team
""",
        ) % self._context(subscription)
        return self._send(subscription, subject, message)

    def payment_failed(self, subscription: Subscription, reason: str = "") -> bool:
        context = self._context(subscription)
        context["reason"] = reason or _("the payment could not be completed")
        subject = _("Action needed: NeuralPix renewal payment failed")
        message = _(
            """Hi %(name)s,

We could not renew your %(tier)s subscription: %(reason)s.
Your subscription is past due. Please complete the payment at
%(site_url)s/account/billing

The NeuralPix team
""",
        ) % context
        return self._send(subscription, subject, message)

    def _context(self, subscription: Subscription) -> dict:
        user = subscription.user
        return {
            "name": user.get_full_name() or user.get_username(),
            "tier": str(subscription.tier).title(),
            "cycle": subscription.get_billing_cycle_display(),
            "end_date": _format_date(subscription.end_date),
            "price": subscription.price,
            "currency": subscription.currency,
            "site_url": get_site_url(),
        }

    def _send(self, subscription: Subscription, subject: str, message: str) -> bool:
        recipient = subscription.user.email
        if not recipient:
            logger.warning(
                "Cannot send billing email for subscription=%s: user has no email",
                subscription.pk,
            )
            return False
        try:
            send_mail(
                subject=subject,
                message=message,
                from_email=self.from_email,
                recipient_list=[recipient],
                fail_silently=False,
            )
        except Exception:
            logger.exception(
                "Failed to send billing email '%s' for subscription=%s",
                subject,
                subscription.pk,
            )
            return False
        logger.info("Sent billing email '%s' to user=%s", subject, subscription.user_id)
        return True
