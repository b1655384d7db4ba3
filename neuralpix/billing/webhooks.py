"""
Payment webhook pipeline.

One entry point for every PayOS delivery:

    verify (gateway) → reconcile (ledger) → apply (state machine)

A delivery that fails verification never reaches the ledger. The ledger
transition and the subscription update commit together. When the update
itself is rejected (bad plan metadata, a tier no longer configured) it is
rolled back to a savepoint, the ledger keeps the gateway's verdict, and the
order is reported on the anomaly channel for an operator to apply by hand.

``process`` always returns an acknowledgement: PayOS retries anything that is
not a 2xx, and a retry cannot fix a bad signature or an unknown order code.
Only database availability errors escape, so the view can answer 503 and
let the gateway try again later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from django.db import InterfaceError
from django.db import OperationalError
from django.db import transaction as db_transaction

from neuralpix.billing.constants import PaymentStatus
from neuralpix.billing.exceptions import BillingError
from neuralpix.billing.exceptions import BillingValidationError
from neuralpix.billing.exceptions import ConflictingTransitionError
from neuralpix.billing.exceptions import NotFoundError
from neuralpix.billing.exceptions import SignatureError
from neuralpix.billing.gateway import PayOSGateway
from neuralpix.billing.ledger import TransactionLedger
from neuralpix.billing.lifecycle import SubscriptionStateMachine

logger = logging.getLogger(__name__)
anomaly_logger = logging.getLogger("neuralpix.billing.anomalies")

ACK_SUCCESS = "success"
ACK_ERROR = "error"

# Failures the gateway should retry.
TRANSIENT_ERRORS = (OperationalError, InterfaceError)


@dataclass
class WebhookAck:
    status: str
    message: str
    order_code: int | None = None

    def to_dict(self) -> dict:
        return {"status": self.status, "message": self.message}


class PaymentWebhookProcessor:
    """
    Usage:
        ack = PaymentWebhookProcessor().process(request.body)
        return Response(ack.to_dict())
    """

    def __init__(
        self,
        gateway: PayOSGateway | None = None,
        ledger: TransactionLedger | None = None,
        state_machine: SubscriptionStateMachine | None = None,
    ):
        self.gateway = gateway or PayOSGateway()
        self.ledger = ledger or TransactionLedger()
        self.state_machine = state_machine or SubscriptionStateMachine(
            ledger=self.ledger,
            gateway=self.gateway,
        )

    def process(self, raw_body: bytes | str | dict, signature: str | None = None) -> WebhookAck:
        try:
            event = self.gateway.verify_webhook(raw_body, signature)
        except SignatureError as exc:
            logger.warning("Rejected PayOS webhook: %s", exc.detail)
            return WebhookAck(ACK_ERROR, exc.detail)
        except BillingValidationError as exc:
            logger.warning("Malformed PayOS webhook: %s", exc.detail)
            return WebhookAck(ACK_ERROR, exc.detail)

        order_code = event.order_code
        logger.info(
            "PayOS webhook order_code=%s status=%s code=%s",
            order_code,
            event.status,
            event.raw_code,
        )

        try:
            return self._reconcile(event)
        except TRANSIENT_ERRORS:
            logger.exception("Database unavailable for webhook order_code=%s", order_code)
            raise
        except NotFoundError as exc:
            logger.warning("Webhook for unknown order_code=%s", order_code)
            return WebhookAck(ACK_ERROR, exc.detail, order_code)
        except ConflictingTransitionError as exc:
            # Already reported on the anomaly channel by the ledger.
            return WebhookAck(
                ACK_ERROR,
                f"{exc.detail} Accepted for manual review.",
                order_code,
            )
        except BillingError as exc:
            anomaly_logger.error(
                "Webhook order_code=%s could not be applied: %s",
                order_code,
                exc.detail,
            )
            return WebhookAck(ACK_ERROR, "Accepted for manual review.", order_code)
        except Exception:
            logger.exception("Unexpected error processing webhook order_code=%s", order_code)
            return WebhookAck(ACK_ERROR, "Accepted for manual review.", order_code)

    def _reconcile(self, event) -> WebhookAck:
        order_code = event.order_code
        if event.status == PaymentStatus.PENDING:
            # Raises NotFoundError for unknown codes.
            self.ledger.get_by_order_code(order_code)
            return WebhookAck(ACK_SUCCESS, "Payment pending.", order_code)

        with db_transaction.atomic():
            txn = self.ledger.get_by_order_code(order_code)
            if (
                event.status == PaymentStatus.PAID
                and event.amount is not None
                and int(txn.amount) != event.amount
            ):
                anomaly_logger.error(
                    "Webhook amount mismatch for order_code=%s: expected=%s got=%s",
                    order_code,
                    txn.amount,
                    event.amount,
                )
                return WebhookAck(
                    ACK_ERROR,
                    "Amount mismatch. Accepted for manual review.",
                    order_code,
                )

            if event.status == PaymentStatus.PAID:
                result = self.ledger.mark_paid(
                    order_code,
                    payment_method=event.payment_method,
                    reference=event.reference,
                )
            elif event.status == PaymentStatus.CANCELLED:
                result = self.ledger.mark_cancelled(order_code, event.description)
            else:
                result = self.ledger.mark_failed(order_code, event.description)

            if not result.applied:
                return WebhookAck(ACK_SUCCESS, "Already processed.", order_code)

            try:
                with db_transaction.atomic():
                    self.state_machine.apply_transaction(result.transaction)
            except TRANSIENT_ERRORS:
                raise
            except BillingError as exc:
                anomaly_logger.error(
                    "Webhook order_code=%s recorded as %s but not applied: %s",
                    order_code,
                    result.transaction.status,
                    exc.detail,
                )
                return WebhookAck(ACK_ERROR, "Accepted for manual review.", order_code)
            except Exception:
                anomaly_logger.exception(
                    "Webhook order_code=%s recorded as %s but not applied",
                    order_code,
                    result.transaction.status,
                )
                return WebhookAck(ACK_ERROR, "Accepted for manual review.", order_code)

        return WebhookAck(ACK_SUCCESS, "Webhook processed.", order_code)
