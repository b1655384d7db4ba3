"""
Billing error taxonomy.

Every error carries a human-readable ``detail`` and a stable machine
``code``. Views translate them into HTTP responses; the webhook pipeline and
the scheduler catch them at their boundaries so a single bad event never
crashes a run.
"""


class BillingError(Exception):
    """Base exception for billing-related errors."""

    def __init__(self, detail: str, code: str = "billing_error"):
        self.detail = detail
        self.code = code
        super().__init__(detail)


class BillingValidationError(BillingError):
    """Bad input. Rejected before any side effect."""

    def __init__(self, detail: str, code: str = "invalid"):
        super().__init__(detail, code=code)


class NotFoundError(BillingError):
    """Unknown order code, subscription or user."""

    def __init__(self, detail: str, code: str = "not_found"):
        super().__init__(detail, code=code)


class DuplicateOrderCodeError(BillingError):
    """An order code is already present in the ledger."""

    def __init__(self, order_code: int):
        self.order_code = order_code
        super().__init__(
            f"Transaction with order code {order_code} already exists.",
            code="duplicate_order_code",
        )


class ConflictingTransitionError(BillingError):
    """
    A transaction was asked to move into a terminal status while it already
    sits in a different terminal status.
    """

    def __init__(self, order_code: int, current: str, requested: str):
        self.order_code = order_code
        self.current = current
        self.requested = requested
        super().__init__(
            (
                f"Transaction {order_code} is already {current}; "
                f"refusing transition to {requested}."
            ),
            code="conflicting_transition",
        )


class SignatureError(BillingError):
    """A webhook payload could not be authenticated."""

    def __init__(self, detail: str = "Invalid webhook signature."):
        super().__init__(detail, code="invalid_signature")


class GatewayError(BillingError):
    """The payment gateway timed out, failed, or refused the request."""

    def __init__(self, detail: str, code: str = "gateway_error"):
        super().__init__(detail, code=code)


class ConfigurationError(BillingError):
    """Billing configuration is missing or refers to an unknown plan."""

    def __init__(self, detail: str, code: str = "configuration_error"):
        super().__init__(detail, code=code)
