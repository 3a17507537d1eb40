"""Error taxonomy for payment reconciliation and access checks."""

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base exception for the billing subsystem."""


class AuthenticationFailure(BillingError):
    """Webhook signature missing, invalid or unverifiable."""


class NotFoundError(BillingError):
    """A user, checkout session or subscription could not be resolved."""


class UserNotFoundError(NotFoundError):
    pass


class CheckoutSessionNotFoundError(NotFoundError):
    pass


class SubscriptionNotFoundError(NotFoundError):
    pass


class UpstreamUnavailableError(BillingError):
    """The payment provider timed out or failed; safe to retry."""


class StoreUnavailableError(BillingError):
    """The record store could not be read or written; safe to retry."""


class PaymentIncompleteError(BillingError):
    """Checkout session exists but has not been paid."""


class DuplicateBillingRecordError(BillingError):
    """Unique constraint on the Stripe subscription id fired at write time."""

    def __init__(self, stripe_subscription_id: str):
        self.stripe_subscription_id = stripe_subscription_id
        super().__init__(f"Billing record already exists for {stripe_subscription_id}")


class MalformedEventError(BillingError):
    """
    Provider payload did not have the expected shape.

    ``context`` carries whatever identifiers were readable so the event can
    be reconciled by hand.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.context = context or {}
        super().__init__(message)


class SubscriptionActionError(BillingError):
    """A self-service subscription action is not allowed in the current state."""


class PaymentProviderError(BillingError):
    """The provider rejected a request for a non-transient reason."""
