"""Domain models for the billing entitlement service."""

from .billing_record import ACTIVE_LIKE_STATUSES, BillingRecord, BillingStatus, PlanType
from .entitlement import EntitlementDecision, EntitlementStatus
from .payment import CheckoutCompletion, ProviderSubscription, WebhookEvent
from .user import Role, User

__all__ = [
    "ACTIVE_LIKE_STATUSES",
    "BillingRecord",
    "BillingStatus",
    "CheckoutCompletion",
    "EntitlementDecision",
    "EntitlementStatus",
    "PlanType",
    "ProviderSubscription",
    "Role",
    "User",
    "WebhookEvent",
]
