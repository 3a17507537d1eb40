"""Billing record domain model: one subscription lifecycle instance."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from ..errors import MalformedEventError


class BillingStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class PlanType(str, Enum):
    FREE_TRIAL = "free_trial"
    MONTHLY = "monthly"
    ANNUAL = "annual"
    FAMILY = "family"


ACTIVE_LIKE_STATUSES = frozenset({BillingStatus.ACTIVE, BillingStatus.TRIALING})


class BillingRecord:
    """
    BillingRecord entity mirroring a Stripe subscription.

    Attributes:
        id: Unique identifier
        user_id: Reference to User
        stripe_subscription_id: Stripe subscription ID (unique, idempotency key)
        stripe_customer_id: Stripe customer ID
        stripe_price_id: Stripe price ID of the first subscription item
        plan_type: Plan classification
        status: Lifecycle status
        current_period_start: Start of current billing period
        current_period_end: End of current billing period
        trial_ends_at: End of the trial window, if any
        cancel_at_period_end: Whether the subscription ends with the period
        canceled_at: When cancellation was requested or happened
        last_event_at: Provider timestamp of the last applied webhook event
        created_at: Record creation timestamp
        updated_at: Last update timestamp
    """

    def __init__(
        self,
        id: int,
        user_id: int,
        stripe_subscription_id: str,
        stripe_customer_id: Optional[str],
        plan_type: PlanType,
        status: BillingStatus,
        current_period_start: datetime,
        current_period_end: datetime,
        stripe_price_id: Optional[str] = None,
        trial_ends_at: Optional[datetime] = None,
        cancel_at_period_end: bool = False,
        canceled_at: Optional[datetime] = None,
        last_event_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        if current_period_end <= current_period_start:
            raise MalformedEventError(
                "current_period_end must be after current_period_start",
                context={"stripe_subscription_id": stripe_subscription_id},
            )
        if trial_ends_at is not None and trial_ends_at <= current_period_start:
            raise MalformedEventError(
                "trial_ends_at must be after current_period_start",
                context={"stripe_subscription_id": stripe_subscription_id},
            )
        self.id = id
        self.user_id = user_id
        self.stripe_subscription_id = stripe_subscription_id
        self.stripe_customer_id = stripe_customer_id
        self.stripe_price_id = stripe_price_id
        self.plan_type = PlanType(plan_type)
        self.status = BillingStatus(status)
        self.current_period_start = current_period_start
        self.current_period_end = current_period_end
        self.trial_ends_at = trial_ends_at
        self.cancel_at_period_end = cancel_at_period_end
        self.canceled_at = canceled_at
        self.last_event_at = last_event_at
        self.created_at = created_at or datetime.now(timezone.utc)
        self.updated_at = updated_at or datetime.now(timezone.utc)

    def is_active_like(self) -> bool:
        """Check if the record is in a status that can grant access."""
        return self.status in ACTIVE_LIKE_STATUSES

    def is_trial(self) -> bool:
        return self.plan_type is PlanType.FREE_TRIAL

    def __repr__(self) -> str:
        return (
            f"<BillingRecord id={self.id} user_id={self.user_id} "
            f"plan={self.plan_type.value} status={self.status.value}>"
        )
