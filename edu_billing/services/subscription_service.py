"""Service for subscription self-service with Stripe."""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from edu_billing.application.services.entitlement_resolver import (
    BYPASS_POLICIES,
    BypassPolicy,
    bypasses,
    resolve,
    select_record,
)
from edu_billing.domain.errors import SubscriptionActionError, SubscriptionNotFoundError
from edu_billing.domain.models.billing_record import BillingRecord
from edu_billing.domain.models.user import User
from edu_billing.domain.ports.payments import PaymentGateway
from edu_billing.domain.ports.persistence import BillingRecordStore

logger = logging.getLogger(__name__)

FREE_TRIAL_PLAN_ID = "free-trial"


class SubscriptionService:
    """Service for starting, canceling and resuming user subscriptions."""

    def __init__(
        self,
        billing_records: BillingRecordStore,
        gateway: PaymentGateway,
        price_ids: Dict[str, str],
        frontend_base_url: str,
        trial_period_days: int = 7,
        portal_configuration: Optional[str] = None,
        policies: Sequence[BypassPolicy] = BYPASS_POLICIES,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.billing_records = billing_records
        self.gateway = gateway
        self.price_ids = {plan: price for plan, price in price_ids.items() if price}
        self.frontend_base_url = frontend_base_url.rstrip("/")
        self.trial_period_days = trial_period_days
        self.portal_configuration = portal_configuration
        self.policies = policies
        self.clock = clock

    def create_checkout_session(self, user: User, plan_id: str) -> Dict[str, Optional[str]]:
        """
        Create a Stripe checkout session for a subscription.

        Args:
            user: Authenticated user
            plan_id: One of the configured plan ids (free-trial, monthly, annual, family)

        Returns:
            Dict with checkout session ``id`` and ``url``

        Raises:
            ValueError: If the plan is unknown
            SubscriptionActionError: If the user's current subscription still grants access
            UpstreamUnavailableError: If Stripe is unreachable
        """
        price_id = self.price_ids.get(plan_id)
        if not price_id:
            raise ValueError("Invalid plan ID")

        records = self.billing_records.list_by_user_id(user.id)
        # Billing state only; a lapsed trial still stored as trialing may upgrade
        if resolve(user.role, records, now=self.clock(), policies=()).has_access:
            raise SubscriptionActionError("You already have an active subscription")

        metadata = {"userId": str(user.id), "planId": plan_id}
        session = self.gateway.create_checkout_session(
            price_id=price_id,
            success_url=f"{self.frontend_base_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.frontend_base_url}/checkout?plan={plan_id}&canceled=true",
            metadata=metadata,
            customer_id=user.stripe_customer_id,
            customer_email=user.email,
            client_reference_id=str(user.id),
            trial_period_days=self.trial_period_days if plan_id == FREE_TRIAL_PLAN_ID else None,
        )

        logger.info("Checkout session %s created for user %s (%s)", session["id"], user.id, plan_id)
        return session

    def create_portal_session(self, user: User) -> Dict[str, Optional[str]]:
        """
        Open the Stripe customer portal for payment methods and invoices.

        Raises:
            SubscriptionActionError: The user has never checked out, so Stripe has no customer
            UpstreamUnavailableError: If Stripe is unreachable
        """
        if not user.stripe_customer_id:
            raise SubscriptionActionError("No subscription found. Please subscribe first.")

        portal = self.gateway.create_portal_session(
            customer_id=user.stripe_customer_id,
            return_url=f"{self.frontend_base_url}/settings",
            configuration=self.portal_configuration,
        )
        logger.info("Portal session created for user %s", user.id)
        return portal

    def get_current_record(self, user: User) -> Optional[BillingRecord]:
        """Get the record the entitlement resolver would select for a user."""
        return select_record(self.billing_records.list_by_user_id(user.id))

    def list_user_records(self, user: User) -> List[BillingRecord]:
        return self.billing_records.list_by_user_id(user.id)

    def cancel_subscription(self, user: User) -> BillingRecord:
        """
        Cancel a user's subscription at period end. Access continues until then.

        Raises:
            SubscriptionActionError: Bypass roles, or already set to cancel
            SubscriptionNotFoundError: No active subscription
        """
        self._ensure_billable(user)

        record = self._active_record(user)
        if record is None:
            raise SubscriptionNotFoundError("No active subscription found")
        if record.cancel_at_period_end:
            raise SubscriptionActionError("Subscription is already set to cancel")

        self.gateway.set_cancel_at_period_end(record.stripe_subscription_id, True)
        updated = self.billing_records.set_cancel_at_period_end(
            record.id, True, self.clock()
        )

        logger.info("Subscription %s set to cancel at period end", record.stripe_subscription_id)
        return updated

    def resume_subscription(self, user: User) -> BillingRecord:
        """
        Undo a pending cancellation.

        Raises:
            SubscriptionNotFoundError: No subscription pending cancellation
        """
        record = self._active_record(user)
        if record is None or not record.cancel_at_period_end:
            raise SubscriptionNotFoundError("No subscription pending cancellation found")

        try:
            self.gateway.set_cancel_at_period_end(record.stripe_subscription_id, False)
        except SubscriptionNotFoundError:
            logger.warning(
                "Stripe no longer knows subscription %s; resuming locally only",
                record.stripe_subscription_id,
            )

        updated = self.billing_records.set_cancel_at_period_end(record.id, False, None)
        logger.info("Subscription %s resumed", record.stripe_subscription_id)
        return updated

    def _active_record(self, user: User) -> Optional[BillingRecord]:
        record = self.get_current_record(user)
        if record is None or not record.is_active_like():
            return None
        return record

    def _ensure_billable(self, user: User) -> None:
        policy = bypasses(user.role, user.email, self.policies)
        if policy is not None:
            raise SubscriptionActionError(f"Accounts with {policy.label} cannot be canceled")
