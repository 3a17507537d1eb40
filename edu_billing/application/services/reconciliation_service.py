"""Reconciliation of Stripe checkout/subscription events into billing records.

Two entry points reach the same ``reconcile`` call: the signed webhook and
the client-triggered session verification after checkout. Either may run
first, or both at once; the existence check plus the unique constraint on
the Stripe subscription id keep it to one record per subscription.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional

from ...domain.errors import (
    CheckoutSessionNotFoundError,
    DuplicateBillingRecordError,
    MalformedEventError,
    NotFoundError,
    PaymentIncompleteError,
    UserNotFoundError,
)
from ...domain.models import (
    BillingRecord,
    BillingStatus,
    CheckoutCompletion,
    ProviderSubscription,
    User,
    WebhookEvent,
)
from ...domain.ports.payments import PaymentGateway
from ...domain.ports.persistence import BillingRecordStore, UserDirectory
from ...services.stripe_payloads import (
    completion_from_subscription,
    parse_checkout_session,
    parse_event,
    parse_subscription,
)
from .entitlement_resolver import expiry_for

logger = logging.getLogger(__name__)

PAID_STATUSES = frozenset({"paid", "no_payment_required"})


class ReconciliationOutcome(str, Enum):
    CREATED = "created"
    ALREADY_RECONCILED = "already_reconciled"
    NO_SUBSCRIPTION = "no_subscription"


@dataclass(slots=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    user: User
    record: Optional[BillingRecord] = None


@dataclass(slots=True)
class WebhookOutcome:
    status: str
    event_type: Optional[str]
    message: str
    record: Optional[BillingRecord] = None


class PaymentReconciler:
    """Materialises billing records from provider events, exactly once per subscription."""

    def __init__(
        self,
        users: UserDirectory,
        billing_records: BillingRecordStore,
        gateway: PaymentGateway,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._users = users
        self._billing_records = billing_records
        self._gateway = gateway
        self._clock = clock
        self._handlers: Dict[str, Callable[[WebhookEvent], WebhookOutcome]] = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_failed,
        }

    # ------------------------------------------------------------------
    def reconcile(
        self,
        completion: CheckoutCompletion,
        event_at: Optional[datetime] = None,
    ) -> ReconciliationResult:
        """
        Turn a completed checkout into at most one billing record.

        Args:
            completion: Normalised checkout, subscription already embedded
            event_at: Provider timestamp of the triggering event, if any

        Returns:
            ReconciliationResult describing what happened

        Raises:
            UserNotFoundError: If no local user matches the payload
        """
        user = self._resolve_user(completion)
        subscription = completion.subscription

        if subscription is None:
            logger.info(
                "Checkout %s for user %s carried no subscription; nothing to record",
                completion.session_id,
                user.id,
            )
            return ReconciliationResult(ReconciliationOutcome.NO_SUBSCRIPTION, user)

        existing = self._billing_records.find_reconciled(user.id, subscription.id)
        if existing and self._blocks_new_record(existing, subscription):
            logger.info(
                "Subscription %s already reconciled as record %s", subscription.id, existing.id
            )
            return ReconciliationResult(ReconciliationOutcome.ALREADY_RECONCILED, user, existing)

        try:
            record = self._billing_records.create(
                user_id=user.id,
                stripe_subscription_id=subscription.id,
                stripe_customer_id=completion.customer_id or subscription.customer_id,
                stripe_price_id=subscription.price_id,
                plan_type=subscription.plan_type,
                status=subscription.status,
                current_period_start=subscription.current_period_start,
                current_period_end=subscription.current_period_end,
                trial_ends_at=subscription.trial_end,
                cancel_at_period_end=subscription.cancel_at_period_end,
                canceled_at=subscription.canceled_at,
                last_event_at=event_at,
            )
        except DuplicateBillingRecordError:
            # Lost the race against the other entry point
            record = self._billing_records.get_by_stripe_subscription_id(subscription.id)
            logger.info("Subscription %s was written concurrently; reusing record", subscription.id)
            return ReconciliationResult(ReconciliationOutcome.ALREADY_RECONCILED, user, record)

        customer_id = completion.customer_id or subscription.customer_id
        if customer_id and not user.stripe_customer_id:
            self._users.backfill_stripe_customer_id(user.id, customer_id)

        logger.info(
            "Created billing record %s for user %s: subscription=%s plan=%s status=%s",
            record.id,
            user.id,
            subscription.id,
            record.plan_type.value,
            record.status.value,
        )
        return ReconciliationResult(ReconciliationOutcome.CREATED, user, record)

    # ------------------------------------------------------------------
    def verify_checkout_session(self, session_id: str, user: User) -> ReconciliationResult:
        """
        Fallback path run when the user returns from checkout.

        The session is re-fetched from Stripe; nothing the client sends besides
        the session id is trusted.

        Raises:
            CheckoutSessionNotFoundError: Unknown session, or one owned by another user
            PaymentIncompleteError: Session not paid yet
            UpstreamUnavailableError: Stripe timed out or failed
            MalformedEventError: Stripe returned an unexpected shape
        """
        session = self._gateway.retrieve_checkout_session(session_id)
        completion = parse_checkout_session(session, now=self._clock())

        if completion.payment_status not in PAID_STATUSES:
            raise PaymentIncompleteError("Payment not completed")

        if not completion.user_ref and not completion.customer_email:
            completion.customer_email = user.email

        owner = self._resolve_user(completion)
        if owner.id != user.id:
            logger.warning(
                "User %s tried to verify checkout session %s owned by user %s",
                user.id,
                session_id,
                owner.id,
            )
            raise CheckoutSessionNotFoundError("Checkout session not found")

        self._expand_subscription(completion)
        return self.reconcile(completion)

    # ------------------------------------------------------------------
    def handle_webhook(self, payload: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        """
        Verify and apply a webhook delivery.

        Unresolvable and malformed events are logged and acknowledged so the
        provider stops retrying them.

        Raises:
            AuthenticationFailure: Signature missing or invalid; nothing was read
            UpstreamUnavailableError: A follow-up Stripe call failed; retry is safe
        """
        event_id: Optional[str] = None
        event_type: Optional[str] = None
        try:
            envelope = self._gateway.construct_event(payload, signature_header)
            event = parse_event(envelope)
            event_id, event_type = event.id, event.type

            handler = self._handlers.get(event.type)
            if handler is None:
                logger.debug("Ignoring unhandled webhook event %s (%s)", event.id, event.type)
                return WebhookOutcome("ignored", event.type, "Unhandled event type")

            return handler(event)
        except NotFoundError as exc:
            logger.warning(
                "Webhook event %s (%s) references unknown data: %s", event_id, event_type, exc
            )
            return WebhookOutcome("ignored", event_type, "No matching local data")
        except MalformedEventError as exc:
            logger.error(
                "Malformed webhook event %s (%s): %s context=%s",
                event_id,
                event_type,
                exc,
                exc.context,
            )
            return WebhookOutcome("error", event_type, "Malformed event")

    def apply_subscription_update(
        self,
        subscription: ProviderSubscription,
        event_at: Optional[datetime] = None,
    ) -> Optional[BillingRecord]:
        """
        Bring an existing record in line with the provider's view.

        A subscription we have never seen goes through ``reconcile`` instead.
        Events older than the last one applied are skipped.
        """
        record = self._billing_records.get_by_stripe_subscription_id(subscription.id)
        if record is None:
            return self.reconcile(completion_from_subscription(subscription), event_at).record

        if event_at and record.last_event_at and event_at < record.last_event_at:
            logger.info(
                "Skipping stale update for %s (event %s older than %s)",
                subscription.id,
                event_at.isoformat(),
                record.last_event_at.isoformat(),
            )
            return record

        if record.status is BillingStatus.CANCELED:
            logger.info("Ignoring update for canceled subscription %s", subscription.id)
            return record

        updated = self._billing_records.update_from_provider(
            subscription.id,
            status=subscription.status,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            trial_ends_at=subscription.trial_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            canceled_at=subscription.canceled_at,
            last_event_at=event_at,
        )
        logger.info(
            "Subscription %s updated: status=%s period_end=%s",
            subscription.id,
            subscription.status.value,
            subscription.current_period_end.isoformat(),
        )
        return updated

    # ============ WEBHOOK HANDLERS ============

    def _on_checkout_completed(self, event: WebhookEvent) -> WebhookOutcome:
        completion = parse_checkout_session(event.data, now=self._clock())
        self._expand_subscription(completion)
        result = self.reconcile(completion, event.created_at)
        return WebhookOutcome("processed", event.type, result.outcome.value, result.record)

    def _on_subscription_changed(self, event: WebhookEvent) -> WebhookOutcome:
        subscription = parse_subscription(event.data, now=self._clock())
        record = self.apply_subscription_update(subscription, event.created_at)
        return WebhookOutcome("processed", event.type, "Subscription synchronised", record)

    def _on_subscription_deleted(self, event: WebhookEvent) -> WebhookOutcome:
        subscription_id = _subscription_ref(event)
        record = self._billing_records.update_status(
            subscription_id,
            BillingStatus.CANCELED,
            canceled_at=event.created_at or self._clock(),
            last_event_at=event.created_at,
        )
        if record is None:
            raise NotFoundError(f"No billing record for subscription {subscription_id}")
        logger.info("Subscription %s canceled", subscription_id)
        return WebhookOutcome("processed", event.type, "Subscription canceled", record)

    def _on_invoice_paid(self, event: WebhookEvent) -> WebhookOutcome:
        subscription_id = _invoice_subscription_ref(event.data)
        if not subscription_id:
            return WebhookOutcome("ignored", event.type, "Invoice without subscription")

        stripe_subscription = self._gateway.retrieve_subscription(subscription_id)
        subscription = parse_subscription(stripe_subscription, now=self._clock())
        record = self.apply_subscription_update(subscription, event.created_at)
        return WebhookOutcome("processed", event.type, "Subscription renewed", record)

    def _on_invoice_failed(self, event: WebhookEvent) -> WebhookOutcome:
        subscription_id = _invoice_subscription_ref(event.data)
        if not subscription_id:
            return WebhookOutcome("ignored", event.type, "Invoice without subscription")

        record = self._billing_records.get_by_stripe_subscription_id(subscription_id)
        if record is None:
            raise NotFoundError(f"No billing record for subscription {subscription_id}")
        if record.status is BillingStatus.CANCELED:
            return WebhookOutcome("ignored", event.type, "Subscription already canceled", record)
        if event.created_at and record.last_event_at and event.created_at < record.last_event_at:
            return WebhookOutcome("ignored", event.type, "Stale event", record)

        record = self._billing_records.update_status(
            subscription_id, BillingStatus.PAST_DUE, last_event_at=event.created_at
        )
        logger.warning("Payment failed for subscription %s; marked past_due", subscription_id)
        return WebhookOutcome("processed", event.type, "Subscription past due", record)

    # ------------------------------------------------------------------
    def _blocks_new_record(self, existing: BillingRecord, subscription: ProviderSubscription) -> bool:
        if existing.stripe_subscription_id == subscription.id:
            return True
        # A different subscription only counts while its period or trial is still running
        return expiry_for(existing) > self._clock()

    def _expand_subscription(self, completion: CheckoutCompletion) -> None:
        if completion.subscription is not None or not completion.subscription_id:
            return
        stripe_subscription = self._gateway.retrieve_subscription(completion.subscription_id)
        completion.subscription = parse_subscription(
            stripe_subscription,
            plan_hint=completion.plan_id,
            user_hint=completion.user_ref,
            now=self._clock(),
        )

    def _resolve_user(self, completion: CheckoutCompletion) -> User:
        user: Optional[User] = None
        if completion.user_ref and completion.user_ref.isdigit():
            user = self._users.get_by_id(int(completion.user_ref))
        if user is None and completion.customer_id:
            user = self._users.get_by_stripe_customer_id(completion.customer_id)
        if user is None and completion.customer_email:
            user = self._users.get_by_email(completion.customer_email)
        if user is None:
            raise UserNotFoundError(
                f"No user for checkout {completion.session_id} "
                f"(user_ref={completion.user_ref}, customer={completion.customer_id})"
            )
        return user


def _subscription_ref(event: WebhookEvent) -> str:
    subscription_id = event.data.get("id")
    if not isinstance(subscription_id, str) or not subscription_id:
        raise MalformedEventError(
            "subscription event without id", context={"event_id": event.id, "event_type": event.type}
        )
    return subscription_id


def _invoice_subscription_ref(invoice: dict) -> Optional[str]:
    subscription = invoice.get("subscription")
    if subscription is None:
        # Newer API versions nest it under the invoice parent
        parent = invoice.get("parent") or {}
        details = parent.get("subscription_details") if isinstance(parent, dict) else None
        subscription = details.get("subscription") if isinstance(details, dict) else None
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    return subscription if isinstance(subscription, str) and subscription else None
