"""Normalisation of Stripe objects into the shapes the reconciler understands.

Webhook JSON arrives as plain dicts and the gateway converts SDK objects
with ``to_dict()``, so both entry points hand identical mappings to the
parsers here.

Current API versions carry the billing period on each subscription item
rather than on the subscription; the first item's period is used when the
top-level fields are absent.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from ..domain.errors import MalformedEventError
from ..domain.models import (
    BillingStatus,
    CheckoutCompletion,
    PlanType,
    ProviderSubscription,
    WebhookEvent,
)

DEFAULT_PERIOD = timedelta(days=30)

_STATUS_MAP = {
    "trialing": BillingStatus.TRIALING,
    "past_due": BillingStatus.PAST_DUE,
    "canceled": BillingStatus.CANCELED,
}

_PLAN_MAP = {
    "FREE_TRIAL": PlanType.FREE_TRIAL,
    "FAMILY": PlanType.FAMILY,
    "ANNUAL": PlanType.ANNUAL,
    "MONTHLY": PlanType.MONTHLY,
}


def normalize_status(raw_status: Optional[str]) -> BillingStatus:
    """Map a Stripe subscription status; anything unrecognised counts as active."""
    return _STATUS_MAP.get((raw_status or "").lower(), BillingStatus.ACTIVE)


def classify_plan(plan_id: Optional[str], raw_status: Optional[str] = None) -> PlanType:
    if plan_id:
        return _PLAN_MAP.get(plan_id.strip().upper().replace("-", "_"), PlanType.MONTHLY)
    if (raw_status or "").lower() == "trialing":
        return PlanType.FREE_TRIAL
    return PlanType.MONTHLY


def parse_subscription(
    obj: Any,
    *,
    plan_hint: Optional[str] = None,
    user_hint: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ProviderSubscription:
    """
    Build a ProviderSubscription from a Stripe subscription object.

    Args:
        obj: Subscription object (webhook dict or SDK object)
        plan_hint: Plan id taken from the enclosing checkout session
        user_hint: User reference taken from the enclosing checkout session
        now: Reference time for defaulting a missing period start

    Raises:
        MalformedEventError: If the object is not a subscription-shaped mapping
    """
    if not isinstance(obj, Mapping):
        raise MalformedEventError("subscription is not an object", context={"type": type(obj).__name__})

    subscription_id = obj.get("id")
    if not isinstance(subscription_id, str) or not subscription_id:
        raise MalformedEventError("subscription has no id", context={"keys": sorted(obj.keys())})

    context = {"stripe_subscription_id": subscription_id}
    metadata = _as_mapping(obj.get("metadata"), "metadata", context)
    raw_status = obj.get("status")
    item = _first_item(obj.get("items"))

    start = _timestamp(_period_field(obj, item, "current_period_start"), "current_period_start", context)
    if start is None:
        start = now or datetime.now(timezone.utc)
    end = _timestamp(_period_field(obj, item, "current_period_end"), "current_period_end", context)
    if end is None:
        end = start + DEFAULT_PERIOD
    if end <= start:
        raise MalformedEventError("current_period_end is not after current_period_start", context=context)

    trial_end = _timestamp(obj.get("trial_end"), "trial_end", context)
    if trial_end is not None and trial_end <= start:
        # Left over from a trial that finished in an earlier period
        trial_end = None

    plan_id = plan_hint or _str_or_none(metadata.get("planId") or metadata.get("plan_id"))

    return ProviderSubscription(
        id=subscription_id,
        status=normalize_status(raw_status),
        plan_type=classify_plan(plan_id, raw_status),
        current_period_start=start,
        current_period_end=end,
        trial_end=trial_end,
        cancel_at_period_end=bool(obj.get("cancel_at_period_end") or False),
        canceled_at=_timestamp(obj.get("canceled_at"), "canceled_at", context),
        customer_id=_object_id(obj.get("customer")),
        price_id=_object_id(item.get("price")) if item is not None else None,
        user_ref=_user_ref(metadata) or user_hint,
        metadata=dict(metadata),
    )


def parse_checkout_session(obj: Any, *, now: Optional[datetime] = None) -> CheckoutCompletion:
    """Build a CheckoutCompletion from a Stripe checkout session."""
    if not isinstance(obj, Mapping):
        raise MalformedEventError("checkout session is not an object", context={"type": type(obj).__name__})

    session_id = obj.get("id")
    context = {"checkout_session_id": session_id}
    metadata = _as_mapping(obj.get("metadata"), "metadata", context)
    user_ref = _user_ref(metadata) or _str_or_none(obj.get("client_reference_id"))
    plan_hint = _str_or_none(metadata.get("planId") or metadata.get("plan_id"))

    customer = obj.get("customer")
    customer_details = obj.get("customer_details")
    email = None
    if isinstance(customer_details, Mapping):
        email = customer_details.get("email")
    email = email or obj.get("customer_email")
    if not email and isinstance(customer, Mapping):
        email = customer.get("email")

    raw_subscription = obj.get("subscription")
    subscription = None
    subscription_id = None
    if isinstance(raw_subscription, str):
        subscription_id = raw_subscription
    elif raw_subscription is not None:
        subscription = parse_subscription(
            raw_subscription, plan_hint=plan_hint, user_hint=user_ref, now=now
        )

    return CheckoutCompletion(
        session_id=_str_or_none(session_id),
        customer_id=_object_id(customer),
        customer_email=_str_or_none(email),
        user_ref=user_ref,
        plan_id=plan_hint,
        payment_status=_str_or_none(obj.get("payment_status")),
        subscription=subscription,
        subscription_id=subscription_id,
    )


def completion_from_subscription(subscription: ProviderSubscription) -> CheckoutCompletion:
    """Wrap a bare subscription so it can go through the same reconciliation."""
    return CheckoutCompletion(
        session_id=None,
        customer_id=subscription.customer_id,
        customer_email=None,
        user_ref=subscription.user_ref,
        subscription=subscription,
    )


def parse_event(envelope: Any) -> WebhookEvent:
    """Read the ``{id, type, created, data: {object}}`` envelope of a webhook."""
    if not isinstance(envelope, Mapping):
        raise MalformedEventError("event is not an object")

    event_type = envelope.get("type")
    context = {"event_id": envelope.get("id"), "event_type": event_type}
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("event has no type", context=context)

    data = envelope.get("data")
    if not isinstance(data, Mapping):
        raise MalformedEventError("event has no data", context=context)
    payload = data.get("object", data)
    if not isinstance(payload, Mapping):
        raise MalformedEventError("event data is not an object", context=context)

    created = envelope.get("created", envelope.get("created_at"))
    return WebhookEvent(
        id=_str_or_none(envelope.get("id")),
        type=event_type,
        created_at=_timestamp(created, "created", context),
        data=dict(payload),
    )


def _timestamp(value: Any, field_name: str, context: dict) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedEventError(f"{field_name} is not a unix timestamp", context={**context, field_name: value})
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _as_mapping(value: Any, field_name: str, context: dict) -> Mapping:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise MalformedEventError(f"{field_name} is not an object", context=context)
    return value


def _object_id(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return _str_or_none(value.get("id"))
    return None


def _first_item(items: Any) -> Optional[Mapping]:
    if not isinstance(items, Mapping):
        return None
    data = items.get("data") or []
    if not data or not isinstance(data[0], Mapping):
        return None
    return data[0]


def _period_field(obj: Mapping, item: Optional[Mapping], field_name: str) -> Any:
    value = obj.get(field_name)
    if value is None and item is not None:
        value = item.get(field_name)
    return value


def _user_ref(metadata: Mapping) -> Optional[str]:
    return _str_or_none(metadata.get("userId") or metadata.get("user_id"))


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)
