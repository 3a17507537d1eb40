"""Normalised payment-provider payloads consumed by the reconciler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from .billing_record import BillingStatus, PlanType


@dataclass(slots=True)
class ProviderSubscription:
    id: str
    status: BillingStatus
    plan_type: PlanType
    current_period_start: datetime
    current_period_end: datetime
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    user_ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CheckoutCompletion:
    """A completed checkout, from a webhook or a re-fetched session."""

    session_id: Optional[str]
    customer_id: Optional[str]
    customer_email: Optional[str]
    user_ref: Optional[str]
    plan_id: Optional[str] = None
    payment_status: Optional[str] = None
    subscription: Optional[ProviderSubscription] = None
    # Set when the session only references the subscription by id
    subscription_id: Optional[str] = None


@dataclass(slots=True)
class WebhookEvent:
    id: Optional[str]
    type: str
    created_at: Optional[datetime]
    data: Dict[str, Any]
