"""Pydantic schemas for subscription API endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class CreateCheckoutSessionRequest(BaseModel):
    """Request schema for creating a checkout session."""

    plan_id: str = Field(..., description="free-trial, monthly, annual or family")


class CreateCheckoutSessionResponse(BaseModel):
    """Response schema for creating a checkout session."""

    session_id: str
    checkout_url: Optional[str]


class PortalSessionResponse(BaseModel):
    """Response schema for a customer portal session."""

    url: str


class VerifySessionRequest(BaseModel):
    """Request schema for verifying a checkout session after redirect."""

    session_id: str = Field(..., min_length=1)


class BillingRecordResponse(BaseModel):
    """Response schema for billing record data."""

    id: int
    stripe_subscription_id: str
    plan_type: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    trial_ends_at: Optional[datetime]
    cancel_at_period_end: bool
    canceled_at: Optional[datetime]


class VerifySessionResponse(BaseModel):
    """Response schema for checkout session verification."""

    success: bool
    outcome: str
    message: str
    subscription: Optional[BillingRecordResponse] = None


class AccessResponse(BaseModel):
    """Response schema for an access check."""

    hasAccess: bool
    status: str
    daysRemaining: Optional[int]
    reason: str
    nextAction: Optional[str]


def record_response(record) -> BillingRecordResponse:
    return BillingRecordResponse(
        id=record.id,
        stripe_subscription_id=record.stripe_subscription_id,
        plan_type=record.plan_type.value,
        status=record.status.value,
        current_period_start=record.current_period_start,
        current_period_end=record.current_period_end,
        trial_ends_at=record.trial_ends_at,
        cancel_at_period_end=record.cancel_at_period_end,
        canceled_at=record.canceled_at,
    )
