"""Stripe payment integration API endpoints."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ....application.services.reconciliation_service import (
    PaymentReconciler,
    ReconciliationOutcome,
)
from ....core.config import Settings
from ....core.dependencies import get_reconciler, get_settings, get_subscription_service
from ....domain.errors import (
    AuthenticationFailure,
    NotFoundError,
    PaymentIncompleteError,
    PaymentProviderError,
    StoreUnavailableError,
    SubscriptionActionError,
    UpstreamUnavailableError,
)
from ....domain.models import User
from ....services.subscription_service import SubscriptionService
from ..dependencies import get_current_user
from ..schemas.subscription_schemas import (
    CreateCheckoutSessionRequest,
    CreateCheckoutSessionResponse,
    PortalSessionResponse,
    VerifySessionRequest,
    VerifySessionResponse,
    record_response,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["Stripe Payments"])

_OUTCOME_MESSAGES = {
    ReconciliationOutcome.CREATED: "Subscription activated",
    ReconciliationOutcome.ALREADY_RECONCILED: "Subscription already active",
    ReconciliationOutcome.NO_SUBSCRIPTION: "Checkout completed without a subscription",
}


# ============ CHECKOUT ============

@router.post("/checkout", response_model=CreateCheckoutSessionResponse)
async def create_checkout_session(
    payload: CreateCheckoutSessionRequest,
    user: User = Depends(get_current_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> CreateCheckoutSessionResponse:
    """Create a Stripe checkout session for one of the configured plans."""
    try:
        session = subscription_service.create_checkout_session(user, payload.plan_id)
    except (ValueError, SubscriptionActionError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except UpstreamUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable, please try again",
        ) from exc
    except PaymentProviderError as exc:
        logger.error("Stripe rejected checkout for user %s: %s", user.id, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create checkout session",
        ) from exc

    return CreateCheckoutSessionResponse(session_id=session["id"], checkout_url=session.get("url"))


# ============ CUSTOMER PORTAL ============

@router.post("/portal", response_model=PortalSessionResponse)
async def create_portal_session(
    user: User = Depends(get_current_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> PortalSessionResponse:
    """Open the Stripe customer portal so the user can manage payment methods."""
    try:
        portal = subscription_service.create_portal_session(user)
    except SubscriptionActionError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except UpstreamUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable, please try again",
        ) from exc
    except PaymentProviderError as exc:
        logger.error("Stripe rejected portal session for user %s: %s", user.id, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create portal session",
        ) from exc

    return PortalSessionResponse(url=portal["url"])


# ============ VERIFICATION ============

@router.post("/verify-session", response_model=VerifySessionResponse)
async def verify_session(
    payload: VerifySessionRequest,
    user: User = Depends(get_current_user),
    reconciler: PaymentReconciler = Depends(get_reconciler),
    settings: Settings = Depends(get_settings),
) -> VerifySessionResponse:
    """Reconcile a checkout session after the user returns from Stripe."""
    try:
        result = reconciler.verify_checkout_session(payload.session_id, user)
    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Checkout session not found",
        ) from exc
    except PaymentIncompleteError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except UpstreamUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable, please try again",
            headers={"Retry-After": str(settings.verify_retry_after_seconds)},
        ) from exc
    except StoreUnavailableError as exc:
        logger.warning("Verification of checkout session %s deferred: %s", payload.session_id, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Temporarily unavailable, please try again",
            headers={"Retry-After": str(settings.verify_retry_after_seconds)},
        ) from exc
    except Exception as exc:
        logger.exception("Verification of checkout session %s failed", payload.session_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to verify checkout session",
        ) from exc

    return VerifySessionResponse(
        success=True,
        outcome=result.outcome.value,
        message=_OUTCOME_MESSAGES[result.outcome],
        subscription=record_response(result.record) if result.record else None,
    )


# ============ WEBHOOK ============

@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """Handle Stripe webhook events."""
    payload = await request.body()

    try:
        outcome = reconciler.handle_webhook(payload, stripe_signature)
    except AuthenticationFailure as exc:
        logger.warning("Rejected webhook delivery: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature",
        ) from exc
    except (UpstreamUnavailableError, StoreUnavailableError) as exc:
        logger.warning("Webhook deferred, retry expected: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Temporarily unavailable",
        ) from exc
    except Exception:
        # Acknowledge so Stripe stops redelivering an event we cannot apply
        logger.exception("Unexpected error while handling webhook")
        return {"status": "error", "message": "Internal error"}

    return {
        "status": outcome.status,
        "type": outcome.event_type,
        "message": outcome.message,
    }
