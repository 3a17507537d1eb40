"""API router for subscription access and self-service."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from ....application.services.access_gate import AccessGate
from ....core.dependencies import get_access_gate, get_subscription_service
from ....domain.errors import (
    PaymentProviderError,
    SubscriptionActionError,
    SubscriptionNotFoundError,
    UpstreamUnavailableError,
)
from ....domain.models import User
from ....services.subscription_service import SubscriptionService
from ..dependencies import get_current_user, get_identity
from ..schemas.subscription_schemas import AccessResponse, BillingRecordResponse, record_response

router = APIRouter(prefix="/api/subscription", tags=["Subscription"])


@router.get("/access", response_model=AccessResponse)
async def check_access(
    user_id: Optional[int] = Depends(get_identity),
    access_gate: AccessGate = Depends(get_access_gate),
) -> AccessResponse:
    """Report whether the caller may use paid features, and why."""
    return AccessResponse(**access_gate.check_access(user_id).to_dict())


@router.get("/current", response_model=Optional[BillingRecordResponse])
async def get_current_subscription(
    user: User = Depends(get_current_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> Optional[BillingRecordResponse]:
    record = subscription_service.get_current_record(user)
    if not record:
        return None
    return record_response(record)


@router.post("/cancel", response_model=BillingRecordResponse)
async def cancel_subscription(
    user: User = Depends(get_current_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> BillingRecordResponse:
    """Cancel current subscription at period end."""
    try:
        record = subscription_service.cancel_subscription(user)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SubscriptionActionError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except UpstreamUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable, please try again",
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider rejected the request",
        ) from exc

    return record_response(record)


@router.post("/resume", response_model=BillingRecordResponse)
async def resume_subscription(
    user: User = Depends(get_current_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> BillingRecordResponse:
    """Undo a pending cancellation."""
    try:
        record = subscription_service.resume_subscription(user)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except UpstreamUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable, please try again",
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider rejected the request",
        ) from exc

    return record_response(record)
