"""API router for user authentication."""

from fastapi import APIRouter, Depends, HTTPException, status

from ....core.dependencies import get_user_service
from ....domain.models import User
from ....services.user_service import UserService
from ..dependencies import get_current_user
from ..schemas.user_schemas import UserLoginRequest, UserLoginResponse, UserResponse

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


@router.post("/login", response_model=UserLoginResponse)
async def login(
    payload: UserLoginRequest,
    user_service: UserService = Depends(get_user_service),
) -> UserLoginResponse:
    """Exchange email and password for a bearer token."""
    user = user_service.authenticate(payload.email, payload.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    return UserLoginResponse(
        access_token=user_service.create_token(user),
        expires_in=int(user_service.token_lifetime.total_seconds()),
        user=_serialize_user(user),
    )


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)) -> UserResponse:
    return _serialize_user(user)


def _serialize_user(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        role=user.role.value,
        stripe_customer_id=user.stripe_customer_id,
        created_at=user.created_at,
    )
