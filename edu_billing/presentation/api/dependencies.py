from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ...application.services.access_gate import AccessCheck, AccessGate
from ...core.dependencies import get_access_gate, get_user_service
from ...domain.models import EntitlementStatus, User
from ...services.user_service import UserService

_bearer_scheme = HTTPBearer(auto_error=False)


def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    user_service: UserService = Depends(get_user_service),
) -> Optional[int]:
    """User id from a valid bearer token, or None."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        return None
    return user_service.identity_from_token(credentials.credentials)


def get_current_user(
    user_id: Optional[int] = Depends(get_identity),
    user_service: UserService = Depends(get_user_service),
) -> User:
    """Dependency to get current authenticated user."""
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    user = user_service.get_by_id(user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    return user


def require_access(
    user_id: Optional[int] = Depends(get_identity),
    access_gate: AccessGate = Depends(get_access_gate),
) -> AccessCheck:
    """Dependency for routes that need an entitled user."""
    check = access_gate.check_access(user_id)
    if check.has_access:
        return check

    if check.decision.status is EntitlementStatus.UNAUTHENTICATED:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=check.to_dict(),
        )
    if check.decision.status is EntitlementStatus.UNAVAILABLE:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=check.to_dict(),
        )
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=check.to_dict())
