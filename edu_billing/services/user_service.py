"""Password login and bearer tokens; the token subject is the identity the access gate checks."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
import jwt

from edu_billing.domain.models.user import Role, User
from edu_billing.domain.ports.persistence import UserDirectory

MIN_PASSWORD_LENGTH = 8
# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72


class UserService:
    def __init__(
        self,
        user_repository: UserDirectory,
        jwt_secret: str,
        jwt_algorithm: str = "HS256",
        jwt_expiration_hours: int = 24,
    ):
        self.user_repository = user_repository
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.jwt_expiration_hours = jwt_expiration_hours

    @property
    def token_lifetime(self) -> timedelta:
        return timedelta(hours=self.jwt_expiration_hours)

    def register(self, email: str, password: str, role: Role = Role.STUDENT) -> User:
        """
        Create an account.

        Raises:
            ValueError: Email taken, or password outside the accepted length
        """
        _check_password(password)
        if self.user_repository.get_by_email(email):
            raise ValueError("Email already registered")

        return self.user_repository.create(
            email=email, password_hash=_hash_password(password), role=role
        )

    def authenticate(self, email: str, password: str) -> Optional[User]:
        user = self.user_repository.get_by_email(email)
        if user is None or not user.password_hash:
            return None
        try:
            matches = bcrypt.checkpw(password.encode("utf-8"), user.password_hash.encode("utf-8"))
        except ValueError:
            # Stored hash is not a bcrypt hash
            return None
        return user if matches else None

    def create_token(self, user: User) -> str:
        issued_at = datetime.now(timezone.utc)
        claims = {
            "sub": str(user.id),
            "user_id": user.id,
            "role": user.role.value,
            "iat": issued_at,
            "exp": issued_at + self.token_lifetime,
        }
        return jwt.encode(claims, self.jwt_secret, algorithm=self.jwt_algorithm)

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Decoded claims, or None for an expired, tampered or malformed token."""
        try:
            return jwt.decode(
                token,
                self.jwt_secret,
                algorithms=[self.jwt_algorithm],
                options={"require": ["exp", "sub"]},
            )
        except jwt.InvalidTokenError:
            return None

    def identity_from_token(self, token: str) -> Optional[int]:
        """User id carried by a valid token; None when the token proves nothing."""
        claims = self.verify_token(token)
        if not claims:
            return None
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject.isdigit():
            return None
        return int(subject)

    def get_by_id(self, user_id: int) -> Optional[User]:
        return self.user_repository.get_by_id(user_id)


def _check_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")


def _hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
