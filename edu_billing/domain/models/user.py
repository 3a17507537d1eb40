"""User domain model as seen by the billing subsystem."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class Role(str, Enum):
    STUDENT = "STUDENT"
    PARENT = "PARENT"
    INSTRUCTOR = "INSTRUCTOR"
    ADMIN = "ADMIN"
    SUPPORT = "SUPPORT"


class User:
    """
    User entity owned by the wider application.

    Attributes:
        id: Unique identifier
        email: User email address (unique, stored lower-case)
        role: Application role, never changed by billing code
        password_hash: bcrypt hash used for bearer-token login
        stripe_customer_id: Stripe customer id, backfilled once
        created_at: Account creation timestamp
        updated_at: Last update timestamp
    """

    def __init__(
        self,
        id: int,
        email: str,
        role: Role,
        password_hash: str,
        stripe_customer_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.email = email
        self.role = Role(role)
        self.password_hash = password_hash
        self.stripe_customer_id = stripe_customer_id
        self.created_at = created_at or datetime.now(timezone.utc)
        self.updated_at = updated_at or datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email} role={self.role.value}>"
