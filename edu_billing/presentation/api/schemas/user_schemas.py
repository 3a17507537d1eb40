"""Pydantic schemas for login and the current user."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class UserLoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    """Public view of a user; the password hash never leaves the service."""

    id: int
    email: str
    role: str = Field(..., description="STUDENT, PARENT, INSTRUCTOR, ADMIN or SUPPORT")
    stripe_customer_id: Optional[str] = None
    created_at: datetime


class UserLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Token lifetime in seconds")
    user: UserResponse
