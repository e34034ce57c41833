"""Auth request and response models with validation."""

import re
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from evofit_auth.models.user import Role, User


def check_password_strength(v: str) -> str:
    """Reject passwords missing an uppercase, lowercase, digit or symbol."""
    if not v.strip():
        raise ValueError("Password cannot be empty or whitespace only")
    if not re.search(r"[A-Z]", v):
        raise ValueError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", v):
        raise ValueError("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", v):
        raise ValueError("Password must contain at least one number")
    if not re.search(r"[^A-Za-z0-9]", v):
        raise ValueError("Password must contain at least one special character")
    return v


class CamelModel(BaseModel):
    """Base for models exchanged with the browser client in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(CamelModel):
    """Password account registration.

    Attributes:
        email: Account email (unique, case-insensitive)
        password: Password meeting the strength policy (min 8 chars)
        role: Requested role; ``admin`` requires an admin bearer token
        display_name: Optional display name
    """

    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    role: Role = Role.CUSTOMER
    display_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("password")
    @classmethod
    def password_strong(cls, v: str) -> str:
        return check_password_strength(v)


class LoginRequest(CamelModel):
    """Email/password login credentials."""

    email: EmailStr
    password: str = Field(..., min_length=1)


class UpdateProfileRequest(CamelModel):
    """Profile update; only provided fields change.

    A new password requires the current one.
    """

    email: Optional[EmailStr] = None
    display_name: Optional[str] = Field(default=None, max_length=255)
    current_password: Optional[str] = None
    new_password: Optional[str] = Field(default=None, min_length=8, max_length=128)

    @field_validator("new_password")
    @classmethod
    def new_password_strong(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return check_password_strength(v)


class UserSummary(CamelModel):
    """Compact user representation for API responses."""

    id: UUID
    email: str
    role: Role
    display_name: Optional[str] = None
    profile_picture: Optional[str] = None
    has_google: bool = False
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            display_name=user.display_name,
            profile_picture=user.profile_picture,
            has_google=user.google_id is not None,
            created_at=user.created_at,
        )


class LoginResponse(CamelModel):
    """Successful authentication response.

    The refresh credential travels only in the HTTP-only cookie, never here.

    Attributes:
        access_token: Short-lived JWT for the Authorization header
        token_type: Always "bearer"
        expires_in: Access token lifetime in seconds
        user: Summary of the authenticated user
    """

    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(ge=1, description="Access token lifetime in seconds")
    user: UserSummary
