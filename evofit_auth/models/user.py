"""User and refresh credential models."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class Role(str, Enum):
    """Closed set of account roles."""

    ADMIN = "admin"
    TRAINER = "trainer"
    CUSTOMER = "customer"


class User(BaseModel):
    """A registered EvoFit account.

    ``password_hash`` is None for accounts created through Google sign-in;
    ``google_id`` is None for accounts that have never linked Google. At
    least one of the two is always set.
    """

    id: UUID
    email: str
    role: Role = Role.CUSTOMER
    password_hash: Optional[str] = Field(default=None, exclude=True, repr=False)
    google_id: Optional[str] = None
    display_name: Optional[str] = None
    profile_picture: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def has_password(self) -> bool:
        return self.password_hash is not None


class RefreshCredential(BaseModel):
    """A stored refresh credential, identified by the digest of its token."""

    id: UUID
    user_id: UUID
    token_hash: str
    issued_at: datetime
    expires_at: datetime
