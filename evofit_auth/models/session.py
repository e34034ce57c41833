"""Result types for credential issuance, verification and rotation.

Expected failures (expired token, replayed refresh token, deleted user) are
reported through ``error`` rather than raised; only persistence failures
surface as exceptions.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from evofit_auth.models.user import Role, User


class AuthErrorKind(str, Enum):
    """Why an identity could not be established or was not permitted."""

    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    INVALID_TOKEN = "invalid_token"
    EXPIRED_TOKEN = "expired_token"
    USER_NOT_FOUND = "user_not_found"


class AccessClaims(BaseModel):
    """Decoded access credential claims."""

    user_id: UUID
    role: Role
    issued_at: datetime
    expires_at: datetime


class TokenPair(BaseModel):
    """A freshly issued access + refresh credential pair."""

    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime


class VerificationResult(BaseModel):
    """Outcome of checking an access token's signature and expiry."""

    claims: Optional[AccessClaims] = None
    error: Optional[AuthErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RotationResult(BaseModel):
    """Outcome of exchanging a refresh token for a new pair."""

    user: Optional[User] = None
    tokens: Optional[TokenPair] = None
    error: Optional[AuthErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class AuthOutcome(BaseModel):
    """Outcome of the request authorization gate.

    ``rotated`` carries the new pair when the identity was established by
    silent rotation; the HTTP layer must hand it back to the client.
    """

    user: Optional[User] = None
    rotated: Optional[TokenPair] = None
    error: Optional[AuthErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None
