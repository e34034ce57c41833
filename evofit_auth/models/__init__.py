"""Models package exports."""

from evofit_auth.models.auth import (
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    UpdateProfileRequest,
    UserSummary,
)
from evofit_auth.models.oauth import ExternalProfile
from evofit_auth.models.session import (
    AccessClaims,
    AuthErrorKind,
    AuthOutcome,
    RotationResult,
    TokenPair,
    VerificationResult,
)
from evofit_auth.models.user import RefreshCredential, Role, User

__all__ = [
    "AccessClaims",
    "AuthErrorKind",
    "AuthOutcome",
    "ExternalProfile",
    "LoginRequest",
    "LoginResponse",
    "RefreshCredential",
    "RegisterRequest",
    "Role",
    "RotationResult",
    "TokenPair",
    "UpdateProfileRequest",
    "User",
    "UserSummary",
    "VerificationResult",
]
