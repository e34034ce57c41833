"""FastAPI dependencies for authentication and authorization."""

from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from evofit_auth.api.cookies import ACCESS_COOKIE, REFRESH_COOKIE, set_session_cookies
from evofit_auth.config import get_settings
from evofit_auth.models.session import AuthErrorKind, TokenPair
from evofit_auth.models.user import Role, User
from evofit_auth.services.identity_store import IdentityStore
from evofit_auth.services.oauth_service import GoogleOAuthProvider
from evofit_auth.services.session_authority import SessionAuthority

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

SESSION_EXPIRED_DETAIL = "Session expired. Please log in again."
FORBIDDEN_DETAIL = "Insufficient role for this resource"


class SessionRejected(HTTPException):
    """401/403 raised by the authorization gate.

    Carries a rotated pair when the identity was re-established before the
    role check failed, so the client keeps its session on a 403.
    """

    def __init__(
        self,
        status_code: int,
        detail: str,
        rotated: Optional[TokenPair] = None,
        clear_session: bool = False,
    ):
        headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.rotated = rotated
        self.clear_session = clear_session


def get_session_authority(request: Request) -> SessionAuthority:
    """The process-wide SessionAuthority built at startup."""
    return request.app.state.session_authority


def get_identity_store(request: Request) -> IdentityStore:
    """The process-wide IdentityStore built at startup."""
    return request.app.state.identity_store


def get_oauth_providers(request: Request) -> dict[str, GoogleOAuthProvider]:
    """Registry of configured OAuth providers, keyed by name."""
    return request.app.state.oauth_providers


def extract_access_token(
    request: Request, credentials: Optional[HTTPAuthorizationCredentials]
) -> Optional[str]:
    """Pick the access token, the Authorization header winning over the cookie."""
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(ACCESS_COOKIE)


def require_roles(*roles: Role):
    """Build a dependency that authenticates the caller and applies a role gate.

    With no roles, any authenticated user passes.

    Args:
        roles: Roles allowed to reach the route

    Returns:
        FastAPI dependency resolving to the acting User
    """

    async def dependency(
        request: Request,
        response: Response,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
        authority: SessionAuthority = Depends(get_session_authority),
    ) -> User:
        outcome = await authority.authenticate(
            access_token=extract_access_token(request, credentials),
            refresh_token=request.cookies.get(REFRESH_COOKIE),
            permitted_roles=roles or None,
        )

        if outcome.error == AuthErrorKind.FORBIDDEN:
            raise SessionRejected(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=FORBIDDEN_DETAIL,
                rotated=outcome.rotated,
            )

        if not outcome.ok:
            raise SessionRejected(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=SESSION_EXPIRED_DETAIL,
                clear_session=True,
            )

        if outcome.rotated is not None:
            # The old refresh credential is gone; error handlers re-send this pair
            request.state.rotated_session = outcome.rotated
            set_session_cookies(response, outcome.rotated, get_settings())
            logger.info("session_silently_rotated", user_id=str(outcome.user.id))

        structlog.contextvars.bind_contextvars(user_id=str(outcome.user.id))
        return outcome.user

    return dependency


get_current_user = require_roles()
require_admin = require_roles(Role.ADMIN)
