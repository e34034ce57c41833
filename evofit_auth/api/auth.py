"""Authentication API endpoints."""

from typing import Optional

import asyncpg
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials

from evofit_auth.api.cookies import (
    OAUTH_STATE_COOKIE,
    REFRESH_COOKIE,
    clear_session_cookies,
    set_session_cookies,
)
from evofit_auth.api.dependencies import (
    SESSION_EXPIRED_DETAIL,
    SessionRejected,
    bearer_scheme,
    get_current_user,
    get_identity_store,
    get_oauth_providers,
    get_session_authority,
)
from evofit_auth.config import get_settings
from evofit_auth.models.auth import (
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    UpdateProfileRequest,
    UserSummary,
)
from evofit_auth.models.session import TokenPair
from evofit_auth.models.user import Role, User
from evofit_auth.services.identity_store import IdentityStore
from evofit_auth.services.oauth_service import (
    SELF_SELECTABLE_ROLES,
    GoogleOAuthProvider,
    MissingEmailError,
    OAuthProviderError,
    create_oauth_state,
    read_oauth_state,
    resolve_external_identity,
)
from evofit_auth.services.redis_service import RedisService
from evofit_auth.services.session_authority import (
    SessionAuthority,
    hash_password,
    verify_password,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])

OAUTH_STATE_COOKIE_PATH = "/api/auth/google"
OAUTH_STATE_MAX_AGE = 600

ROLE_LANDING_PAGES = {
    Role.ADMIN: "/admin",
    Role.TRAINER: "/trainer",
    Role.CUSTOMER: "/my-meal-plans",
}


def _login_response(
    user: User, tokens: TokenPair, authority: SessionAuthority
) -> LoginResponse:
    """Build the JSON body returned alongside fresh session cookies."""
    return LoginResponse(
        access_token=tokens.access_token,
        token_type="bearer",
        expires_in=int(authority.access_token_ttl.total_seconds()),
        user=UserSummary.from_user(user),
    )


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    response: Response,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    store: IdentityStore = Depends(get_identity_store),
    authority: SessionAuthority = Depends(get_session_authority),
) -> LoginResponse:
    """Register a password account.

    Admin accounts can only be created by an existing admin, identified by
    the bearer token. In that case the new account's session is returned in
    the body but no cookies are set, so the admin keeps their own session.

    Raises:
        HTTPException 403: Admin role requested without an admin token
        HTTPException 409: Email already registered
    """
    created_by_admin = False
    if body.role == Role.ADMIN:
        if credentials is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Admin registration requires authorization",
            )
        outcome = await authority.authenticate(
            credentials.credentials, None, permitted_roles=[Role.ADMIN]
        )
        if not outcome.ok:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only existing admins can create new admin accounts",
            )
        created_by_admin = True

    if await store.find_user_by_email(body.email) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User already exists",
        )

    try:
        user = await store.create_user(
            email=body.email,
            role=body.role,
            password_hash=hash_password(body.password),
            display_name=body.display_name,
        )
    except asyncpg.UniqueViolationError:
        # Lost a race with a concurrent registration of the same email
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User already exists",
        )

    tokens = await authority.issue(user)
    if not created_by_admin:
        set_session_cookies(response, tokens, get_settings())

    logger.info("user_registered", user_id=str(user.id), role=user.role.value)
    return _login_response(user, tokens, authority)


@router.post("/login")
async def login(
    body: LoginRequest,
    response: Response,
    store: IdentityStore = Depends(get_identity_store),
    authority: SessionAuthority = Depends(get_session_authority),
) -> LoginResponse:
    """Login with email and password.

    Raises:
        HTTPException 401: Unknown email, wrong password, or OAuth-only account
        HTTPException 429: Too many failed attempts for this email
    """
    throttle = RedisService()

    if not await throttle.is_login_allowed(body.email):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many failed attempts. Please try again later.",
        )

    user = await store.find_user_by_email(body.email)

    if user is None or not user.has_password or not verify_password(
        body.password, user.password_hash
    ):
        await throttle.record_failed_login(body.email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )

    await throttle.clear_failed_logins(body.email)

    tokens = await authority.issue(user)
    set_session_cookies(response, tokens, get_settings())

    logger.info("user_logged_in", user_id=str(user.id), role=user.role.value)
    return _login_response(user, tokens, authority)


@router.post("/refresh_token")
async def refresh_token(
    request: Request,
    response: Response,
    authority: SessionAuthority = Depends(get_session_authority),
) -> LoginResponse:
    """Rotate the refresh cookie into a new access + refresh pair.

    Every rotation failure answers with the same generic 401.
    """
    token = request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise SessionRejected(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=SESSION_EXPIRED_DETAIL,
        )

    rotation = await authority.rotate(token)
    if not rotation.ok:
        raise SessionRejected(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=SESSION_EXPIRED_DETAIL,
            clear_session=True,
        )

    set_session_cookies(response, rotation.tokens, get_settings())
    return _login_response(rotation.user, rotation.tokens, authority)


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    authority: SessionAuthority = Depends(get_session_authority),
) -> dict:
    """Delete the refresh credential behind the cookie and clear cookies."""
    token = request.cookies.get(REFRESH_COOKIE)
    if token:
        await authority.revoke(token)

    clear_session_cookies(response, get_settings())
    return {"status": "success", "message": "Logged out successfully"}


@router.get("/me")
async def get_me(current_user: User = Depends(get_current_user)) -> UserSummary:
    """Get the authenticated user."""
    return UserSummary.from_user(current_user)


@router.put("/profile")
async def update_profile(
    body: UpdateProfileRequest,
    response: Response,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
    authority: SessionAuthority = Depends(get_session_authority),
) -> UserSummary:
    """Update display name, email or password.

    A password change signs out every other session: all of the user's
    refresh credentials are deleted and a fresh pair is issued to this
    client.

    Raises:
        HTTPException 400: Password change without (or with a wrong)
            current password, or on an account without a password
        HTTPException 409: Email belongs to another account
    """
    if body.new_password is not None:
        if not body.current_password:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Current password is required to change password",
            )
        if not current_user.has_password:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Cannot change password for Google sign-in accounts",
            )
        if not verify_password(body.current_password, current_user.password_hash):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Current password is incorrect",
            )

    new_email = None
    if body.email is not None and body.email.lower() != current_user.email:
        other = await store.find_user_by_email(body.email)
        if other is not None and other.id != current_user.id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Email already in use",
            )
        new_email = body.email

    try:
        user = await store.update_profile(
            current_user.id,
            email=new_email,
            display_name=body.display_name,
        )
    except asyncpg.UniqueViolationError:
        # Another account took the email after the check above
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already in use",
        )
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    if body.new_password is not None:
        await store.update_password_hash(user.id, hash_password(body.new_password))
        revoked = await authority.revoke_all(user.id)
        tokens = await authority.issue(user)
        set_session_cookies(response, tokens, get_settings())
        logger.info("sessions_reset_after_password_change", user_id=str(user.id), revoked=revoked)

    return UserSummary.from_user(user)


# ----------------------------------------------------------------------
# Google OAuth
# ----------------------------------------------------------------------

def _google_provider(providers: dict[str, GoogleOAuthProvider]) -> GoogleOAuthProvider:
    provider = providers.get("google")
    if provider is None or not provider.configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Google sign-in is not configured",
        )
    return provider


def _start_google_flow(
    provider: GoogleOAuthProvider, intended_role: Optional[Role]
) -> RedirectResponse:
    settings = get_settings()
    nonce, state_cookie = create_oauth_state(settings.jwt_secret, intended_role)

    redirect = RedirectResponse(
        provider.authorization_url(nonce), status_code=status.HTTP_302_FOUND
    )
    redirect.set_cookie(
        OAUTH_STATE_COOKIE,
        state_cookie,
        max_age=OAUTH_STATE_MAX_AGE,
        path=OAUTH_STATE_COOKIE_PATH,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
    )
    return redirect


def _login_failure_redirect(reason: str) -> RedirectResponse:
    settings = get_settings()
    redirect = RedirectResponse(
        f"{settings.frontend_url}/login?error={reason}",
        status_code=status.HTTP_302_FOUND,
    )
    redirect.delete_cookie(OAUTH_STATE_COOKIE, path=OAUTH_STATE_COOKIE_PATH)
    return redirect


@router.get("/google")
async def google_login(
    providers: dict[str, GoogleOAuthProvider] = Depends(get_oauth_providers),
) -> RedirectResponse:
    """Start Google sign-in without a preselected role."""
    return _start_google_flow(_google_provider(providers), None)


@router.get("/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    providers: dict[str, GoogleOAuthProvider] = Depends(get_oauth_providers),
    store: IdentityStore = Depends(get_identity_store),
    authority: SessionAuthority = Depends(get_session_authority),
) -> RedirectResponse:
    """Finish Google sign-in and redirect to the user's landing page.

    Failures redirect to the login page with an ``error`` query parameter.
    """
    provider = _google_provider(providers)
    settings = get_settings()

    if error or not code:
        logger.warning("oauth_callback_denied", provider=provider.name, reason=error)
        return _login_failure_redirect("oauth_failed")

    try:
        intended_role = read_oauth_state(
            settings.jwt_secret, request.cookies.get(OAUTH_STATE_COOKIE), state
        )
        profile = await provider.exchange_code(code)
        user = await resolve_external_identity(store, profile, intended_role)
    except MissingEmailError:
        return _login_failure_redirect("oauth_missing_email")
    except OAuthProviderError as e:
        logger.warning("oauth_callback_failed", provider=provider.name, error=str(e))
        return _login_failure_redirect("oauth_failed")

    tokens = await authority.issue(user)

    redirect = RedirectResponse(
        f"{settings.frontend_url}{ROLE_LANDING_PAGES[user.role]}",
        status_code=status.HTTP_302_FOUND,
    )
    set_session_cookies(redirect, tokens, settings)
    redirect.delete_cookie(OAUTH_STATE_COOKIE, path=OAUTH_STATE_COOKIE_PATH)

    logger.info("user_logged_in", user_id=str(user.id), role=user.role.value, via="google")
    return redirect


@router.get("/google/{role}")
async def google_login_with_role(
    role: str,
    providers: dict[str, GoogleOAuthProvider] = Depends(get_oauth_providers),
) -> RedirectResponse:
    """Start Google sign-in remembering the role picked on the landing page.

    Raises:
        HTTPException 400: Role is not one a visitor may choose
    """
    try:
        intended_role = Role(role)
    except ValueError:
        intended_role = None

    if intended_role not in SELF_SELECTABLE_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid role specified",
        )

    return _start_google_flow(_google_provider(providers), intended_role)
