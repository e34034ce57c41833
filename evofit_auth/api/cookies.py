"""Session cookie transport."""

from datetime import timezone

from starlette.responses import Response

from evofit_auth.config import Settings
from evofit_auth.models.session import TokenPair

REFRESH_COOKIE = "refreshToken"
ACCESS_COOKIE = "token"
OAUTH_STATE_COOKIE = "oauth_state"
ACCESS_TOKEN_HEADER = "X-Access-Token"


def set_session_cookies(response: Response, tokens: TokenPair, settings: Settings) -> None:
    """Hand a freshly issued pair to the client.

    The refresh token only ever travels in the HTTP-only cookie. The access
    token is mirrored into a short-lived cookie and the X-Access-Token header
    for clients that keep it in memory.
    """
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        expires=tokens.refresh_expires_at.astimezone(timezone.utc),
        path="/",
        httponly=True,
        secure=settings.secure_cookies,
        samesite=settings.cookie_samesite,
    )
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        expires=tokens.access_expires_at.astimezone(timezone.utc),
        path="/",
        httponly=True,
        secure=settings.secure_cookies,
        samesite=settings.cookie_samesite,
    )
    response.headers[ACCESS_TOKEN_HEADER] = tokens.access_token


def clear_session_cookies(response: Response, settings: Settings) -> None:
    """Remove both session cookies from the client."""
    for name in (REFRESH_COOKIE, ACCESS_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            httponly=True,
            secure=settings.secure_cookies,
            samesite=settings.cookie_samesite,
        )
