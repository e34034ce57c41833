"""Google OAuth client, signed state handling and account linkage."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx
import jwt
import structlog
from pydantic import ValidationError

from evofit_auth.config import Settings
from evofit_auth.models.oauth import ExternalProfile
from evofit_auth.models.user import Role, User
from evofit_auth.services.identity_store import IdentityStore

logger = structlog.get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
GOOGLE_SCOPE = "openid email profile"

OAUTH_STATE_TTL = timedelta(minutes=10)
OAUTH_STATE_TYPE = "oauth_state"

# Roles a visitor may pick for themselves before the Google redirect
SELF_SELECTABLE_ROLES = frozenset({Role.TRAINER, Role.CUSTOMER})


class OAuthProviderError(Exception):
    """The provider exchange or the callback state could not be completed."""


class MissingEmailError(ValueError):
    """The provider profile carried no usable email address."""


class GoogleOAuthProvider:
    """Authorization-code flow against Google's OAuth 2.0 endpoints."""

    name = "google"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        callback_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = callback_url
        self._transport = transport
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.callback_url)

    def authorization_url(self, state: str) -> str:
        """Build the URL the browser is redirected to for consent."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.callback_url,
            "response_type": "code",
            "scope": GOOGLE_SCOPE,
            "state": state,
            "prompt": "select_account",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> ExternalProfile:
        """Exchange an authorization code for the caller's Google profile.

        Raises:
            OAuthProviderError: On transport errors, non-2xx responses or an
                unusable payload
        """
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                token_response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.callback_url,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                provider_token = token_response.json().get("access_token")
                if not provider_token:
                    raise OAuthProviderError("Provider returned no access token")

                userinfo_response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {provider_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPError as e:
            logger.error("oauth_exchange_failed", provider=self.name, error=str(e))
            raise OAuthProviderError(f"Google exchange failed: {e}") from e
        except ValueError as e:
            logger.error("oauth_payload_unparseable", provider=self.name, error=str(e))
            raise OAuthProviderError("Google returned malformed JSON") from e

        return self.parse_profile(userinfo)

    @staticmethod
    def parse_profile(userinfo: dict) -> ExternalProfile:
        """Validate Google's userinfo payload into an ExternalProfile.

        An email Google reports as unverified is dropped, since it would
        otherwise be trusted to link onto an existing account.
        """
        if not isinstance(userinfo, dict):
            raise OAuthProviderError("Userinfo payload is not an object")

        email = userinfo.get("email")
        if userinfo.get("email_verified") is False:
            email = None

        try:
            return ExternalProfile(
                id=str(userinfo.get("sub") or userinfo.get("id") or ""),
                email=email,
                display_name=userinfo.get("name"),
                photo_url=userinfo.get("picture"),
            )
        except ValidationError as e:
            raise OAuthProviderError("Userinfo payload has no subject id") from e


def build_oauth_providers(settings: Settings) -> dict[str, GoogleOAuthProvider]:
    """Build the explicit provider registry used by the OAuth routes."""
    return {
        "google": GoogleOAuthProvider(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            callback_url=settings.google_callback_url,
        )
    }


# ----------------------------------------------------------------------
# Callback state
# ----------------------------------------------------------------------

def create_oauth_state(
    signing_secret: str, intended_role: Optional[Role] = None
) -> tuple[str, str]:
    """Create the CSRF nonce and the signed cookie that remembers it.

    The intended role chosen before the redirect travels inside the signed
    cookie, so no server-side session is needed.

    Returns:
        Tuple of (nonce for the ``state`` query parameter, cookie value)
    """
    if intended_role is not None and intended_role not in SELF_SELECTABLE_ROLES:
        raise ValueError(f"Role {intended_role.value} cannot be self-selected")

    nonce = secrets.token_urlsafe(24)
    now = datetime.now(timezone.utc)
    payload = {
        "type": OAUTH_STATE_TYPE,
        "nonce": nonce,
        "role": intended_role.value if intended_role else None,
        "iat": now,
        "exp": now + OAUTH_STATE_TTL,
    }
    return nonce, jwt.encode(payload, signing_secret, algorithm="HS256")


def read_oauth_state(
    signing_secret: str, cookie_value: Optional[str], state_param: Optional[str]
) -> Optional[Role]:
    """Check the callback ``state`` against the signed cookie.

    Returns:
        The intended role captured before the redirect, if any

    Raises:
        OAuthProviderError: If the cookie is missing, expired, forged or
            does not match the query parameter
    """
    if not cookie_value or not state_param:
        raise OAuthProviderError("Missing OAuth state")

    try:
        payload = jwt.decode(cookie_value, signing_secret, algorithms=["HS256"])
    except jwt.InvalidTokenError as e:
        raise OAuthProviderError("Invalid OAuth state") from e

    if payload.get("type") != OAUTH_STATE_TYPE or not secrets.compare_digest(
        str(payload.get("nonce", "")), state_param
    ):
        raise OAuthProviderError("OAuth state mismatch")

    role = payload.get("role")
    return Role(role) if role else None


# ----------------------------------------------------------------------
# Account linkage
# ----------------------------------------------------------------------

async def resolve_external_identity(
    store: IdentityStore,
    profile: ExternalProfile,
    intended_role: Optional[Role] = None,
) -> User:
    """Resolve a provider profile to a local user.

    Evaluated in order, each branch terminal:

    1. The Google id is already linked: return that user unchanged.
    2. The email belongs to an existing account: link the Google id onto it,
       keeping its role.
    3. Otherwise create a user with the intended role (or customer), named
       after the email's local part when the provider gave no name.

    Raises:
        MissingEmailError: If the profile has no email; nothing is looked
            up or written in that case
    """
    if profile.email is None:
        logger.error("oauth_profile_missing_email", provider="google")
        raise MissingEmailError("OAuth provider returned no email address")

    linked = await store.find_user_by_external_id(profile.id)
    if linked is not None:
        logger.info("oauth_login_linked_account", user_id=str(linked.id))
        return linked

    existing = await store.find_user_by_email(profile.email)
    if existing is not None:
        await store.link_external_id(existing.id, profile.id, profile.photo_url)
        logger.info(
            "oauth_account_linked",
            user_id=str(existing.id),
            role=existing.role.value,
        )
        return existing.model_copy(
            update={
                "google_id": profile.id,
                "profile_picture": existing.profile_picture or profile.photo_url,
            }
        )

    user = await store.create_user(
        email=profile.email,
        role=intended_role or Role.CUSTOMER,
        google_id=profile.id,
        display_name=profile.display_name or profile.email.split("@", 1)[0],
        profile_picture=profile.photo_url,
    )
    logger.info("oauth_account_created", user_id=str(user.id), role=user.role.value)
    return user
