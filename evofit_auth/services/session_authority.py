"""Session authority: credential issuance, verification, rotation and role gate."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional
from uuid import UUID

import bcrypt
import jwt
import structlog

from evofit_auth.config import Settings
from evofit_auth.models.session import (
    AccessClaims,
    AuthErrorKind,
    AuthOutcome,
    RotationResult,
    TokenPair,
    VerificationResult,
)
from evofit_auth.models.user import Role, User
from evofit_auth.services.identity_store import IdentityStore

logger = structlog.get_logger(__name__)

# Constants
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_BYTES = 48


def hash_password(password: str) -> str:
    """Hash a password using bcrypt.

    Args:
        password: Plain-text password to hash

    Returns:
        Bcrypt hash string
    """
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against a bcrypt hash.

    Args:
        password: Plain-text password to check
        password_hash: Bcrypt hash to verify against

    Returns:
        True if the password matches, False otherwise
    """
    return bcrypt.checkpw(
        password.encode("utf-8"),
        password_hash.encode("utf-8"),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionAuthority:
    """Issues, verifies and rotates credentials for one process.

    Constructed once at startup with an identity store and its signing
    configuration; holds no per-session state between requests.
    """

    def __init__(
        self,
        store: IdentityStore,
        signing_secret: str,
        access_token_ttl: timedelta = timedelta(minutes=15),
        refresh_token_ttl: timedelta = timedelta(days=30),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not signing_secret:
            raise ValueError("A signing secret is required")
        self.store = store
        self._signing_secret = signing_secret
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self._clock = clock or _utcnow

    @classmethod
    def from_settings(cls, store: IdentityStore, settings: Settings) -> "SessionAuthority":
        """Build an authority from application settings."""
        return cls(
            store=store,
            signing_secret=settings.jwt_secret,
            access_token_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_token_ttl=timedelta(days=settings.refresh_token_expire_days),
        )

    def _now(self) -> datetime:
        # JWT timestamps have second resolution
        return self._clock().replace(microsecond=0)

    # ------------------------------------------------------------------
    # Access credentials
    # ------------------------------------------------------------------

    def create_access_token(self, user_id: UUID, role: Role) -> tuple[str, datetime]:
        """Create a signed access token.

        Args:
            user_id: User UUID (placed in the 'sub' claim)
            role: Account role

        Returns:
            Tuple of (encoded JWT, expiry timestamp)
        """
        now = self._now()
        expires_at = now + self.access_token_ttl
        payload = {
            "sub": str(user_id),
            "role": Role(role).value,
            "type": ACCESS_TOKEN_TYPE,
            "iat": now,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self._signing_secret, algorithm=JWT_ALGORITHM)
        return token, expires_at

    def verify_access_token(self, token: str) -> VerificationResult:
        """Check an access token's signature, expiry and shape.

        Returns:
            VerificationResult with claims, or with EXPIRED_TOKEN when only
            the expiry failed, or INVALID_TOKEN for anything else
        """
        try:
            payload = jwt.decode(
                token,
                self._signing_secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            return VerificationResult(error=AuthErrorKind.EXPIRED_TOKEN)
        except jwt.InvalidTokenError as e:
            logger.debug("access_token_invalid", error=str(e))
            return VerificationResult(error=AuthErrorKind.INVALID_TOKEN)

        if payload.get("type") != ACCESS_TOKEN_TYPE:
            return VerificationResult(error=AuthErrorKind.INVALID_TOKEN)

        try:
            claims = AccessClaims(
                user_id=UUID(payload["sub"]),
                role=Role(payload.get("role")),
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (ValueError, TypeError):
            return VerificationResult(error=AuthErrorKind.INVALID_TOKEN)

        return VerificationResult(claims=claims)

    # ------------------------------------------------------------------
    # Issuance and rotation
    # ------------------------------------------------------------------

    async def issue(self, user: User) -> TokenPair:
        """Issue an access + refresh pair for an already-authenticated user.

        Writes exactly one refresh credential. Store failures propagate.
        """
        access_token, access_expires_at = self.create_access_token(user.id, user.role)

        refresh_token = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
        refresh_expires_at = self._now() + self.refresh_token_ttl
        await self.store.insert_refresh_credential(user.id, refresh_token, refresh_expires_at)

        logger.info(
            "credentials_issued",
            user_id=str(user.id),
            role=user.role.value,
            refresh_expires_at=refresh_expires_at.isoformat(),
        )

        return TokenPair(
            access_token=access_token,
            access_expires_at=access_expires_at,
            refresh_token=refresh_token,
            refresh_expires_at=refresh_expires_at,
        )

    async def rotate(self, refresh_token: str) -> RotationResult:
        """Exchange a refresh token for a new pair, invalidating the old one.

        Of two concurrent calls with the same token, only the one whose
        conditional delete succeeds gets a new pair; the other sees
        INVALID_TOKEN.
        """
        credential = await self.store.find_refresh_credential(refresh_token)
        if credential is None:
            logger.warning("refresh_rotation_failed", reason=AuthErrorKind.INVALID_TOKEN.value)
            return RotationResult(error=AuthErrorKind.INVALID_TOKEN)

        if credential.expires_at <= self._clock():
            await self.store.delete_refresh_credential_if_present(refresh_token)
            logger.warning(
                "refresh_rotation_failed",
                reason=AuthErrorKind.EXPIRED_TOKEN.value,
                user_id=str(credential.user_id),
            )
            return RotationResult(error=AuthErrorKind.EXPIRED_TOKEN)

        user = await self.store.find_user_by_id(credential.user_id)
        if user is None:
            logger.warning(
                "refresh_rotation_failed",
                reason=AuthErrorKind.USER_NOT_FOUND.value,
                user_id=str(credential.user_id),
            )
            return RotationResult(error=AuthErrorKind.USER_NOT_FOUND)

        if not await self.store.delete_refresh_credential_if_present(refresh_token):
            logger.warning(
                "refresh_rotation_failed",
                reason="already_rotated",
                user_id=str(user.id),
            )
            return RotationResult(error=AuthErrorKind.INVALID_TOKEN)

        tokens = await self.issue(user)
        logger.info("refresh_credential_rotated", user_id=str(user.id))
        return RotationResult(user=user, tokens=tokens)

    async def revoke(self, refresh_token: str) -> bool:
        """Invalidate one refresh credential (logout)."""
        deleted = await self.store.delete_refresh_credential_if_present(refresh_token)
        logger.info("refresh_credential_revoked", found=deleted)
        return deleted

    async def revoke_all(self, user_id: UUID) -> int:
        """Invalidate every session a user holds."""
        return await self.store.delete_user_refresh_credentials(user_id)

    # ------------------------------------------------------------------
    # Request authorization gate
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        permitted_roles: Optional[Iterable[Role]] = None,
    ) -> AuthOutcome:
        """Establish the acting user for a request and apply the role gate.

        An absent or expired access token falls back to silent rotation with
        the refresh token. An access token that is present but invalid for
        any other reason is rejected without rotation.

        Args:
            access_token: Bearer value (header wins over cookie, chosen by caller)
            refresh_token: Refresh cookie value
            permitted_roles: Allowed roles; None or empty means any role

        Returns:
            AuthOutcome with the user, the rotated pair if rotation happened,
            and UNAUTHORIZED / FORBIDDEN on failure
        """
        allowed = frozenset(Role(r) for r in permitted_roles) if permitted_roles else None

        if access_token:
            check = self.verify_access_token(access_token)
            if check.ok:
                user = await self.store.find_user_by_id(check.claims.user_id)
                if user is None:
                    logger.warning(
                        "access_denied",
                        reason=AuthErrorKind.USER_NOT_FOUND.value,
                        user_id=str(check.claims.user_id),
                    )
                    return AuthOutcome(error=AuthErrorKind.UNAUTHORIZED)
                return self._apply_role_gate(user, check.claims.role, allowed, rotated=None)

            if check.error != AuthErrorKind.EXPIRED_TOKEN:
                logger.warning("access_denied", reason=check.error.value)
                return AuthOutcome(error=AuthErrorKind.UNAUTHORIZED)

        if not refresh_token:
            return AuthOutcome(error=AuthErrorKind.UNAUTHORIZED)

        rotation = await self.rotate(refresh_token)
        if not rotation.ok:
            return AuthOutcome(error=AuthErrorKind.UNAUTHORIZED)

        return self._apply_role_gate(
            rotation.user, rotation.user.role, allowed, rotated=rotation.tokens
        )

    @staticmethod
    def _apply_role_gate(
        user: User,
        role: Role,
        allowed: Optional[frozenset],
        rotated: Optional[TokenPair],
    ) -> AuthOutcome:
        if allowed is not None and role not in allowed:
            logger.warning(
                "access_forbidden",
                user_id=str(user.id),
                role=role.value,
                permitted=sorted(r.value for r in allowed),
            )
            return AuthOutcome(user=user, rotated=rotated, error=AuthErrorKind.FORBIDDEN)
        return AuthOutcome(user=user, rotated=rotated)
