"""Identity store: users and refresh credentials in PostgreSQL."""

import hashlib
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

import structlog

from evofit_auth.database import get_pool
from evofit_auth.models.user import RefreshCredential, Role, User

logger = structlog.get_logger(__name__)

USER_COLUMNS = (
    "id, email, password_hash, role, google_id, display_name, "
    "profile_picture, created_at, updated_at"
)


def hash_refresh_token(token: str) -> str:
    """Digest under which a refresh token is stored and looked up."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _row_to_user(row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        password_hash=row["password_hash"],
        role=Role(row["role"]),
        google_id=row["google_id"],
        display_name=row["display_name"],
        profile_picture=row["profile_picture"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class IdentityStore:
    """asyncpg-backed store for users and refresh credentials.

    Every method acquires its own connection; nothing is held across calls.
    Database errors are not caught here and propagate to the caller.
    """

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def find_user_by_email(self, email: str) -> Optional[User]:
        """Get a user by email (case-insensitive).

        Args:
            email: Email address to look up

        Returns:
            User model or None if not found
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {USER_COLUMNS}
                FROM users
                WHERE LOWER(email) = LOWER($1)
                """,
                email,
            )

        return _row_to_user(row) if row is not None else None

    async def find_user_by_id(self, user_id: UUID) -> Optional[User]:
        """Get a user by UUID."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {USER_COLUMNS}
                FROM users
                WHERE id = $1
                """,
                user_id,
            )

        return _row_to_user(row) if row is not None else None

    async def find_user_by_external_id(self, google_id: str) -> Optional[User]:
        """Get the user linked to a Google subject id."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {USER_COLUMNS}
                FROM users
                WHERE google_id = $1
                """,
                google_id,
            )

        return _row_to_user(row) if row is not None else None

    async def create_user(
        self,
        email: str,
        role: Role = Role.CUSTOMER,
        password_hash: Optional[str] = None,
        google_id: Optional[str] = None,
        display_name: Optional[str] = None,
        profile_picture: Optional[str] = None,
    ) -> User:
        """Insert a new user.

        Args:
            email: Email address, stored lower-cased
            role: Account role
            password_hash: bcrypt hash for password accounts
            google_id: Google subject id for OAuth accounts
            display_name: Optional display name
            profile_picture: Optional avatar URL

        Returns:
            Created User model

        Raises:
            ValueError: If neither a password hash nor a Google id is given
        """
        if password_hash is None and google_id is None:
            raise ValueError("A user needs a password or a linked external identity")

        user_id = uuid4()
        now = datetime.now(timezone.utc)
        email = email.strip().lower()

        pool = await get_pool()

        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO users (id, email, password_hash, role, google_id, display_name,
                                   profile_picture, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                user_id,
                email,
                password_hash,
                role.value,
                google_id,
                display_name,
                profile_picture,
                now,
                now,
            )

        logger.info(
            "user_created",
            user_id=str(user_id),
            role=role.value,
            via_google=google_id is not None,
        )

        return User(
            id=user_id,
            email=email,
            role=role,
            password_hash=password_hash,
            google_id=google_id,
            display_name=display_name,
            profile_picture=profile_picture,
            created_at=now,
            updated_at=now,
        )

    async def link_external_id(
        self,
        user_id: UUID,
        google_id: str,
        profile_picture: Optional[str] = None,
    ) -> None:
        """Attach a Google subject id to an existing account.

        The avatar is only filled in when the account has none yet.
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE users
                SET google_id = $1,
                    profile_picture = COALESCE(profile_picture, $2),
                    updated_at = $3
                WHERE id = $4
                """,
                google_id,
                profile_picture,
                datetime.now(timezone.utc),
                user_id,
            )

        logger.info("external_identity_linked", user_id=str(user_id), provider="google")

    async def list_users(self) -> list[User]:
        """Return all users ordered by creation date."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {USER_COLUMNS}
                FROM users
                ORDER BY created_at ASC
                """
            )

        return [_row_to_user(row) for row in rows]

    async def update_profile(
        self,
        user_id: UUID,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Optional[User]:
        """Update profile fields that are not None.

        Returns:
            Updated User model, or None if the user does not exist
        """
        set_clauses = []
        params = []
        param_idx = 1

        if email is not None:
            set_clauses.append(f"email = ${param_idx}")
            params.append(email.strip().lower())
            param_idx += 1

        if display_name is not None:
            set_clauses.append(f"display_name = ${param_idx}")
            params.append(display_name)
            param_idx += 1

        if not set_clauses:
            return await self.find_user_by_id(user_id)

        set_clauses.append(f"updated_at = ${param_idx}")
        params.append(datetime.now(timezone.utc))
        param_idx += 1

        params.append(user_id)

        query = f"""
            UPDATE users
            SET {', '.join(set_clauses)}
            WHERE id = ${param_idx}
            RETURNING {USER_COLUMNS}
        """

        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)

        if row is None:
            return None

        logger.info(
            "user_profile_updated",
            user_id=str(user_id),
            fields_updated=[c.split(" = ")[0] for c in set_clauses if "updated_at" not in c],
        )
        return _row_to_user(row)

    async def update_password_hash(self, user_id: UUID, password_hash: str) -> None:
        """Replace a user's password hash."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE users
                SET password_hash = $1, updated_at = $2
                WHERE id = $3
                """,
                password_hash,
                datetime.now(timezone.utc),
                user_id,
            )

        logger.info("user_password_changed", user_id=str(user_id))

    # ------------------------------------------------------------------
    # Refresh credentials
    # ------------------------------------------------------------------

    async def insert_refresh_credential(
        self, user_id: UUID, token: str, expires_at: datetime
    ) -> None:
        """Persist a refresh credential under the digest of ``token``."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO refresh_tokens (id, user_id, token_hash, issued_at, expires_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                uuid4(),
                user_id,
                hash_refresh_token(token),
                datetime.now(timezone.utc),
                expires_at,
            )

    async def find_refresh_credential(self, token: str) -> Optional[RefreshCredential]:
        """Look up a refresh credential by its raw token value."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, user_id, token_hash, issued_at, expires_at
                FROM refresh_tokens
                WHERE token_hash = $1
                """,
                hash_refresh_token(token),
            )

        if row is None:
            return None

        return RefreshCredential(
            id=row["id"],
            user_id=row["user_id"],
            token_hash=row["token_hash"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
        )

    async def delete_refresh_credential_if_present(self, token: str) -> bool:
        """Delete a refresh credential in a single conditional statement.

        Of several concurrent callers presenting the same token, exactly one
        sees True.

        Returns:
            True if this call deleted the credential, False if it was gone
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM refresh_tokens WHERE token_hash = $1",
                hash_refresh_token(token),
            )

        return result == "DELETE 1"

    async def delete_user_refresh_credentials(self, user_id: UUID) -> int:
        """Delete every refresh credential a user holds.

        Returns:
            Number of credentials deleted
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM refresh_tokens WHERE user_id = $1",
                user_id,
            )

        deleted = int(result.split()[-1]) if result else 0
        logger.info("user_refresh_credentials_deleted", user_id=str(user_id), count=deleted)
        return deleted
