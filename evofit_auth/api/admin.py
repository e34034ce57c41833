"""Admin API endpoints for user oversight."""

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from evofit_auth.api.dependencies import get_identity_store, require_admin
from evofit_auth.models.auth import UserSummary
from evofit_auth.models.user import User
from evofit_auth.services.identity_store import IdentityStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


@router.get("/users")
async def list_users(
    admin: User = Depends(require_admin),
    store: IdentityStore = Depends(get_identity_store),
) -> list[UserSummary]:
    """List all users (admin only).

    Returns:
        List of UserSummary ordered by creation date
    """
    users = await store.list_users()
    logger.info("admin_listed_users", admin_id=str(admin.id), count=len(users))
    return [UserSummary.from_user(u) for u in users]


@router.get("/users/{user_id}")
async def get_user(
    user_id: UUID,
    admin: User = Depends(require_admin),
    store: IdentityStore = Depends(get_identity_store),
) -> UserSummary:
    """Get a single user (admin only).

    Raises:
        HTTPException 404: If the user does not exist
    """
    user = await store.find_user_by_id(user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )
    return UserSummary.from_user(user)
