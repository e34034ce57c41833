"""Redis service for login attempt throttling."""

from typing import Optional

import redis.asyncio as redis
import structlog

from evofit_auth.config import get_settings

logger = structlog.get_logger(__name__)

# Global Redis client
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create the Redis client.

    Returns:
        Redis client or None if connection fails (graceful degradation)
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()

    try:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        await _redis_client.ping()
        logger.info("redis_connected", url=settings.redis_url.split("@")[-1])
        return _redis_client
    except Exception as e:
        logger.warning("redis_connection_failed", error=str(e))
        _redis_client = None
        return None


async def close_redis() -> None:
    """Close the Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.close()
        _redis_client = None
        logger.info("redis_connection_closed")


class RedisService:
    """Counts failed logins per email so brute force can be locked out."""

    def __init__(self):
        self.settings = get_settings()

    @staticmethod
    def _attempts_key(email: str) -> str:
        return f"login_attempts:{email.strip().lower()}"

    async def is_login_allowed(self, email: str) -> bool:
        """Check whether an email is below the failed-attempt limit.

        Args:
            email: Login email

        Returns:
            False while the email is locked out; True otherwise, including
            when Redis is unavailable
        """
        client = await get_redis()
        if client is None:
            return True

        try:
            current = await client.get(self._attempts_key(email))
        except Exception as e:
            logger.warning("redis_login_check_failed", error=str(e))
            return True

        if current is None:
            return True
        return int(current) < self.settings.max_login_attempts

    async def record_failed_login(self, email: str) -> int:
        """Increment the failed-attempt counter, (re)starting the lockout window.

        Returns:
            Attempt count after increment, or -1 if Redis is unavailable
        """
        client = await get_redis()
        if client is None:
            return -1

        key = self._attempts_key(email)
        try:
            count = await client.incr(key)
            await client.expire(key, self.settings.login_lockout_minutes * 60)
        except Exception as e:
            logger.warning("redis_login_record_failed", error=str(e))
            return -1

        if count >= self.settings.max_login_attempts:
            logger.warning("login_locked_out", attempts=count)
        return count

    async def clear_failed_logins(self, email: str) -> None:
        """Reset the counter after a successful login."""
        client = await get_redis()
        if client is None:
            return

        try:
            await client.delete(self._attempts_key(email))
        except Exception as e:
            logger.warning("redis_login_clear_failed", error=str(e))
