from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from schoolportal.logging import get_logger

logger = get_logger(__name__)

OAuthStateRecord = Tuple[str, datetime, Optional[str]]


class RedisCache:
    """Thin Redis wrapper holding short-lived OAuth ``state`` values."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL in whole seconds until ``expires_at``, never below one."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Ping Redis with a short-lived sync client so startup fails fast."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_oauth_state(
        self,
        state: str,
        provider: str,
        expires_at: datetime,
        link_user_id: Optional[str] = None,
    ) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        payload = {
            "provider": provider,
            "expires_at": expires_at.isoformat(),
            "link_user_id": link_user_id,
        }
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[OAuthStateRecord]:
        """Get and delete the state in one command so it can be used only once.

        Returns ``(provider, expires_at, link_user_id)`` or None when the state
        is unknown or the stored payload is unreadable.
        """
        cached = await self.client.getdel(f"auth:oauth:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
            expires_at = datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            logger.warning("oauth_state_corrupt")
            return None
        return data.get("provider"), expires_at, data.get("link_user_id")

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()
