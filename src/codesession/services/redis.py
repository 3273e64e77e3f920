import json
import logging
from typing import Any, List

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import Message
from .history import HistoryStore, dumps_history, loads_history

logger = logging.getLogger(__name__)

HISTORY_KEY_PREFIX = "history:"

__all__ = ["HISTORY_KEY_PREFIX", "RedisError", "RedisHistoryStore"]


class RedisHistoryStore(HistoryStore):
    """Message logs stored as JSON strings in Redis with a TTL."""

    def __init__(self, url: str, ttl_seconds: int | None = None) -> None:
        """Create a store for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._ttl = ttl_seconds
        self._client: Redis | None = None

    def _key(self, project_id: str) -> str:
        return f"{HISTORY_KEY_PREFIX}{project_id}"

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        """Return the underlying Redis client, or None if not connected."""
        return self._client

    async def load(self, project_id: str) -> List[Message] | None:
        """Stored messages for project_id. None if missing, unreadable or on error."""
        if self._client is None:
            return None
        key = self._key(project_id)
        try:
            raw: Any = await self._client.get(key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis get %s failed: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return loads_history(str(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid history data for %s: %s", project_id, e)
            return None

    async def save(self, project_id: str, messages: List[Message]) -> bool:
        """Persist messages with TTL. Returns True on success."""
        if self._client is None:
            return False
        key = self._key(project_id)
        payload = dumps_history(project_id, messages)
        try:
            if self._ttl is not None and self._ttl > 0:
                await self._client.setex(key, self._ttl, payload)
            else:
                await self._client.set(key, payload)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set %s failed: %s", key, e)
            return False

    async def delete(self, project_id: str) -> bool:
        """Delete the stored log. Returns True if it was deleted or did not exist."""
        if self._client is None:
            return False
        key = self._key(project_id)
        try:
            await self._client.delete(key)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis delete %s failed: %s", key, e)
            return False
