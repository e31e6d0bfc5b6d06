"""Advisory key-value cache in front of the ledger store.

Nothing here is authoritative: a miss and an outage look the same to callers,
and every caller has a store fallback.
"""

import json
import logging
import time
from typing import Any, Dict, Optional, Protocol, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def code_key(code_id: str) -> str:
    return f"qr:{code_id}"


def reward_key(reward_code: str) -> str:
    return f"reward:{reward_code}"


class CacheAdapter(Protocol):
    async def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    async def set(self, key: str, value: Dict[str, Any], ttl: int) -> None: ...

    async def add(self, key: str, value: Dict[str, Any], ttl: int) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class RedisCache:
    def __init__(self, redis: Redis):
        self.redis = redis

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(Redis.from_url(url, decode_responses=True, socket_timeout=1.0, socket_connect_timeout=1.0))

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.redis.get(key)
        except RedisError as e:
            logger.warning("cache get failed key=%s: %s", key, e)
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("dropping undecodable cache entry key=%s", key)
            return None

    async def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        if ttl <= 0:
            return
        try:
            await self.redis.setex(key, ttl, json.dumps(value))
        except RedisError as e:
            logger.warning("cache set failed key=%s: %s", key, e)

    async def add(self, key: str, value: Dict[str, Any], ttl: int) -> bool:
        """Set only if absent, so a refill never overwrites a newer entry."""
        if ttl <= 0:
            return False
        try:
            return bool(await self.redis.set(key, json.dumps(value), ex=ttl, nx=True))
        except RedisError as e:
            logger.warning("cache add failed key=%s: %s", key, e)
            return False

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except RedisError as e:
            logger.warning("cache delete failed key=%s: %s", key, e)

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except RedisError as e:
            logger.warning("cache close failed: %s", e)


class MemoryCache:
    """Process-local cache, used when no Redis is configured."""

    def __init__(self):
        self._entries: Dict[str, Tuple[float, str]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires, raw = entry
        if time.monotonic() >= expires:
            self._entries.pop(key, None)
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        if ttl <= 0:
            return
        self._entries[key] = (time.monotonic() + ttl, json.dumps(value))
        logger.debug("cached key=%s ttl=%ss", key, ttl)

    async def add(self, key: str, value: Dict[str, Any], ttl: int) -> bool:
        if ttl <= 0 or await self.get(key) is not None:
            return False
        await self.set(key, value, ttl)
        return True

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def close(self) -> None:
        self._entries.clear()


TOMBSTONE = "tombstone"


def tombstone(state: str) -> Dict[str, Any]:
    """Marker left in place of an entry that must not be refilled from a stale read."""
    return {TOMBSTONE: state}


def is_tombstone(data: Optional[Dict[str, Any]]) -> bool:
    return isinstance(data, dict) and TOMBSTONE in data


def bounded_ttl(remaining_seconds: Optional[float], cap: int) -> int:
    """TTL for an entry that stops being valid after ``remaining_seconds``."""
    if remaining_seconds is None:
        return cap
    return max(0, min(int(remaining_seconds), cap))
