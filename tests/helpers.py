from datetime import datetime, timedelta, timezone

from redis.exceptions import ConnectionError as RedisConnectionError

from tampinha.cache import MemoryCache
from tampinha.main import Services


class Clock:
    """Settable wall clock shared by every component under test."""

    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class UnreachableRedis:
    """Stands in for a Redis server that refuses every connection."""

    async def get(self, key):
        raise RedisConnectionError("Connection refused")

    async def setex(self, key, ttl, value):
        raise RedisConnectionError("Connection refused")

    async def set(self, key, value, ex=None, nx=False):
        raise RedisConnectionError("Connection refused")

    async def delete(self, key):
        raise RedisConnectionError("Connection refused")

    async def aclose(self):
        return None


class InterleavingCache(MemoryCache):
    """MemoryCache that runs ``before_add`` once, right before the next ``add``.

    Lets a test slip a concurrent write in between a store read and the
    cache refill that follows it.
    """

    def __init__(self):
        super().__init__()
        self.before_add = None

    async def add(self, key, value, ttl):
        hook, self.before_add = self.before_add, None
        if hook is not None:
            await hook()
        return await super().add(key, value, ttl)


async def new_user(services: Services, platform_user_id: str = "5511999990000", platform: str = "whatsapp") -> str:
    user = await services.users.find_or_create_user(platform, platform_user_id, name="Test User")
    return user.id


async def issue(services: Services, points: int = 1, venue_id: str = "bar_001", **kwargs):
    return await services.issuer.issue_code("Bar do Zé", venue_id, points_value=points, **kwargs)


async def scan(services: Services, issued, user_id: str):
    meta = await services.validator.resolve(issued.payload)
    return await services.ledger.record_scan(meta, user_id)


async def earn_reward(services: Services, user_id: str) -> str:
    issued = await issue(services, points=services.settings.reward_threshold)
    result = await scan(services, issued, user_id)
    assert result.reward_code, result
    return result.reward_code
