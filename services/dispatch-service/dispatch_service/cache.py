import json
import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from .config import MATCH_CACHE_TTL_SECONDS, REDIS_URL
from .schemas import LocationBasedRequestMatch

_LOGGER = logging.getLogger(__name__)


def make_redis_client(url: str | None = REDIS_URL):
    if not url:
        return None
    return redis.from_url(url, decode_responses=True)


def cache_key(request_id: str) -> str:
    return f"match:request:{request_id}"


class MatchCache:
    """
    Ranked matches per request, kept for a short TTL.

    Matches are derived data: any Redis failure is logged and treated as a
    miss so ranking falls back to the repository.
    """

    def __init__(self, redis_client=None, ttl_seconds: int = MATCH_CACHE_TTL_SECONDS):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.enabled = redis_client is not None

    async def get(self, request_id: str) -> list[LocationBasedRequestMatch] | None:
        if not self.enabled:
            return None
        try:
            raw = await self.redis.get(cache_key(request_id))
        except RedisError as e:
            _LOGGER.warning("[dispatch-service] match cache read failed: %s", e)
            return None
        if not raw:
            return None

        try:
            return [LocationBasedRequestMatch.model_validate(m) for m in json.loads(raw)]
        except ValueError:
            _LOGGER.warning("[dispatch-service] dropping unreadable cache entry for %s", request_id)
            await self.invalidate(request_id)
            return None

    async def set(self, request_id: str, matches: list[LocationBasedRequestMatch]) -> None:
        if not self.enabled:
            return
        value = json.dumps([m.model_dump(mode="json") for m in matches], separators=(",", ":"))
        try:
            await self.redis.set(cache_key(request_id), value, ex=self.ttl_seconds)
        except RedisError as e:
            _LOGGER.warning("[dispatch-service] match cache write failed: %s", e)

    async def invalidate(self, request_id: str) -> None:
        if not self.enabled:
            return
        try:
            await self.redis.delete(cache_key(request_id))
        except RedisError as e:
            _LOGGER.warning("[dispatch-service] match cache invalidate failed: %s", e)
