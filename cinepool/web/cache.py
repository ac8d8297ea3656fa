"""
Redis-backed cache for JSON responses.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..utils.config import RedisConfig


class ResponseCache:
    """
    Stores JSON-serialisable response bodies under a key prefix with a TTL.

    Cache trouble never fails a request: errors are logged and the call
    behaves like a miss.
    """

    def __init__(self, redis_client, prefix: str = 'cinepool:cache:', ttl: int = 1800):
        self.redis_client = redis_client
        self.prefix = prefix
        self.ttl = ttl
        self.logger = logging.getLogger(__name__)
        self.stats = {'hits': 0, 'misses': 0, 'errors': 0}

    @classmethod
    def from_config(cls, config: RedisConfig) -> 'ResponseCache':
        client = redis.Redis(
            host=config.host,
            port=config.port,
            db=config.db,
            password=config.password,
            decode_responses=True
        )
        return cls(client, prefix=config.cache_prefix, ttl=config.cache_ttl)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.redis_client.get(self._key(key))
        except RedisError as e:
            self.stats['errors'] += 1
            self.logger.warning(f"Cache read failed for {key}: {e}")
            return None

        if raw is None:
            self.stats['misses'] += 1
            return None
        try:
            value = json.loads(raw)
        except ValueError as e:
            self.stats['errors'] += 1
            self.logger.warning(f"Discarding unreadable cache entry for {key}: {e}")
            return None
        self.stats['hits'] += 1
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None):
        try:
            await self.redis_client.set(self._key(key), json.dumps(value), ex=ttl or self.ttl)
        except RedisError as e:
            self.stats['errors'] += 1
            self.logger.warning(f"Cache write failed for {key}: {e}")

    async def ping(self) -> bool:
        return await self.redis_client.ping()

    async def close(self):
        await self.redis_client.aclose()
