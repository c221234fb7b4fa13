"""
Redis cache adapter (redis-py).

Values are read and written according to their Redis type: strings,
hashes (dict), lists (list), sets (set) and sorted sets (list of
``(member, score)`` tuples).
"""

import logging
from typing import Any, List, Optional

import redis
from redis.exceptions import RedisError

from migration_engine.core.exceptions import CollaboratorError

logger = logging.getLogger(__name__)


def _is_zset_value(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) > 0
        and all(
            isinstance(item, tuple) and len(item) == 2 and isinstance(item[1], (int, float))
            for item in value
        )
    )


class RedisCacheStore:
    """CacheStore backed by a Redis client."""

    def __init__(self, client: "redis.Redis", scan_count: int = 1000):
        self.client = client
        self.scan_count = scan_count

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisCacheStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def scan_keys(self, pattern: str = "*") -> List[str]:
        try:
            return [
                key.decode() if isinstance(key, bytes) else key
                for key in self.client.scan_iter(match=pattern, count=self.scan_count)
            ]
        except RedisError as e:
            raise CollaboratorError(f"Failed to scan keys matching {pattern}: {e}") from e

    def get(self, key: str) -> Any:
        try:
            key_type = self.client.type(key)
            key_type = key_type.decode() if isinstance(key_type, bytes) else key_type
            if key_type == "none":
                return None
            if key_type == "string":
                return self.client.get(key)
            if key_type == "hash":
                return self.client.hgetall(key)
            if key_type == "list":
                return self.client.lrange(key, 0, -1)
            if key_type == "set":
                return self.client.smembers(key)
            if key_type == "zset":
                return self.client.zrange(key, 0, -1, withscores=True)
        except RedisError as e:
            raise CollaboratorError(f"Failed to read key {key}: {e}") from e

        logger.warning(f"Unsupported key type {key_type} for key {key}")
        return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            pipe = self.client.pipeline()
            pipe.delete(key)
            if isinstance(value, dict):
                if value:
                    pipe.hset(key, mapping=value)
            elif isinstance(value, (set, frozenset)):
                if value:
                    pipe.sadd(key, *value)
            elif _is_zset_value(value):
                pipe.zadd(key, {member: score for member, score in value})
            elif isinstance(value, list):
                if value:
                    pipe.rpush(key, *value)
            else:
                pipe.set(key, value)
            if ttl:
                pipe.expire(key, ttl)
            pipe.execute()
        except RedisError as e:
            raise CollaboratorError(f"Failed to write key {key}: {e}") from e

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except RedisError as e:
            raise CollaboratorError(f"Failed to check key {key}: {e}") from e

    def ttl(self, key: str) -> Optional[int]:
        try:
            remaining = self.client.ttl(key)
        except RedisError as e:
            raise CollaboratorError(f"Failed to read TTL of {key}: {e}") from e
        return remaining if remaining and remaining > 0 else None
