from typing import Protocol
import json
import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .errors import BackendUnavailableError

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Per-device persistent cache holding id lists under string keys."""

    async def get_ids(self, key: str) -> list[str]: ...

    async def set_ids(self, key: str, ids: list[str]) -> None: ...


def _decode_ids(raw) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("cache_corrupt_value: %r", raw)
        return []
    if not isinstance(value, list):
        return []
    return [str(v) for v in value]


class MemoryKeyValueStore:
    def __init__(self):
        self.values: dict[str, str] = {}

    async def get_ids(self, key: str) -> list[str]:
        return _decode_ids(self.values.get(key))

    async def set_ids(self, key: str, ids: list[str]) -> None:
        self.values[key] = json.dumps(list(ids))


class RedisKeyValueStore:
    def __init__(self, redis_client: Redis):
        self.redis = redis_client

    async def get_ids(self, key: str) -> list[str]:
        try:
            raw = await self.redis.get(key)
        except RedisError as e:
            raise BackendUnavailableError(f"cache_get:{key}", str(e)) from e
        return _decode_ids(raw)

    async def set_ids(self, key: str, ids: list[str]) -> None:
        try:
            await self.redis.set(key, json.dumps(list(ids)))
        except RedisError as e:
            raise BackendUnavailableError(f"cache_set:{key}", str(e)) from e


async def ping(redis_client: Redis) -> bool:
    try:
        return await redis_client.ping()
    except Exception:
        return False


def declined_key(order_type: str, driver_id: str) -> str:
    return f"declined_{order_type}_orders_{driver_id}"


def notified_key(order_type: str, driver_id: str | None) -> str:
    return f"processed_{order_type}_orders_{driver_id or 'anonymous'}"
