"""
PerpFlow — Redis Store Client
──────────────────────────────
One explicitly constructed client per process, injected into the stores.
connect() once, reuse for every call, close() on shutdown.

All redis-py failures are translated into the StorageError family here,
so nothing above this module needs to know about redis.exceptions.
"""

import json
import logging
import os
from contextlib import contextmanager
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from signal_engine.errors import (
    MalformedCachedPayload, StorageError, StorageTimeout, StorageUnavailable,
)

log = logging.getLogger("pf.redis")

SOCKET_TIMEOUT  = float(os.environ.get("REDIS_SOCKET_TIMEOUT", "2"))
CONNECT_TIMEOUT = float(os.environ.get("REDIS_CONNECT_TIMEOUT", "2"))


@contextmanager
def translate_errors(operation: str):
    """Re-raise redis-py exceptions as StorageError subclasses."""
    try:
        yield
    except StorageError:
        raise
    except RedisTimeoutError as e:
        raise StorageTimeout(f"Redis {operation} timed out: {e}", operation=operation) from e
    except (RedisError, OSError) as e:
        raise StorageUnavailable(f"Redis {operation} failed: {e}", operation=operation) from e


class StoreClient:
    """
    Thin lifecycle wrapper around redis.asyncio.Redis.

    Pass `redis=` to inject a ready connection (tests, shared pools);
    otherwise connect() builds one from `url`.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        socket_timeout: float = SOCKET_TIMEOUT,
        connect_timeout: float = CONNECT_TIMEOUT,
        redis: Optional[Any] = None,
    ):
        if not url and redis is None:
            raise StorageUnavailable("No Redis URL configured — set REDIS_URL")
        self.url             = url
        self.socket_timeout  = socket_timeout
        self.connect_timeout = connect_timeout
        self._redis          = redis

    @classmethod
    def from_env(cls) -> "StoreClient":
        url = os.environ.get("REDIS_URL", "").strip()
        if not url:
            raise StorageUnavailable("Missing REDIS_URL environment variable")
        return cls(url)

    # ── Lifecycle ────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def connect(self) -> "StoreClient":
        if self._redis is not None:
            return self
        with translate_errors("connect"):
            self._redis = aioredis.from_url(
                self.url,
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.connect_timeout,
            )
        log.info("Redis client initialised")
        return self

    async def close(self) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.aclose()
        except Exception as e:
            log.warning(f"Redis close failed: {e}")
        finally:
            self._redis = None
            log.info("Redis client closed")

    async def __aenter__(self) -> "StoreClient":
        return await self.connect()

    async def __aexit__(self, *args) -> None:
        await self.close()

    @property
    def redis(self):
        if self._redis is None:
            raise StorageUnavailable("Redis client not connected — call connect() first")
        return self._redis

    # ── Commands ─────────────────────────────────────────────

    async def ping(self) -> bool:
        """Liveness probe. Never raises."""
        try:
            with translate_errors("ping"):
                return bool(await self.redis.ping())
        except StorageError as e:
            log.warning(f"Redis health check failed: {e}")
            return False

    async def get_json(self, key: str) -> Optional[Any]:
        """GET + json.loads. None when the key is absent or expired."""
        with translate_errors("get"):
            raw = await self.redis.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MalformedCachedPayload(f"Unparseable value at {key}: {e}", key=key) from e

    async def zrange_desc(self, key: str, count: int) -> list:
        """Top `count` members of a sorted set, highest score first."""
        with translate_errors("zrange"):
            return await self.redis.zrange(key, 0, count - 1, desc=True)

    async def zcard(self, key: str) -> int:
        with translate_errors("zcard"):
            return int(await self.redis.zcard(key) or 0)

    async def ttl(self, key: str) -> int:
        with translate_errors("ttl"):
            return int(await self.redis.ttl(key))

    async def delete(self, *keys: str) -> int:
        with translate_errors("delete"):
            return int(await self.redis.delete(*keys))

    def pipeline(self):
        """MULTI/EXEC pipeline — queued commands apply together or not at all."""
        return self.redis.pipeline(transaction=True)

    async def execute(self, pipe, operation: str = "pipeline") -> list:
        with translate_errors(operation):
            return await pipe.execute()
