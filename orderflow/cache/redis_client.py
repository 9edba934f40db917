"""
Async Redis client holding the persisted inventory snapshot.

The service keeps a single JSON document in Redis, so the client exposes
only a connection lifecycle, a ping-based health check and JSON get/set.
"""

import json
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from orderflow.core.config import get_settings
from orderflow.core.logging import get_logger

logger = get_logger(__name__)


def redact_url(url: str) -> str:
    """Replace any credentials in ``url`` with ``***`` for logging."""
    parts = urlsplit(url)
    if "@" not in parts.netloc:
        return url
    host = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit(parts._replace(netloc=f"***@{host}"))


class RedisClient:
    """
    Pooled ``redis.asyncio`` connection opened at startup.

    Reads and writes before ``connect()`` (or after ``disconnect()``) raise
    ``ConnectionError`` so the snapshot store can degrade gracefully.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        timeout_seconds: float = 5.0,
    ):
        settings = get_settings()
        self.url = url or settings.redis_url
        self.max_connections = max_connections or settings.redis_max_connections
        self.timeout_seconds = timeout_seconds
        self._redis: Optional[Redis] = None

    async def connect(self) -> None:
        """
        Open the pool and ping once.

        Raises:
            ConnectionError: If Redis does not answer
        """
        if self._redis is not None:
            return

        redis = Redis.from_url(
            self.url,
            max_connections=self.max_connections,
            socket_timeout=self.timeout_seconds,
            socket_connect_timeout=self.timeout_seconds,
            retry=Retry(ExponentialBackoff(base=0.1, cap=2.0), retries=3),
            retry_on_timeout=True,
            decode_responses=True,
        )
        try:
            await redis.ping()
        except (ConnectionError, TimeoutError) as e:
            await redis.aclose()
            logger.error("Redis unreachable", url=redact_url(self.url), error=str(e))
            raise ConnectionError(f"Redis connection failed: {e}") from e

        self._redis = redis
        logger.info(
            "Redis connected",
            url=redact_url(self.url),
            max_connections=self.max_connections,
        )

    async def disconnect(self) -> None:
        if self._redis is None:
            return
        redis, self._redis = self._redis, None
        await redis.aclose()
        logger.info("Redis disconnected")

    async def health_check(self) -> bool:
        if self._redis is None:
            return False
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.warning("Redis ping failed", error=str(e), error_type=type(e).__name__)
            return False

    def _connection(self) -> Redis:
        if self._redis is None:
            raise ConnectionError("Redis client is not connected")
        return self._redis

    async def get_json(self, key: str) -> Optional[Any]:
        """
        Read and decode the JSON document stored under ``key``.

        Returns:
            The decoded document, or None when the key is absent

        Raises:
            ConnectionError: If the client is not connected
            ValueError: If the stored value is not valid JSON
        """
        raw = await self._connection().get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON stored under {key}") from e

    async def set_json(self, key: str, value: Any) -> None:
        """Write ``value`` under ``key`` as JSON, without expiry."""
        await self._connection().set(key, json.dumps(value, default=str))


_redis_client: Optional[RedisClient] = None


def get_redis_client() -> RedisClient:
    """Return the process-wide Redis client, creating it on first use."""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
