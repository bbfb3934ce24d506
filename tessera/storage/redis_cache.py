from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from tessera.storage.models import normalize_email


class RedisCache:
    """Redis-backed failed-login log shared by every process behind one deployment."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, window_seconds: int = 3600):
        self.redis_url = redis_url
        self.window_seconds = window_seconds
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _failure_key(email: str) -> str:
        """Hash the normalized email so keys carry no address and no delimiters."""
        digest = hashlib.sha256(normalize_email(email).encode()).hexdigest()
        return f"auth:login_failures:{digest}"

    @staticmethod
    def _score(moment: datetime) -> float:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.timestamp()

    async def record_failed_attempt(self, email: str, attempted_at: datetime) -> None:
        key = self._failure_key(email)
        score = self._score(attempted_at)
        pipe = self.client.pipeline()
        pipe.zadd(key, {str(uuid.uuid4()): score})
        # Entries older than one window can never count again
        pipe.zremrangebyscore(key, "-inf", score - self.window_seconds)
        pipe.expire(key, self.window_seconds)
        await pipe.execute()

    async def count_failed_attempts_since(self, email: str, since: datetime) -> int:
        return int(await self.client.zcount(self._failure_key(email), self._score(since), "+inf"))

    async def oldest_failed_attempt_since(self, email: str, since: datetime) -> Optional[datetime]:
        rows = await self.client.zrangebyscore(
            self._failure_key(email), self._score(since), "+inf", start=0, num=1, withscores=True
        )
        if not rows:
            return None
        _, score = rows[0]
        return datetime.fromtimestamp(float(score), tz=timezone.utc)

    async def close(self) -> None:
        """Close the Redis connection pool on shutdown."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
