"""Redis-backed delayed executor that survives process restarts."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import ArmedTrigger
from .base import BaseDelayedExecutor

logger = logging.getLogger(__name__)


class RedisDelayedExecutor(BaseDelayedExecutor):
    """Durable delay queue stored in a Redis sorted set scored by due time."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key: str = "cadence:delayed",
        **kwargs: Any,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisDelayedExecutor")

        super().__init__(**kwargs)
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key = key
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def _push(self, trigger: ArmedTrigger) -> None:
        client = await self._client()
        await client.zadd(self.key, {trigger.to_json(): trigger.due_at.timestamp()})

    async def _pop_due(self, now: datetime) -> Optional[ArmedTrigger]:
        client = await self._client()
        while True:
            members = await client.zrangebyscore(
                self.key, "-inf", now.timestamp(), start=0, num=1
            )
            if not members:
                return None
            raw = members[0]
            # ZREM is the claim: only the worker that removes the member runs it.
            if not await client.zrem(self.key, raw):
                continue
            try:
                return ArmedTrigger.from_json(raw)
            except ValueError as e:
                logger.error(f"Dropping unparseable trigger: {e}")

    async def pending(self) -> List[ArmedTrigger]:
        client = await self._client()
        members = await client.zrange(self.key, 0, -1)
        return [ArmedTrigger.from_json(m) for m in members]
