"""Redis implementation of the state repository."""

from __future__ import annotations

from typing import Any, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..constants import DEFAULT_REDIS_KEY_PREFIX, DEFAULT_STATE_TTL_SECONDS
from ..state import WorkflowState
from .repository import StateRepository


class RedisStateRepository(StateRepository):
    """Store each state as one JSON string under ``<prefix>:<id>`` with a TTL."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = DEFAULT_REDIS_KEY_PREFIX,
        ttl_seconds: Optional[int] = DEFAULT_STATE_TTL_SECONDS,
        url: Optional[str] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisStateRepository")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds
        self.url = url
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        if self.url:
            self._redis = redis.Redis.from_url(self.url, decode_responses=True)
        else:
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

    def _key(self, state_id: str) -> str:
        return f"{self.key_prefix}:{state_id}"

    async def save(self, state: WorkflowState) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.set(self._key(state.id), state.to_json(), ex=self.ttl_seconds)

    async def load(self, state_id: str) -> WorkflowState | None:
        if not self._redis:
            await self.connect()
        raw = await self._redis.get(self._key(state_id))
        return WorkflowState.from_json(raw) if raw is not None else None

    async def delete(self, state_id: str) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.delete(self._key(state_id))

    async def list_states(self) -> list[WorkflowState]:
        if not self._redis:
            await self.connect()
        states: list[WorkflowState] = []
        async for key in self._redis.scan_iter(match=f"{self.key_prefix}:*"):
            raw = await self._redis.get(key)
            if raw is not None:
                states.append(WorkflowState.from_json(raw))
        return states
