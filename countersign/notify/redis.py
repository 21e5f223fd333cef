"""Redis notifier pushing state changes onto a list for external consumers."""

from __future__ import annotations

from typing import Any, Optional

try:
    import redis
except ImportError:
    redis = None

from ..models import StateChange
from .base import BaseNotifier


class RedisNotifier(BaseNotifier):
    """Publish state changes to a Redis list (acting as queue)."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        channel: str = "countersign:state-changes",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisNotifier")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.channel = channel
        self._redis: Optional[Any] = None

    def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        self._redis.ping()

    def disconnect(self) -> None:
        if self._redis:
            self._redis.close()
            self._redis = None

    def publish(self, change: StateChange) -> None:
        if not self._redis:
            self.connect()
        self._redis.rpush(self.channel, change.model_dump_json())
