"""Account lifecycle events and the publishers that emit them."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Protocol

from pydantic import BaseModel, Field
from redis import Redis

from .config import Settings

logger = logging.getLogger(__name__)


class AccountCreatedPayload(BaseModel):
    account_id: str
    email: str
    created_at: datetime


class AccountCreated(BaseModel):
    event_type: str = "AccountCreated"
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    trace_id: str | None = None
    payload: AccountCreatedPayload

    @property
    def key(self) -> str:
        return self.payload.account_id


class EventPublisher(Protocol):
    def publish(self, event: AccountCreated) -> None: ...


class InMemoryEventPublisher:
    """Keeps published events in a list for inspection."""

    def __init__(self) -> None:
        self._events: list[AccountCreated] = []
        self._lock = threading.Lock()

    def publish(self, event: AccountCreated) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[AccountCreated]:
        with self._lock:
            return list(self._events)


class RedisEventPublisher:
    """Appends events to a Redis stream, keyed by account identifier."""

    def __init__(self, client: Redis, *, stream: str, max_len: int | None = 100_000) -> None:
        self._client = client
        self._stream = stream
        self._max_len = max_len

    def publish(self, event: AccountCreated) -> None:
        fields = {
            "event_type": event.event_type,
            "key": event.key,
            "data": event.model_dump_json(),
        }
        self._client.xadd(self._stream, fields, maxlen=self._max_len, approximate=True)
        logger.debug("published %s for %s to %s", event.event_type, event.key, self._stream)


def build_event_publisher(settings: Settings) -> EventPublisher:
    """Instantiate the configured event publisher."""
    if settings.event_backend == "redis":
        if not settings.redis_url:
            raise ValueError("EVENT_BACKEND=redis requires REDIS_URL")
        logger.info("event publisher configured for redis stream %s", settings.events_stream)
        return RedisEventPublisher(Redis.from_url(settings.redis_url), stream=settings.events_stream)
    logger.info("event publisher using in-memory backend")
    return InMemoryEventPublisher()
