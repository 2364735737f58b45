from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

import redis.asyncio as redis_async

from dispatch_core.core.config import get_settings
from dispatch_core.schemas.events import TransitionEvent

logger = logging.getLogger(__name__)


class EventPublisher(ABC):
    @abstractmethod
    async def publish(
        self,
        event_name: str,
        entity_id: uuid.UUID,
        payload: dict[str, Any],
        *,
        entity_type: str | None = None,
        correlation_id: str | None = None,
    ) -> None:
        raise NotImplementedError


class NoOpEventPublisher(EventPublisher):
    async def publish(self, event_name, entity_id, payload, *, entity_type=None, correlation_id=None):
        logger.warning(
            "event_publisher.noop: event dropped, no publisher configured",
            extra={
                "event_name": event_name,
                "entity_id": str(entity_id),
                "correlation_id": correlation_id,
            },
        )


class RedisEventPublisher(EventPublisher):
    def __init__(self, redis_url: str | None = None, channel_prefix: str | None = None) -> None:
        settings = get_settings()
        self._redis_url = redis_url or settings.redis_url
        self._channel_prefix = channel_prefix if channel_prefix is not None else settings.notification_channel_prefix
        self._client = None

    async def _get_client(self):
        if self._client is None:
            self._client = redis_async.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def publish(
        self,
        event_name: str,
        entity_id: uuid.UUID,
        payload: dict[str, Any],
        *,
        entity_type: str | None = None,
        correlation_id: str | None = None,
    ) -> None:
        topic = f"{self._channel_prefix}{event_name}"
        envelope = {
            "topic": topic,
            "entity_type": entity_type or "unknown",
            "entity_id": str(entity_id),
            "event_type": event_name,
            "payload": payload,
            "ts": datetime.now(UTC).isoformat(),
            "correlation_id": correlation_id,
        }
        try:
            client = await self._get_client()
            await client.publish(topic, json.dumps(envelope))
        except Exception as exc:
            logger.error(
                "event_publisher.redis.publish failed",
                extra={
                    "event_name": event_name,
                    "topic": topic,
                    "entity_id": str(entity_id),
                    "correlation_id": correlation_id,
                    "error": str(exc),
                },
                exc_info=exc,
            )
            # left undelivered in the outbox; the redelivery worker retries it
            raise

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class NotificationSink:
    """Forwards committed transitions to the notification channel."""

    def __init__(self, publisher: EventPublisher) -> None:
        self.publisher = publisher

    async def handle(self, event: TransitionEvent) -> None:
        await self.publisher.publish(
            event.event_name,
            event.entity_id,
            event.notification_payload(),
            entity_type=event.entity_kind.value,
            correlation_id=str(event.transition_id),
        )


_publisher_instance: EventPublisher | None = None


def get_event_publisher() -> EventPublisher:
    global _publisher_instance
    if _publisher_instance is None:
        settings = get_settings()
        if settings.redis_url:
            _publisher_instance = RedisEventPublisher()
        else:
            logger.critical(
                "event_publisher.fallback: Redis not configured, "
                "using NoOpEventPublisher; notifications will be dropped. "
                "Set REDIS_URL to enable transition notifications.",
                extra={"redis_url_set": False},
            )
            _publisher_instance = NoOpEventPublisher()
    return _publisher_instance
