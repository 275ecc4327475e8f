"""
Offline notification sinks.

The fanout hands an event to a sink when the recipient has no live
connection. Delivery channels (push, email, SMS) are owned by the
notification service, which consumes the Redis outbox written here.
"""
import json
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from redis.asyncio import Redis
import structlog

from marketchat.core.circuit_breaker import CircuitBreaker, get_circuit_breaker
from marketchat.core.config import Settings
from marketchat.core.constants import NotificationKind

logger = structlog.get_logger()


class NotificationSink(Protocol):
    async def notify(self, user_id: int, kind: NotificationKind, payload: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class RedisNotificationSink:
    """
    Queue notifications in a Redis list and announce them on the user's channel.

    The list is the durable outbox; the pub/sub message lets other services
    with a live socket for the user show it immediately.
    """

    def __init__(
        self,
        redis: Redis,
        queue_key: str,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.redis = redis
        self.queue_key = queue_key
        self.breaker = breaker or get_circuit_breaker("notifications")

    async def notify(self, user_id: int, kind: NotificationKind, payload: dict[str, Any]) -> None:
        notification = {
            "user_id": user_id,
            "type": kind.value,
            "payload": payload,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        body = json.dumps(notification, default=str)

        async with self.breaker:
            await self.redis.rpush(self.queue_key, body)
            await self.redis.publish(
                f"channel:notifications:user:{user_id}",
                json.dumps({"type": "notification", "notification_type": kind.value, **notification}, default=str),
            )

        logger.debug("notification_queued", user_id=user_id, kind=kind.value)

    async def close(self) -> None:
        await self.redis.aclose()


class LoggingNotificationSink:
    """Used when the Redis outbox is disabled (local development)."""

    async def notify(self, user_id: int, kind: NotificationKind, payload: dict[str, Any]) -> None:
        logger.info("notification_skipped", user_id=user_id, kind=kind.value, chat_id=payload.get("chat_id"))

    async def close(self) -> None:
        return None


def build_notification_sink(settings: Settings) -> NotificationSink:
    if settings.notifications_enabled:
        return RedisNotificationSink(
            Redis.from_url(settings.redis_url, decode_responses=True),
            settings.notification_queue_key,
        )
    return LoggingNotificationSink()
