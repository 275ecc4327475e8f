"""
Realtime fanout: delivers committed chat events to live connections and
falls back to the notification sink for participants who are offline.

Delivery is best effort. ``publish`` never blocks or raises; the event is
durable in the database already and the transport only mirrors it.
"""
import asyncio
from typing import Any, Iterable, Optional

import structlog

from marketchat.core.constants import NotificationKind
from marketchat.core.utils import utcnow
from marketchat.services.events import ChatEvent
from marketchat.services.notifications import NotificationSink
from marketchat.services.presence import Connection, PresenceRegistry

logger = structlog.get_logger()


def build_frame(event: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"type": event, "timestamp": utcnow().isoformat(), **payload}


class RealtimeFanout:
    """
    EventSink that pushes events through the presence registry.

    Each published event is delivered by its own background task; ``drain``
    waits for the ones still in flight.
    """

    def __init__(
        self,
        presence: PresenceRegistry,
        notifier: NotificationSink,
        notification_timeout: float = 5.0,
    ):
        self.presence = presence
        self.notifier = notifier
        self.notification_timeout = notification_timeout
        self._tasks: set[asyncio.Task] = set()

    def publish(self, event: ChatEvent) -> None:
        task = asyncio.create_task(self.deliver(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def deliver(self, event: ChatEvent) -> None:
        """Push one event to both participants, notifying them if offline."""
        try:
            await self.broadcast_to_chat(event.chat_id, event.participants(), event.name, event.payload())
            notification = event.offline_notification()
            if notification is not None and not self.presence.is_online(notification.user_id):
                await self.notify_offline(notification.user_id, notification.kind, notification.payload)
        except Exception as e:
            logger.warning(
                "event_delivery_failed",
                event=event.name,
                chat_id=event.chat_id,
                error=str(e),
                exc_info=True,
            )

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # Delivery primitives
    # =========================================================================

    async def broadcast_to_chat(
        self,
        chat_id: int,
        participant_ids: Iterable[int],
        event: str,
        payload: dict[str, Any],
    ) -> int:
        """
        Send to every live connection of either participant, in parallel.

        Returns the number of connections that accepted the frame.
        """
        connections: dict[str, Connection] = {}
        for user_id in set(participant_ids):
            for connection in self.presence.connections_for_user(user_id):
                connections[connection.id] = connection
        if not connections:
            logger.debug("broadcast_no_listeners", chat_id=chat_id, event=event)
            return 0
        return await self._send_all(connections.values(), build_frame(event, payload))

    async def broadcast_to_subscribers(
        self,
        chat_id: int,
        event: str,
        payload: dict[str, Any],
        exclude_user: Optional[int] = None,
    ) -> int:
        """Send to connections that joined the chat, optionally skipping one user."""
        connections = [
            c for c in self.presence.connections_for_chat(chat_id)
            if exclude_user is None or self.presence.user_for(c) != exclude_user
        ]
        if not connections:
            return 0
        return await self._send_all(connections, build_frame(event, payload))

    async def broadcast_typing(self, chat_id: int, user_id: int, is_typing: bool) -> int:
        """Ephemeral; not persisted and never retried."""
        return await self.broadcast_to_subscribers(
            chat_id,
            "user_typing",
            {"chat_id": chat_id, "user_id": user_id, "is_typing": is_typing},
            exclude_user=user_id,
        )

    async def broadcast_presence(self, user_id: int, status: str, chat_ids: Iterable[int]) -> None:
        for chat_id in chat_ids:
            await self.broadcast_to_subscribers(
                chat_id,
                "user_status_changed",
                {"chat_id": chat_id, "user_id": user_id, "status": status},
                exclude_user=user_id,
            )

    async def notify_offline(self, user_id: int, kind: NotificationKind, payload: dict[str, Any]) -> bool:
        """
        Hand a notification to the external sink with its own timeout.

        Failures are logged and reported as False, never raised.
        """
        try:
            await asyncio.wait_for(
                self.notifier.notify(user_id, kind, payload),
                timeout=self.notification_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("notification_timeout", user_id=user_id, kind=kind.value)
            return False
        except Exception as e:
            logger.warning("notification_failed", user_id=user_id, kind=kind.value, error=str(e))
            return False
        return True

    async def _send_all(self, connections: Iterable[Connection], frame: dict[str, Any]) -> int:
        results = await asyncio.gather(*(self._send(c, frame) for c in connections))
        return sum(results)

    async def _send(self, connection: Connection, frame: dict[str, Any]) -> bool:
        try:
            await connection.send_json(frame)
        except Exception as e:
            logger.warning("connection_send_failed", connection_id=connection.id, error=str(e))
            return False
        return True
