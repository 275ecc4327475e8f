"""
Realtime hub: the process-wide owner of presence, fanout, typing indicators
and the clients for external collaborators.

One hub exists per process (``get_realtime_hub``). HTTP handlers use it as the
event sink for their writes; the WebSocket endpoint also uses it for
connection lifecycle.
"""
from typing import Optional

import structlog

from marketchat.core.config import Settings, get_settings
from marketchat.core.exceptions import AuthenticationError, ForbiddenError
from marketchat.services.fanout import RealtimeFanout
from marketchat.services.notifications import NotificationSink, build_notification_sink
from marketchat.services.presence import ChatAccess, Connection, PresenceChange, PresenceRegistry
from marketchat.services.transactions import TransactionTrigger, build_transaction_trigger
from marketchat.services.typing_indicators import TypingTracker

logger = structlog.get_logger()


class RealtimeHub:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        notifier: Optional[NotificationSink] = None,
        transactions: Optional[TransactionTrigger] = None,
        presence: Optional[PresenceRegistry] = None,
    ):
        self.settings = settings or get_settings()
        self.presence = presence or PresenceRegistry()
        self.notifier = notifier or build_notification_sink(self.settings)
        self.transactions = transactions or build_transaction_trigger(self.settings)
        self.fanout = RealtimeFanout(
            self.presence,
            self.notifier,
            notification_timeout=self.settings.notification_timeout_seconds,
        )
        self.typing = TypingTracker(self.settings.typing_timeout_seconds, on_expire=self._typing_expired)

    @property
    def events(self) -> RealtimeFanout:
        """Event sink for the conversation store and dispatcher."""
        return self.fanout

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, connection: Connection, token: Optional[str] = None) -> Optional[int]:
        """Register a connection, authenticating it when a token is given."""
        await self.presence.register(connection)
        if token is None:
            return None
        return await self.presence.authenticate(connection, token)

    async def authenticate(self, connection: Connection, token: Optional[str]) -> Optional[int]:
        return await self.presence.authenticate(connection, token)

    async def disconnect(self, connection: Connection) -> PresenceChange:
        """
        Drop a connection. When it was the user's last one, their typing
        indicators are cleared and the chats they had joined see them go offline.
        """
        change = await self.presence.disconnect(connection)
        if change.user_id is not None and change.went_offline:
            for chat_id in self.typing.clear_user(change.user_id):
                await self.fanout.broadcast_typing(chat_id, change.user_id, False)
            await self.fanout.broadcast_presence(change.user_id, "offline", change.chat_ids)
        return change

    def require_user(self, connection: Connection) -> int:
        user_id = self.presence.user_for(connection)
        if user_id is None:
            raise AuthenticationError("Not authenticated")
        return user_id

    # =========================================================================
    # Chat rooms
    # =========================================================================

    async def join_chat(self, connection: Connection, chat_id: int, store: ChatAccess) -> bool:
        user_id = self.require_user(connection)
        joined = await self.presence.join(connection, chat_id, store)
        if joined:
            await self.fanout.broadcast_to_subscribers(
                chat_id,
                "user_joined_chat",
                {"chat_id": chat_id, "user_id": user_id},
                exclude_user=user_id,
            )
        return joined

    async def leave_chat(self, connection: Connection, chat_id: int) -> bool:
        user_id = self.require_user(connection)
        if self.typing.stop(chat_id, user_id):
            await self.fanout.broadcast_typing(chat_id, user_id, False)
        left = await self.presence.leave(connection, chat_id)
        if left:
            await self.fanout.broadcast_to_subscribers(
                chat_id,
                "user_left_chat",
                {"chat_id": chat_id, "user_id": user_id},
                exclude_user=user_id,
            )
        return left

    # =========================================================================
    # Typing
    # =========================================================================

    async def typing_start(self, connection: Connection, chat_id: int) -> bool:
        user_id = self._require_joined(connection, chat_id)
        await self.presence.touch(connection)
        started = self.typing.start(chat_id, user_id)
        if started:
            await self.fanout.broadcast_typing(chat_id, user_id, True)
        return started

    async def typing_stop(self, connection: Connection, chat_id: int) -> bool:
        user_id = self._require_joined(connection, chat_id)
        stopped = self.typing.stop(chat_id, user_id)
        if stopped:
            await self.fanout.broadcast_typing(chat_id, user_id, False)
        return stopped

    async def _typing_expired(self, chat_id: int, user_id: int) -> None:
        await self.fanout.broadcast_typing(chat_id, user_id, False)

    def _require_joined(self, connection: Connection, chat_id: int) -> int:
        user_id = self.require_user(connection)
        if chat_id not in self.presence.chats_for(connection):
            raise ForbiddenError("Join the chat first", chat_id=chat_id)
        return user_id

    # =========================================================================
    # Shutdown
    # =========================================================================

    def stats(self) -> dict[str, int]:
        return self.presence.stats()

    async def shutdown(self) -> None:
        await self.typing.shutdown()
        await self.fanout.drain()
        await self.notifier.close()
        await self.transactions.close()
        logger.info("realtime_hub_stopped")


_hub: Optional[RealtimeHub] = None


def get_realtime_hub() -> RealtimeHub:
    """Process-wide hub, created on first use."""
    global _hub
    if _hub is None:
        _hub = RealtimeHub()
    return _hub


async def reset_realtime_hub() -> None:
    """Shut down and forget the current hub."""
    global _hub
    if _hub is not None:
        await _hub.shutdown()
        _hub = None
