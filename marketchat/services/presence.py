"""
Presence registry: which users hold live connections, and which chats each
connection is subscribed to.

A connection goes through ``connecting -> authenticated -> subscribed(chat)* ->
disconnected``. Connections without a valid token stay anonymous: they are
registered but never appear in presence and cannot join chats.

All maps are mutated under a single asyncio.Lock; readers get snapshots.
"""
import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

import structlog

from marketchat.core.exceptions import AuthenticationError
from marketchat.core.security import user_id_from_token
from marketchat.core.utils import utcnow

logger = structlog.get_logger()


class Connection(Protocol):
    """A live push transport (a WebSocket in production)."""

    id: str

    async def send_json(self, data: Any) -> None: ...


class ChatAccess(Protocol):
    """Anything that can verify chat membership (the conversation store)."""

    async def get_chat(self, chat_id: int, user_id: int) -> Any: ...


@dataclass
class PresenceChange:
    """Result of dropping a connection."""
    user_id: Optional[int]
    went_offline: bool
    chat_ids: set[int] = field(default_factory=set)


class PresenceRegistry:
    """
    Concurrency-safe maps of users, connections and chat subscriptions.

    Process-local. Running several instances needs a shared store (keyed
    pub/sub) behind the same interface.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._lock = asyncio.Lock()
        # connection id -> connection
        self.connections: dict[str, Connection] = {}
        # connection id -> user id (authenticated connections only)
        self.connection_users: dict[str, int] = {}
        # user id -> connection ids
        self.user_connections: dict[int, set[str]] = defaultdict(set)
        # chat id -> connection ids
        self.chat_subscribers: dict[int, set[str]] = defaultdict(set)
        # connection id -> chat ids
        self.connection_chats: dict[str, set[int]] = defaultdict(set)
        # user id -> last activity
        self.last_activity: dict[int, datetime] = {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def register(self, connection: Connection) -> None:
        async with self._lock:
            self.connections[connection.id] = connection
        logger.debug("connection_registered", connection_id=connection.id)

    async def authenticate(self, connection: Connection, token: Optional[str]) -> Optional[int]:
        """
        Bind a connection to the user identified by ``token``.

        A missing or invalid token leaves the connection anonymous and
        returns None. Otherwise returns the bound user id.
        """
        user_id = user_id_from_token(token) if token else None
        if user_id is None:
            logger.info("connection_anonymous", connection_id=connection.id, had_token=bool(token))
            return None
        await self.bind_user(connection, user_id)
        return user_id

    async def bind_user(self, connection: Connection, user_id: int) -> bool:
        """
        Attach an identity to a connection. Returns True if this is the user's
        first live connection (the user just came online).
        """
        async with self._lock:
            self.connections[connection.id] = connection
            previous = self.connection_users.get(connection.id)
            if previous is not None and previous != user_id:
                raise AuthenticationError("Connection is already authenticated as another user")
            came_online = not self.user_connections.get(user_id)
            self.connection_users[connection.id] = user_id
            self.user_connections[user_id].add(connection.id)
            self.last_activity[user_id] = self.clock()

        logger.info(
            "connection_authenticated",
            connection_id=connection.id,
            user_id=user_id,
            came_online=came_online,
        )
        return came_online

    async def join(self, connection: Connection, chat_id: int, store: ChatAccess) -> bool:
        """
        Subscribe an authenticated connection to a chat.

        Membership is checked through ``store`` first, which raises
        NotFoundError or ForbiddenError. Returns False if the connection was
        already subscribed.
        """
        user_id = self.connection_users.get(connection.id)
        if user_id is None:
            raise AuthenticationError("Authentication required to join a chat")
        await store.get_chat(chat_id, user_id)

        async with self._lock:
            if connection.id not in self.connection_users:
                raise AuthenticationError("Authentication required to join a chat")
            if chat_id in self.connection_chats[connection.id]:
                return False
            self.chat_subscribers[chat_id].add(connection.id)
            self.connection_chats[connection.id].add(chat_id)
            user_id = self.connection_users[connection.id]
            self.last_activity[user_id] = self.clock()

        logger.debug("chat_joined", connection_id=connection.id, chat_id=chat_id, user_id=user_id)
        return True

    async def leave(self, connection: Connection, chat_id: int) -> bool:
        async with self._lock:
            if chat_id not in self.connection_chats.get(connection.id, set()):
                return False
            self._unsubscribe(connection.id, chat_id)
        logger.debug("chat_left", connection_id=connection.id, chat_id=chat_id)
        return True

    async def disconnect(self, connection: Connection) -> PresenceChange:
        """
        Drop a connection from every map it appears in.

        ``went_offline`` is True when it was the user's last live connection;
        ``chat_ids`` lists the chats the connection was subscribed to.
        """
        async with self._lock:
            self.connections.pop(connection.id, None)
            chat_ids = set(self.connection_chats.pop(connection.id, set()))
            for chat_id in chat_ids:
                subscribers = self.chat_subscribers.get(chat_id)
                if subscribers is not None:
                    subscribers.discard(connection.id)
                    if not subscribers:
                        del self.chat_subscribers[chat_id]

            user_id = self.connection_users.pop(connection.id, None)
            went_offline = False
            if user_id is not None:
                remaining = self.user_connections.get(user_id, set())
                remaining.discard(connection.id)
                if not remaining:
                    self.user_connections.pop(user_id, None)
                    self.last_activity.pop(user_id, None)
                    went_offline = True

        logger.info(
            "connection_closed",
            connection_id=connection.id,
            user_id=user_id,
            went_offline=went_offline,
            chats=sorted(chat_ids),
        )
        return PresenceChange(user_id=user_id, went_offline=went_offline, chat_ids=chat_ids)

    def _unsubscribe(self, connection_id: str, chat_id: int) -> None:
        self.connection_chats[connection_id].discard(chat_id)
        subscribers = self.chat_subscribers.get(chat_id)
        if subscribers is not None:
            subscribers.discard(connection_id)
            if not subscribers:
                del self.chat_subscribers[chat_id]

    async def touch(self, connection: Connection) -> None:
        async with self._lock:
            user_id = self.connection_users.get(connection.id)
            if user_id is not None:
                self.last_activity[user_id] = self.clock()

    # =========================================================================
    # Queries (snapshots)
    # =========================================================================

    def user_for(self, connection: Connection) -> Optional[int]:
        return self.connection_users.get(connection.id)

    def is_online(self, user_id: int) -> bool:
        return bool(self.user_connections.get(user_id))

    def online_users(self) -> set[int]:
        return {uid for uid, conns in self.user_connections.items() if conns}

    def connections_for_user(self, user_id: int) -> list[Connection]:
        return [
            self.connections[cid]
            for cid in list(self.user_connections.get(user_id, ()))
            if cid in self.connections
        ]

    def connections_for_chat(self, chat_id: int) -> list[Connection]:
        return [
            self.connections[cid]
            for cid in list(self.chat_subscribers.get(chat_id, ()))
            if cid in self.connections
        ]

    def users_in_chat(self, chat_id: int) -> set[int]:
        return {
            self.connection_users[cid]
            for cid in list(self.chat_subscribers.get(chat_id, ()))
            if cid in self.connection_users
        }

    def chats_for(self, connection: Connection) -> set[int]:
        return set(self.connection_chats.get(connection.id, ()))

    def stats(self) -> dict[str, int]:
        return {
            "connections": len(self.connections),
            "authenticated_connections": len(self.connection_users),
            "online_users": len(self.online_users()),
            "active_chats": len(self.chat_subscribers),
        }
