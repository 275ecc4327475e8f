"""
Typing indicators with automatic expiry.

Each (chat, user) pair that is typing owns a timer task. ``start`` re-arms the
timer; when it fires without a new ``start`` or an explicit ``stop``, the
indicator clears itself and ``on_expire`` is called so the stop can be
broadcast. This tolerates clients that drop without sending "stop typing".
"""
import asyncio
from collections.abc import Awaitable
from typing import Callable, Optional

import structlog

logger = structlog.get_logger()

ExpireCallback = Callable[[int, int], Awaitable[None]]


class TypingTracker:
    def __init__(self, timeout: float, on_expire: Optional[ExpireCallback] = None):
        self.timeout = timeout
        self.on_expire = on_expire
        self._timers: dict[tuple[int, int], asyncio.Task] = {}

    def start(self, chat_id: int, user_id: int) -> bool:
        """
        Mark a user as typing. Returns True if they were not typing before,
        meaning a "typing" broadcast is due.
        """
        key = (chat_id, user_id)
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        self._timers[key] = asyncio.create_task(self._expire_later(key))
        return existing is None

    def stop(self, chat_id: int, user_id: int) -> bool:
        """Clear the indicator. Returns True if the user was typing."""
        timer = self._timers.pop((chat_id, user_id), None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def is_typing(self, chat_id: int, user_id: int) -> bool:
        return (chat_id, user_id) in self._timers

    def typing_users(self, chat_id: int) -> set[int]:
        return {uid for (cid, uid) in self._timers if cid == chat_id}

    def clear_user(self, user_id: int) -> list[int]:
        """Stop every indicator of a user. Returns the affected chat ids."""
        chat_ids = [cid for (cid, uid) in list(self._timers) if uid == user_id]
        for chat_id in chat_ids:
            self.stop(chat_id, user_id)
        return chat_ids

    async def shutdown(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    async def _expire_later(self, key: tuple[int, int]) -> None:
        await asyncio.sleep(self.timeout)
        if self._timers.get(key) is not asyncio.current_task():
            return
        del self._timers[key]
        chat_id, user_id = key
        logger.debug("typing_expired", chat_id=chat_id, user_id=user_id)
        if self.on_expire is not None:
            try:
                await self.on_expire(chat_id, user_id)
            except Exception as e:
                logger.warning("typing_expire_callback_failed", chat_id=chat_id, user_id=user_id, error=str(e))
