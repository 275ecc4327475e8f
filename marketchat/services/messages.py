"""
Message dispatcher: validates, persists and announces chat messages.

Chat status rules applied on every send:
- ACTIVE chats accept messages.
- ARCHIVED chats are reactivated by the message, in the same transaction.
- BLOCKED chats reject the message and nothing is written.

Events are published only after the transaction commits, so a delivery
failure can never undo or fail a persisted message.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

import structlog
from sqlalchemy import and_, or_, select, update

from marketchat.core.constants import (
    CONTENT_TYPES,
    DELETED_MESSAGE_SENTINEL,
    RESPONSE_TYPES,
    ChatStatus,
    MessageType,
)
from marketchat.core.exceptions import (
    BusinessLogicError,
    ChatBlockedError,
    EditWindowExpiredError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from marketchat.core.locks import chat_locks
from marketchat.core.utils import as_utc, escape_like, to_decimal
from marketchat.db.transaction import atomic
from marketchat.models.chat import Chat, Message
from marketchat.schemas.message import (
    MessageListResponse,
    MessageResponse,
    MessageSearchResponse,
)
from marketchat.services.conversations import ConversationStore, active_chats_of
from marketchat.services.directory import summarize_user
from marketchat.services.events import (
    ChatStatusChanged,
    MessageCreated,
    MessageDeleted,
    MessageEdited,
    MessagesRead,
)

logger = structlog.get_logger()

MAX_PAGE_SIZE = 100


class MessageDispatcher:
    """
    The only writer of chat messages.

    Shares the session, event sink and settings of its ConversationStore.
    ``clock`` stamps created/edited/read times and drives the edit window.
    """

    def __init__(self, store: ConversationStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.db = store.db
        self.events = store.events
        self.settings = store.settings
        self.clock = clock or store.clock

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_content(self, message_type: MessageType, content: Optional[str]) -> str:
        if content is not None and not isinstance(content, str):
            raise ValidationError("content must be a string", field="content")
        if content is None or not content.strip():
            raise ValidationError(
                f"{message_type.value} messages require content",
                message_type=message_type.value,
            )
        content = content.strip()
        if len(content) > self.settings.message_max_length:
            raise ValidationError(
                "Message is too long",
                max_length=self.settings.message_max_length,
            )
        return content

    def validate_payload(
        self,
        message_type: MessageType | str,
        content: Optional[str],
        offer_amount: Any,
    ) -> tuple[MessageType, Optional[str], Optional[Decimal]]:
        """Check type-specific required fields and normalize them."""
        try:
            message_type = MessageType(message_type)
        except ValueError:
            raise ValidationError("Unknown message type", message_type=str(message_type)) from None

        if message_type in RESPONSE_TYPES:
            raise ValidationError(
                "Offer responses are created by responding to an offer",
                message_type=message_type.value,
            )

        if message_type in CONTENT_TYPES:
            if offer_amount is not None:
                raise ValidationError("offer_amount is only allowed on offers")
            return message_type, self.validate_content(message_type, content), None

        amount = to_decimal(offer_amount)
        if amount is None or amount <= 0:
            raise ValidationError(
                "Offer amount must be greater than zero",
                offer_amount=str(offer_amount),
            )
        if content is not None and not isinstance(content, str):
            raise ValidationError("notes must be a string", field="notes")
        notes = content.strip() if content else None
        if notes and len(notes) > self.settings.message_max_length:
            raise ValidationError("Offer notes are too long", max_length=self.settings.message_max_length)
        return message_type, notes or None, amount

    # =========================================================================
    # Send
    # =========================================================================

    async def send(
        self,
        chat_id: int,
        sender_id: int,
        message_type: MessageType | str = MessageType.TEXT,
        content: Optional[str] = None,
        offer_amount: Any = None,
        reply_to_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
        offer_expires_at: Optional[datetime] = None,
    ) -> MessageResponse:
        """
        Persist a message from a participant and announce it.

        Raises ForbiddenError for non-participants, ValidationError for bad
        payloads and ChatBlockedError when the chat is blocked.
        """
        message_type, content, amount = self.validate_payload(message_type, content, offer_amount)
        await self.store.get_chat(chat_id, sender_id)
        if reply_to_id is not None:
            await self.get_chat_message(chat_id, reply_to_id)

        async with chat_locks.acquire(chat_id):
            async with atomic(self.db):
                chat, message, previous_status = await self.insert_locked(
                    chat_id,
                    sender_id,
                    message_type,
                    content=content,
                    offer_amount=amount,
                    reply_to_id=reply_to_id,
                    details=details,
                    offer_expires_at=offer_expires_at,
                )

        return await self.announce(chat, message, previous_status)

    async def insert_locked(
        self,
        chat_id: int,
        sender_id: int,
        message_type: MessageType,
        content: Optional[str] = None,
        offer_amount: Optional[Decimal] = None,
        reply_to_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
        offer_expires_at: Optional[datetime] = None,
    ) -> tuple[Chat, Message, Optional[ChatStatus]]:
        """
        Insert a message inside an open transaction.

        The caller holds ``chat_locks`` for the chat. Returns the chat, the new
        message and the status the chat had if it was reactivated.
        """
        chat = await self.store.lock_chat_row(chat_id)
        if chat.status == ChatStatus.BLOCKED:
            raise ChatBlockedError("This chat is blocked", chat_id=chat_id)

        previous_status = None
        if chat.status == ChatStatus.ARCHIVED:
            previous_status = chat.status
            chat.status = ChatStatus.ACTIVE

        now = self.clock()
        message = Message(
            chat_id=chat_id,
            sender_id=sender_id,
            message_type=message_type,
            content=content,
            offer_amount=offer_amount,
            offer_expires_at=offer_expires_at,
            reply_to_id=reply_to_id,
            details=details or {},
            is_read=False,
            created_at=now,
            updated_at=now,
        )
        self.db.add(message)
        chat.last_message_at = now
        chat.updated_at = now
        await self.db.flush()
        return chat, message, previous_status

    async def announce(
        self,
        chat: Chat,
        message: Message,
        previous_status: Optional[ChatStatus],
    ) -> MessageResponse:
        """Publish the events for a committed message and build its response."""
        sender = await self.store.users.get_user(message.sender_id)
        response = MessageResponse.from_message(message, summarize_user(sender, message.sender_id))

        if previous_status is not None:
            logger.info("chat_reactivated", chat_id=chat.id, by=message.sender_id)
            self.events.publish(ChatStatusChanged(
                chat_id=chat.id,
                buyer_id=chat.buyer_id,
                vendor_id=chat.vendor_id,
                status=ChatStatus.ACTIVE.value,
                previous_status=previous_status.value,
                changed_by=message.sender_id,
            ))

        logger.info(
            "message_sent",
            chat_id=chat.id,
            message_id=message.id,
            sender_id=message.sender_id,
            message_type=message.message_type.value,
        )
        self.events.publish(MessageCreated(
            chat_id=chat.id,
            buyer_id=chat.buyer_id,
            vendor_id=chat.vendor_id,
            sender_id=message.sender_id,
            recipient_id=chat.counterpart(message.sender_id),
            message_type=message.message_type,
            message=response.model_dump(mode="json"),
        ))
        return response

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_message(self, message_id: int) -> Message:
        message = await self.db.get(Message, message_id)
        if message is None:
            raise NotFoundError("Message not found", message_id=message_id)
        return message

    async def get_chat_message(self, chat_id: int, message_id: int) -> Message:
        message = await self.db.get(Message, message_id)
        if message is None or message.chat_id != chat_id:
            raise NotFoundError("Message not found in this chat", chat_id=chat_id, message_id=message_id)
        return message

    async def get_messages(
        self,
        chat_id: int,
        user_id: int,
        limit: Optional[int] = None,
        before_message_id: Optional[int] = None,
    ) -> MessageListResponse:
        """
        A page of history, oldest first.

        ``before_message_id`` returns the page preceding that message. Deleted
        messages stay in the history with their sentinel content.
        """
        await self.store.get_chat(chat_id, user_id)
        limit = min(limit or self.settings.message_page_size, MAX_PAGE_SIZE)
        if limit < 1:
            raise ValidationError("limit must be positive", limit=limit)

        query = select(Message).where(Message.chat_id == chat_id)
        if before_message_id is not None:
            cursor = await self.get_chat_message(chat_id, before_message_id)
            query = query.where(or_(
                Message.created_at < cursor.created_at,
                and_(Message.created_at == cursor.created_at, Message.id < cursor.id),
            ))
        query = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit + 1)

        rows = list((await self.db.execute(query)).scalars())
        has_more = len(rows) > limit
        rows = rows[:limit]
        rows.reverse()

        return MessageListResponse(
            messages=await self.build_responses(rows),
            has_more=has_more,
            next_before_id=rows[0].id if has_more and rows else None,
        )

    async def build_responses(self, messages: Iterable[Message]) -> list[MessageResponse]:
        messages = list(messages)
        users = await self.store.users.get_users({m.sender_id for m in messages})
        return [
            MessageResponse.from_message(m, summarize_user(users.get(m.sender_id), m.sender_id))
            for m in messages
        ]

    async def search(
        self,
        user_id: int,
        query: str,
        limit: Optional[int] = None,
        chat_id: Optional[int] = None,
    ) -> MessageSearchResponse:
        """Case-insensitive text search over the user's ACTIVE chats."""
        term = (query or "").strip()
        if not term:
            raise ValidationError("Search query is required")
        limit = min(limit or self.settings.search_result_limit, MAX_PAGE_SIZE)
        if chat_id is not None:
            await self.store.get_chat(chat_id, user_id)

        stmt = (
            select(Message)
            .join(Chat, Chat.id == Message.chat_id)
            .where(
                active_chats_of(user_id),
                Message.deleted_at.is_(None),
                Message.content.ilike(f"%{escape_like(term)}%", escape="\\"),
            )
        )
        if chat_id is not None:
            stmt = stmt.where(Message.chat_id == chat_id)
        stmt = stmt.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit)

        rows = (await self.db.execute(stmt)).scalars().all()
        return MessageSearchResponse(query=term, results=await self.build_responses(rows))

    # =========================================================================
    # Read receipts
    # =========================================================================

    async def mark_read(
        self,
        chat_id: int,
        reader_id: int,
        message_ids: Optional[Iterable[int]] = None,
    ) -> int:
        """
        Mark the other participant's unread messages as read.

        Only messages that flip from unread to read are counted, so repeating
        the call returns 0.
        """
        chat = await self.store.get_chat(chat_id, reader_id)
        conditions = [
            Message.chat_id == chat_id,
            Message.sender_id != reader_id,
            Message.is_read.is_(False),
        ]
        if message_ids is not None:
            message_ids = list(message_ids)
            if not message_ids:
                return 0
            conditions.append(Message.id.in_(message_ids))

        now = self.clock()
        async with atomic(self.db):
            result = await self.db.execute(
                update(Message)
                .where(*conditions)
                .values(is_read=True, read_at=now, updated_at=now)
                .returning(Message.id)
                .execution_options(synchronize_session="fetch")
            )
            updated = sorted(result.scalars().all())

        if updated:
            logger.info("messages_marked_read", chat_id=chat_id, reader_id=reader_id, count=len(updated))
            self.events.publish(MessagesRead(
                chat_id=chat_id,
                buyer_id=chat.buyer_id,
                vendor_id=chat.vendor_id,
                reader_id=reader_id,
                message_ids=tuple(updated),
                read_at=now.isoformat(),
            ))
        return len(updated)

    # =========================================================================
    # Edit / delete
    # =========================================================================

    async def edit(self, message_id: int, user_id: int, content: str) -> MessageResponse:
        """
        Rewrite a TEXT message within the edit window.

        Only the sender may edit. Deleted messages, non-text messages and
        messages in blocked chats cannot be edited.
        """
        message = await self.get_message(message_id)
        if message.sender_id != user_id:
            raise ForbiddenError("You can only edit your own messages", message_id=message_id)
        if message.is_deleted:
            raise BusinessLogicError("Deleted messages cannot be edited", message_id=message_id)
        if message.message_type != MessageType.TEXT:
            raise BusinessLogicError(
                "Only text messages can be edited",
                message_id=message_id,
                message_type=message.message_type.value,
            )

        now = self.clock()
        window = timedelta(minutes=self.settings.message_edit_window_minutes)
        if now - as_utc(message.created_at) > window:
            raise EditWindowExpiredError(
                "The edit window for this message has passed",
                message_id=message_id,
                window_minutes=self.settings.message_edit_window_minutes,
            )

        chat = await self.db.get(Chat, message.chat_id)
        if chat.status == ChatStatus.BLOCKED:
            raise ChatBlockedError("This chat is blocked", chat_id=chat.id)
        content = self.validate_content(MessageType.TEXT, content)

        async with atomic(self.db):
            message.content = content
            message.edited_at = now
            message.updated_at = now

        responses = await self.build_responses([message])
        logger.info("message_edited", chat_id=chat.id, message_id=message_id, user_id=user_id)
        self.events.publish(MessageEdited(
            chat_id=chat.id,
            buyer_id=chat.buyer_id,
            vendor_id=chat.vendor_id,
            message=responses[0].model_dump(mode="json"),
        ))
        return responses[0]

    async def soft_delete(self, message_id: int, user_id: int) -> MessageResponse:
        """
        Replace a message's content with the deletion sentinel.

        The row stays in place so history length and ordering never change.
        Deleting an already deleted message is a no-op.
        """
        message = await self.get_message(message_id)
        if message.sender_id != user_id:
            raise ForbiddenError("You can only delete your own messages", message_id=message_id)

        if not message.is_deleted:
            now = self.clock()
            async with atomic(self.db):
                message.content = DELETED_MESSAGE_SENTINEL
                message.deleted_at = now
                message.updated_at = now
                message.details = {**(message.details or {}), "deleted_by": user_id}

            chat = await self.db.get(Chat, message.chat_id)
            logger.info("message_deleted", chat_id=chat.id, message_id=message_id, user_id=user_id)
            self.events.publish(MessageDeleted(
                chat_id=chat.id,
                buyer_id=chat.buyer_id,
                vendor_id=chat.vendor_id,
                message_id=message.id,
                deleted_by=user_id,
            ))

        responses = await self.build_responses([message])
        return responses[0]
