"""
Conversation store: chats, their status and participant access.

Both the HTTP handlers and the realtime gateway go through this class, so
access checks and status transitions live in exactly one place.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketchat.core.config import Settings, get_settings
from marketchat.core.constants import ChatStatus, ListingStatus, MessageType
from marketchat.core.exceptions import (
    BusinessLogicError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from marketchat.core.locks import chat_creation_locks, chat_locks
from marketchat.core.utils import as_utc, utcnow
from marketchat.db.transaction import atomic
from marketchat.models.chat import Chat, Message
from marketchat.models.listing import Listing
from marketchat.models.user import User
from marketchat.schemas.chat import ChatDetail, ChatListResponse, ChatSummary
from marketchat.schemas.message import MessageResponse
from marketchat.services.directory import (
    ListingCatalog,
    SqlListingCatalog,
    SqlUserDirectory,
    UserDirectory,
    summarize_listing,
    summarize_user,
)
from marketchat.services.events import (
    ChatCreated,
    ChatStatusChanged,
    EventSink,
    NullEventSink,
)

logger = structlog.get_logger()


def participant_filter(user_id: int):
    """WHERE clause matching chats the user takes part in."""
    return or_(Chat.buyer_id == user_id, Chat.vendor_id == user_id)


def active_chats_of(user_id: int):
    return and_(participant_filter(user_id), Chat.status == ChatStatus.ACTIVE)


@dataclass
class ChatCreation:
    """Outcome of create-or-get."""
    chat: Chat
    is_new: bool
    reactivated: bool = False
    initial_message: Optional[MessageResponse] = None


class ConversationStore:
    """
    Owns Chat rows: lookup with access checks, creation, listing and status.

    Message writes go through ``dispatcher``, which shares this store's
    session, event sink and settings.
    """

    def __init__(
        self,
        db: AsyncSession,
        users: Optional[UserDirectory] = None,
        listings: Optional[ListingCatalog] = None,
        events: Optional[EventSink] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.users = users or SqlUserDirectory(db)
        self.listings = listings or SqlListingCatalog(db)
        self.events = events or NullEventSink()
        self.settings = settings or get_settings()
        self.clock = clock
        self._dispatcher = None

    @property
    def dispatcher(self):
        """Message dispatcher bound to this store."""
        if self._dispatcher is None:
            from marketchat.services.messages import MessageDispatcher

            self._dispatcher = MessageDispatcher(self, clock=self.clock)
        return self._dispatcher

    # =========================================================================
    # Access
    # =========================================================================

    async def get_chat(self, chat_id: int, user_id: int) -> Chat:
        """
        Load a chat for one of its participants.

        Raises NotFoundError if the chat does not exist and ForbiddenError if
        ``user_id`` is neither its buyer nor its vendor.
        """
        chat = await self.db.get(Chat, chat_id)
        if chat is None:
            raise NotFoundError("Chat not found", chat_id=chat_id)
        if not chat.is_participant(user_id):
            raise ForbiddenError("You are not a participant in this chat", chat_id=chat_id)
        return chat

    async def get_chat_detail(self, chat_id: int, user_id: int) -> ChatDetail:
        chat = await self.get_chat(chat_id, user_id)
        users = await self.users.get_users(chat.participant_ids)
        listings = await self.listings.get_listings([chat.listing_id] if chat.listing_id else [])
        return self.build_detail(chat, user_id, users, listings)

    async def lock_chat_row(self, chat_id: int) -> Chat:
        """
        Re-read a chat inside the current transaction with a row lock.

        Callers must already hold ``chat_locks`` for the chat; the row lock
        extends the exclusion to other processes sharing the database.
        """
        result = await self.db.execute(
            select(Chat)
            .where(Chat.id == chat_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        chat = result.scalar_one_or_none()
        if chat is None:
            raise NotFoundError("Chat not found", chat_id=chat_id)
        return chat

    async def _is_admin(self, user_id: int) -> bool:
        user = await self.users.get_user(user_id)
        return user is not None and user.is_admin

    # =========================================================================
    # Creation
    # =========================================================================

    async def create_or_get_chat(
        self,
        buyer_id: int,
        vendor_id: Optional[int] = None,
        listing_id: Optional[int] = None,
        initial_message: Optional[str] = None,
    ) -> ChatCreation:
        """
        Return the chat for (listing, buyer, vendor), creating it if needed.

        An archived chat is reactivated instead of duplicated. The initial
        message is only sent when the chat is created by this call.
        """
        if listing_id is None and vendor_id is None:
            raise ValidationError("Either listing_id or vendor_id is required")
        if initial_message is not None:
            initial_message = initial_message.strip() or None
            if initial_message:
                self.dispatcher.validate_content(MessageType.TEXT, initial_message)

        listing: Optional[Listing] = None
        if listing_id is not None:
            listing = await self.listings.get_listing(listing_id)
            if listing is None:
                raise NotFoundError("Listing not found", listing_id=listing_id)
            if vendor_id is None:
                vendor_id = listing.vendor_id
            elif listing.vendor_id != vendor_id:
                raise ValidationError(
                    "Listing does not belong to this vendor",
                    listing_id=listing_id,
                    vendor_id=vendor_id,
                )

        if buyer_id == vendor_id:
            raise ValidationError("You cannot start a chat with yourself")

        vendor = await self.users.get_user(vendor_id)
        if vendor is None or not vendor.is_active:
            raise NotFoundError("Vendor not found", vendor_id=vendor_id)
        if listing is None and not vendor.is_vendor:
            raise ValidationError("User is not a vendor", vendor_id=vendor_id)

        key = (listing_id, buyer_id, vendor_id)
        is_new = False
        previous_status: Optional[ChatStatus] = None
        async with chat_creation_locks.acquire(key):
            try:
                async with atomic(self.db):
                    chat = await self._find_chat(listing_id, buyer_id, vendor_id, for_update=True)
                    if chat is not None:
                        if chat.status == ChatStatus.ARCHIVED:
                            previous_status = chat.status
                            chat.status = ChatStatus.ACTIVE
                    else:
                        if listing is not None and listing.status != ListingStatus.ACTIVE:
                            raise BusinessLogicError(
                                "Product is not available for chat",
                                listing_id=listing_id,
                                listing_status=listing.status.value,
                            )
                        chat = Chat(
                            listing_id=listing_id,
                            buyer_id=buyer_id,
                            vendor_id=vendor_id,
                            status=ChatStatus.ACTIVE,
                        )
                        self.db.add(chat)
                        await self.db.flush()
                        is_new = True
            except IntegrityError:
                # Another process created it between our lookup and insert
                chat = await self._find_chat(listing_id, buyer_id, vendor_id)
                if chat is None:
                    raise
                is_new = False

        creation = ChatCreation(chat=chat, is_new=is_new, reactivated=previous_status is not None)

        if creation.reactivated:
            logger.info("chat_reactivated", chat_id=chat.id, buyer_id=buyer_id, vendor_id=vendor_id)
            self.events.publish(ChatStatusChanged(
                chat_id=chat.id,
                buyer_id=chat.buyer_id,
                vendor_id=chat.vendor_id,
                status=ChatStatus.ACTIVE.value,
                previous_status=previous_status.value,
                changed_by=buyer_id,
            ))

        if is_new:
            logger.info(
                "chat_created",
                chat_id=chat.id,
                listing_id=listing_id,
                buyer_id=buyer_id,
                vendor_id=vendor_id,
            )
            self.events.publish(ChatCreated(
                chat_id=chat.id,
                buyer_id=chat.buyer_id,
                vendor_id=chat.vendor_id,
                initiator_id=buyer_id,
                chat={
                    "id": chat.id,
                    "listing_id": chat.listing_id,
                    "buyer_id": chat.buyer_id,
                    "vendor_id": chat.vendor_id,
                    "status": chat.status.value,
                    "chat_type": "product" if chat.listing_id else "vendor",
                },
            ))
            if initial_message:
                creation.initial_message = await self.dispatcher.send(
                    chat.id, buyer_id, MessageType.TEXT, content=initial_message
                )
        else:
            logger.debug("chat_found", chat_id=chat.id, buyer_id=buyer_id)

        return creation

    async def _find_chat(
        self,
        listing_id: Optional[int],
        buyer_id: int,
        vendor_id: int,
        for_update: bool = False,
    ) -> Optional[Chat]:
        listing_clause = Chat.listing_id.is_(None) if listing_id is None else Chat.listing_id == listing_id
        query = (
            select(Chat)
            .where(listing_clause, Chat.buyer_id == buyer_id, Chat.vendor_id == vendor_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    # =========================================================================
    # Listing
    # =========================================================================

    async def list_chats_for_user(
        self,
        user_id: int,
        page: int = 1,
        limit: Optional[int] = None,
        status: Optional[ChatStatus] = None,
    ) -> ChatListResponse:
        """
        Chats the user takes part in, most recently active first.

        Each entry carries the last message and the number of unread messages
        sent by the other participant.
        """
        limit = limit or self.settings.chat_page_size
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive", page=page, limit=limit)

        query = select(Chat).where(participant_filter(user_id))
        if status is not None:
            query = query.where(Chat.status == ChatStatus(status))
        query = (
            query.order_by(Chat.updated_at.desc(), Chat.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        chats = list((await self.db.execute(query)).scalars())
        chat_ids = [chat.id for chat in chats]

        last_messages = await self._last_messages(chat_ids)
        unread = await self._unread_counts(chat_ids, user_id)
        users = await self.users.get_users(
            uid for chat in chats for uid in chat.participant_ids
        )
        listings = await self.listings.get_listings(
            chat.listing_id for chat in chats if chat.listing_id
        )

        summaries = []
        for chat in chats:
            detail = self.build_detail(chat, user_id, users, listings)
            last = last_messages.get(chat.id)
            summaries.append(ChatSummary(
                **detail.model_dump(),
                last_message=(
                    MessageResponse.from_message(last, summarize_user(users.get(last.sender_id), last.sender_id))
                    if last else None
                ),
                unread_count=unread.get(chat.id, 0),
            ))

        return ChatListResponse(
            chats=summaries,
            page=page,
            limit=limit,
            has_more=len(chats) == limit,
        )

    async def _last_messages(self, chat_ids: list[int]) -> dict[int, Message]:
        if not chat_ids:
            return {}
        latest = (
            select(func.max(Message.id))
            .where(Message.chat_id.in_(chat_ids))
            .group_by(Message.chat_id)
        )
        result = await self.db.execute(select(Message).where(Message.id.in_(latest)))
        return {message.chat_id: message for message in result.scalars()}

    async def _unread_counts(self, chat_ids: list[int], user_id: int) -> dict[int, int]:
        if not chat_ids:
            return {}
        result = await self.db.execute(
            select(Message.chat_id, func.count(Message.id))
            .where(
                Message.chat_id.in_(chat_ids),
                Message.sender_id != user_id,
                Message.is_read.is_(False),
            )
            .group_by(Message.chat_id)
        )
        return {chat_id: count for chat_id, count in result.all()}

    async def get_unread_count(self, user_id: int) -> int:
        """Unread messages from others across the user's ACTIVE chats."""
        result = await self.db.execute(
            select(func.count(Message.id))
            .join(Chat, Chat.id == Message.chat_id)
            .where(
                active_chats_of(user_id),
                Message.sender_id != user_id,
                Message.is_read.is_(False),
            )
        )
        return result.scalar_one()

    def build_detail(
        self,
        chat: Chat,
        user_id: int,
        users: dict[int, User],
        listings: dict[int, Listing],
    ) -> ChatDetail:
        buyer = summarize_user(users.get(chat.buyer_id), chat.buyer_id)
        vendor = summarize_user(users.get(chat.vendor_id), chat.vendor_id)
        is_user_buyer = user_id == chat.buyer_id
        return ChatDetail(
            id=chat.id,
            chat_type="product" if chat.listing_id else "vendor",
            status=chat.status,
            buyer=buyer,
            vendor=vendor,
            listing=summarize_listing(listings.get(chat.listing_id)) if chat.listing_id else None,
            other_participant=vendor if is_user_buyer else buyer,
            is_user_buyer=is_user_buyer,
            last_message_at=as_utc(chat.last_message_at),
            created_at=as_utc(chat.created_at),
            updated_at=as_utc(chat.updated_at),
        )

    # =========================================================================
    # Status
    # =========================================================================

    async def set_chat_status(self, chat_id: int, user_id: int, new_status: ChatStatus | str) -> Chat:
        """
        Change a chat's status. Participants and admins only.

        Setting the current status again is accepted and changes nothing.
        Real changes are broadcast to both participants.
        """
        try:
            new_status = ChatStatus(new_status)
        except ValueError:
            raise ValidationError("Invalid chat status", status=str(new_status)) from None

        chat = await self.db.get(Chat, chat_id)
        if chat is None:
            raise NotFoundError("Chat not found", chat_id=chat_id)
        if not chat.is_participant(user_id) and not await self._is_admin(user_id):
            raise ForbiddenError("You are not a participant in this chat", chat_id=chat_id)

        chat, _ = await self._transition(chat_id, new_status, changed_by=user_id)
        return chat

    async def archive_chats_for_listing(self, listing_id: int) -> int:
        """
        Archive every ACTIVE chat anchored to a listing.

        Called when the catalog removes or sells a listing. Blocked chats stay
        blocked. Returns the number of chats archived.
        """
        result = await self.db.execute(
            select(Chat.id).where(Chat.listing_id == listing_id, Chat.status == ChatStatus.ACTIVE)
        )
        archived = 0
        for chat_id in result.scalars().all():
            _, previous = await self._transition(
                chat_id, ChatStatus.ARCHIVED, changed_by=None, only_from=(ChatStatus.ACTIVE,)
            )
            if previous == ChatStatus.ACTIVE:
                archived += 1
        logger.info("listing_chats_archived", listing_id=listing_id, count=archived)
        return archived

    async def _transition(
        self,
        chat_id: int,
        new_status: ChatStatus,
        changed_by: Optional[int],
        only_from: Iterable[ChatStatus] = (),
    ) -> tuple[Chat, ChatStatus]:
        only_from = tuple(only_from)
        async with chat_locks.acquire(chat_id):
            async with atomic(self.db):
                chat = await self.lock_chat_row(chat_id)
                previous = chat.status
                changed = previous != new_status and (not only_from or previous in only_from)
                if changed:
                    chat.status = new_status
                    chat.updated_at = self.clock()

        if changed:
            logger.info(
                "chat_status_changed",
                chat_id=chat_id,
                status=new_status.value,
                previous_status=previous.value,
                changed_by=changed_by,
            )
            self.events.publish(ChatStatusChanged(
                chat_id=chat.id,
                buyer_id=chat.buyer_id,
                vendor_id=chat.vendor_id,
                status=new_status.value,
                previous_status=previous.value,
                changed_by=changed_by,
            ))
        return chat, previous

