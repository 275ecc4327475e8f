"""
Chat gateway: the single entry point used by both HTTP handlers and the
WebSocket action loop.

A gateway is bound to one database session. It wires the conversation store,
message dispatcher and negotiation engine to the process-wide realtime hub,
and invokes the transaction trigger when an accepted offer asks for it.
"""
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from marketchat.core.constants import OFFER_TYPES, ChatStatus, MessageType, OfferDecision
from marketchat.core.utils import utcnow
from marketchat.schemas.chat import (
    ChatCreateResponse,
    ChatDetail,
    ChatListResponse,
)
from marketchat.schemas.message import (
    MessageListResponse,
    MessageResponse,
    MessageSearchResponse,
    OfferResolutionResponse,
    OfferView,
)
from marketchat.services.conversations import ConversationStore
from marketchat.services.directory import ListingCatalog, UserDirectory
from marketchat.services.negotiation import NegotiationEngine, OfferResolution
from marketchat.services.realtime import RealtimeHub
from marketchat.services.transactions import TransactionTriggerError

logger = structlog.get_logger()


class ChatGateway:
    def __init__(
        self,
        db: AsyncSession,
        hub: RealtimeHub,
        users: Optional[UserDirectory] = None,
        listings: Optional[ListingCatalog] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.hub = hub
        self.store = ConversationStore(
            db,
            users=users,
            listings=listings,
            events=hub.events,
            settings=hub.settings,
            clock=clock,
        )
        self.dispatcher = self.store.dispatcher
        self.negotiation = NegotiationEngine(self.dispatcher)

    # =========================================================================
    # Chats
    # =========================================================================

    async def create_chat(
        self,
        user_id: int,
        listing_id: Optional[int] = None,
        vendor_id: Optional[int] = None,
        initial_message: Optional[str] = None,
    ) -> ChatCreateResponse:
        creation = await self.store.create_or_get_chat(
            buyer_id=user_id,
            vendor_id=vendor_id,
            listing_id=listing_id,
            initial_message=initial_message,
        )
        return ChatCreateResponse(
            chat=await self.store.get_chat_detail(creation.chat.id, user_id),
            is_new=creation.is_new,
            initial_message=creation.initial_message,
        )

    async def list_chats(
        self,
        user_id: int,
        page: int = 1,
        limit: Optional[int] = None,
        status: Optional[ChatStatus] = None,
    ) -> ChatListResponse:
        return await self.store.list_chats_for_user(user_id, page=page, limit=limit, status=status)

    async def get_chat(self, user_id: int, chat_id: int) -> ChatDetail:
        return await self.store.get_chat_detail(chat_id, user_id)

    async def set_chat_status(self, user_id: int, chat_id: int, status: ChatStatus | str) -> ChatDetail:
        chat = await self.store.set_chat_status(chat_id, user_id, status)
        users = await self.store.users.get_users(chat.participant_ids)
        listings = await self.store.listings.get_listings([chat.listing_id] if chat.listing_id else [])
        return self.store.build_detail(chat, user_id, users, listings)

    async def unread_count(self, user_id: int) -> int:
        return await self.store.get_unread_count(user_id)

    async def archive_listing_chats(self, listing_id: int) -> int:
        return await self.store.archive_chats_for_listing(listing_id)

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_message(
        self,
        user_id: int,
        chat_id: int,
        message_type: MessageType | str = MessageType.TEXT,
        content: Optional[str] = None,
        offer_amount: Any = None,
        reply_to_id: Optional[int] = None,
    ) -> MessageResponse:
        """Send any user-authored message; offers go through the negotiation engine."""
        if message_type in OFFER_TYPES:
            return await self.negotiation.make_offer(
                chat_id,
                user_id,
                offer_amount,
                kind=message_type,
                notes=content,
                reply_to_id=reply_to_id,
            )
        return await self.dispatcher.send(
            chat_id,
            user_id,
            message_type,
            content=content,
            offer_amount=offer_amount,
            reply_to_id=reply_to_id,
        )

    async def get_messages(
        self,
        user_id: int,
        chat_id: int,
        limit: Optional[int] = None,
        before_message_id: Optional[int] = None,
    ) -> MessageListResponse:
        return await self.dispatcher.get_messages(
            chat_id, user_id, limit=limit, before_message_id=before_message_id
        )

    async def mark_read(self, user_id: int, chat_id: int, message_ids: Optional[Iterable[int]] = None) -> int:
        return await self.dispatcher.mark_read(chat_id, user_id, message_ids)

    async def edit_message(self, user_id: int, message_id: int, content: str) -> MessageResponse:
        return await self.dispatcher.edit(message_id, user_id, content)

    async def delete_message(self, user_id: int, message_id: int) -> MessageResponse:
        return await self.dispatcher.soft_delete(message_id, user_id)

    async def search_messages(
        self,
        user_id: int,
        query: str,
        limit: Optional[int] = None,
        chat_id: Optional[int] = None,
    ) -> MessageSearchResponse:
        return await self.dispatcher.search(user_id, query, limit=limit, chat_id=chat_id)

    # =========================================================================
    # Offers
    # =========================================================================

    async def make_offer(
        self,
        user_id: int,
        chat_id: int,
        amount: Any,
        kind: MessageType | str = MessageType.OFFER,
        notes: Optional[str] = None,
        reply_to_id: Optional[int] = None,
        expires_in_hours: Optional[int] = None,
    ) -> MessageResponse:
        return await self.negotiation.make_offer(
            chat_id,
            user_id,
            amount,
            kind=kind,
            notes=notes,
            reply_to_id=reply_to_id,
            expires_in_hours=expires_in_hours,
        )

    async def list_offers(self, user_id: int, chat_id: int) -> list[OfferView]:
        return await self.negotiation.list_offers(chat_id, user_id)

    async def respond_to_offer(
        self,
        user_id: int,
        chat_id: int,
        offer_id: int,
        decision: OfferDecision | str,
        notes: Optional[str] = None,
    ) -> OfferResolutionResponse:
        """
        Accept or reject an offer, then ask the transaction service for a
        transaction when the engine signals one. A failing transaction service
        leaves ``transaction_id`` empty; the response itself is already stored.
        """
        resolution = await self.negotiation.respond_to_offer(chat_id, offer_id, user_id, decision, notes)
        transaction_id = None
        if resolution.action_required:
            transaction_id = await self._trigger_transaction(resolution)
        return OfferResolutionResponse(
            response_message=resolution.response_message,
            original_offer=resolution.original_offer,
            action_required=resolution.action_required,
            transaction_id=transaction_id,
        )

    async def _trigger_transaction(self, resolution: OfferResolution) -> Optional[str]:
        try:
            return await self.hub.transactions.on_offer_accepted(
                chat_id=resolution.chat_id,
                offer_id=resolution.original_offer.id,
                amount=resolution.amount,
                buyer_id=resolution.buyer_id,
                vendor_id=resolution.vendor_id,
            )
        except TransactionTriggerError as e:
            logger.warning(
                "transaction_trigger_deferred",
                chat_id=resolution.chat_id,
                offer_id=resolution.original_offer.id,
                error=str(e),
            )
            return None
