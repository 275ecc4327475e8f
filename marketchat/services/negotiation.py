"""
Negotiation engine: offers, counter-offers and their resolution.

Offers are ordinary OFFER / COUNTER_OFFER messages. Their state is derived
from the messages that follow them in the same chat:

- the first OFFER_ACCEPTED / OFFER_REJECTED replying to the offer resolves it;
- a deleted offer is withdrawn;
- an offer past its expiry time is expired;
- any newer offer or counter-offer in the chat supersedes it;
- otherwise it is pending.

Resolution scans for an existing response and inserts a new one while holding
the chat lock and the chat row lock, so two concurrent accepts can never both
succeed.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Optional, Sequence

import structlog
from sqlalchemy import func, select

from marketchat.core.constants import (
    ACTION_CREATE_TRANSACTION,
    DECISION_MESSAGE_TYPES,
    OFFER_TYPES,
    RESPONSE_TYPES,
    MessageType,
    OfferDecision,
    OfferState,
)
from marketchat.core.exceptions import (
    ForbiddenError,
    NegotiationLimitError,
    NotFoundError,
    OfferAlreadyResolvedError,
    OfferNotPendingError,
    ValidationError,
)
from marketchat.core.locks import chat_locks
from marketchat.core.utils import as_utc
from marketchat.db.transaction import atomic
from marketchat.models.chat import Chat, Message
from marketchat.schemas.message import MessageResponse, OfferView
from marketchat.services.messages import MessageDispatcher

logger = structlog.get_logger()

_RESOLVED_STATES = {
    MessageType.OFFER_ACCEPTED: OfferState.ACCEPTED,
    MessageType.OFFER_REJECTED: OfferState.REJECTED,
}


@dataclass
class OfferResolution:
    """Outcome of accepting or rejecting an offer."""
    response_message: MessageResponse
    original_offer: MessageResponse
    decision: OfferDecision
    action_required: Optional[str]
    chat_id: int
    buyer_id: int
    vendor_id: int
    amount: Decimal


def derive_offer_state(
    offer: Message,
    later_messages: Sequence[Message],
    now: datetime,
) -> tuple[OfferState, Optional[Message]]:
    """
    Compute an offer's state from the chat messages that follow it.

    ``later_messages`` must be in chat order. Returns the state and, for
    resolved offers, the response message that resolved it.
    """
    for message in later_messages:
        if message.message_type in RESPONSE_TYPES and message.reply_to_id == offer.id:
            return _RESOLVED_STATES[message.message_type], message

    if offer.deleted_at is not None:
        return OfferState.WITHDRAWN, None
    expires_at = as_utc(offer.offer_expires_at)
    if expires_at is not None and now >= expires_at:
        return OfferState.EXPIRED, None
    if any(m.message_type in OFFER_TYPES and m.id > offer.id for m in later_messages):
        return OfferState.SUPERSEDED, None
    return OfferState.PENDING, None


class NegotiationEngine:
    """Offer protocol layered on the message dispatcher."""

    def __init__(self, dispatcher: MessageDispatcher, clock: Optional[Callable[[], datetime]] = None):
        self.dispatcher = dispatcher
        self.store = dispatcher.store
        self.db = dispatcher.db
        self.settings = dispatcher.settings
        self.clock = clock or dispatcher.clock

    # =========================================================================
    # Offers
    # =========================================================================

    async def make_offer(
        self,
        chat_id: int,
        sender_id: int,
        amount: Any,
        kind: MessageType | str = MessageType.OFFER,
        notes: Optional[str] = None,
        reply_to_id: Optional[int] = None,
        expires_in_hours: Optional[int] = None,
    ) -> MessageResponse:
        """
        Propose a price in a chat.

        A counter-offer may reference the offer it answers through
        ``reply_to_id``. The offer records the listing price and the
        percentage it represents when the chat is about a listing.
        """
        try:
            kind = MessageType(kind)
        except ValueError:
            raise ValidationError("Unknown offer kind", kind=str(kind)) from None
        if kind not in OFFER_TYPES:
            raise ValidationError("Offer kind must be OFFER or COUNTER_OFFER", kind=kind.value)
        kind, notes, amount = self.dispatcher.validate_payload(kind, notes, amount)

        chat = await self.store.get_chat(chat_id, sender_id)
        if reply_to_id is not None:
            target = await self.dispatcher.get_chat_message(chat_id, reply_to_id)
            if target.message_type not in OFFER_TYPES:
                raise ValidationError("Counter-offers must reference an offer", reply_to_id=reply_to_id)

        details = await self._offer_details(chat, amount)
        hours = self.settings.offer_expiry_hours if expires_in_hours is None else expires_in_hours
        if hours < 0:
            raise ValidationError("expires_in_hours cannot be negative")

        async with chat_locks.acquire(chat_id):
            async with atomic(self.db):
                await self._check_round_limit(chat_id)
                now = self.clock()
                chat, message, previous_status = await self.dispatcher.insert_locked(
                    chat_id,
                    sender_id,
                    kind,
                    content=notes,
                    offer_amount=amount,
                    reply_to_id=reply_to_id,
                    details=details,
                    offer_expires_at=now + timedelta(hours=hours) if hours else None,
                )

        logger.info(
            "offer_made",
            chat_id=chat_id,
            message_id=message.id,
            sender_id=sender_id,
            kind=kind.value,
            amount=str(amount),
        )
        return await self.dispatcher.announce(chat, message, previous_status)

    async def _offer_details(self, chat: Chat, amount: Decimal) -> dict[str, Any]:
        if chat.listing_id is None:
            return {}
        listing = await self.store.listings.get_listing(chat.listing_id)
        if listing is None or not listing.price:
            return {}
        percentage = (amount / Decimal(listing.price) * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        return {
            "original_price": str(listing.price),
            "offer_percentage": float(percentage),
        }

    async def _check_round_limit(self, chat_id: int) -> None:
        limit = self.settings.max_negotiation_rounds
        if not limit:
            return
        result = await self.db.execute(
            select(func.count(Message.id)).where(
                Message.chat_id == chat_id,
                Message.message_type.in_(list(OFFER_TYPES)),
            )
        )
        if result.scalar_one() >= limit:
            raise NegotiationLimitError(
                "Maximum number of offers reached for this chat",
                chat_id=chat_id,
                max_rounds=limit,
            )

    # =========================================================================
    # Resolution
    # =========================================================================

    async def respond_to_offer(
        self,
        chat_id: int,
        offer_message_id: int,
        responder_id: int,
        decision: OfferDecision | str,
        notes: Optional[str] = None,
    ) -> OfferResolution:
        """
        Accept or reject an offer made by the other participant.

        Raises:
            NotFoundError: the id is not an offer in this chat.
            OfferAlreadyResolvedError: the offer already has a response.
            ForbiddenError: the responder made the offer, or is not a participant.
            OfferNotPendingError: the offer expired, was superseded or withdrawn.
        """
        try:
            decision = OfferDecision(decision)
        except ValueError:
            raise ValidationError("Decision must be ACCEPT or REJECT", decision=str(decision)) from None
        if notes is not None and not isinstance(notes, str):
            raise ValidationError("notes must be a string", field="notes")
        notes = notes.strip() if notes else None
        if notes and len(notes) > self.settings.message_max_length:
            raise ValidationError("Notes are too long", max_length=self.settings.message_max_length)

        await self.store.get_chat(chat_id, responder_id)

        async with chat_locks.acquire(chat_id):
            async with atomic(self.db):
                await self.store.lock_chat_row(chat_id)
                offer = await self._load_offer(chat_id, offer_message_id)
                later = await self._offer_activity_after(offer)
                state, response = derive_offer_state(offer, later, self.clock())

                if response is not None:
                    raise OfferAlreadyResolvedError(
                        f"This offer was already {state.value.lower()}",
                        offer_id=offer.id,
                        resolution=state.value,
                        response_message_id=response.id,
                    )
                if offer.sender_id == responder_id:
                    raise ForbiddenError("You cannot respond to your own offer", offer_id=offer.id)
                if state != OfferState.PENDING:
                    raise OfferNotPendingError(
                        f"This offer is {state.value.lower()}",
                        offer_id=offer.id,
                        state=state.value,
                    )

                chat, message, previous_status = await self.dispatcher.insert_locked(
                    chat_id,
                    responder_id,
                    DECISION_MESSAGE_TYPES[decision],
                    content=notes,
                    reply_to_id=offer.id,
                    details={
                        "original_offer_id": offer.id,
                        "offer_amount": str(offer.offer_amount),
                        "response_type": decision.value,
                    },
                )

        logger.info(
            "offer_resolved",
            chat_id=chat_id,
            offer_id=offer.id,
            responder_id=responder_id,
            decision=decision.value,
            amount=str(offer.offer_amount),
        )
        response_message = await self.dispatcher.announce(chat, message, previous_status)
        original = (await self.dispatcher.build_responses([offer]))[0]
        return OfferResolution(
            response_message=response_message,
            original_offer=original,
            decision=decision,
            action_required=ACTION_CREATE_TRANSACTION if decision == OfferDecision.ACCEPT else None,
            chat_id=chat.id,
            buyer_id=chat.buyer_id,
            vendor_id=chat.vendor_id,
            amount=offer.offer_amount,
        )

    async def _load_offer(self, chat_id: int, offer_message_id: int) -> Message:
        result = await self.db.execute(
            select(Message)
            .where(Message.id == offer_message_id, Message.chat_id == chat_id)
            .execution_options(populate_existing=True)
        )
        offer = result.scalar_one_or_none()
        if offer is None or offer.message_type not in OFFER_TYPES:
            raise NotFoundError("Offer not found in this chat", chat_id=chat_id, offer_id=offer_message_id)
        return offer

    async def _offer_activity_after(self, offer: Message) -> list[Message]:
        result = await self.db.execute(
            select(Message)
            .where(
                Message.chat_id == offer.chat_id,
                Message.id > offer.id,
                Message.message_type.in_(list(OFFER_TYPES | RESPONSE_TYPES)),
            )
            .order_by(Message.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars())

    # =========================================================================
    # Views
    # =========================================================================

    async def list_offers(self, chat_id: int, user_id: int) -> list[OfferView]:
        """Every offer in the chat with its derived state, oldest first."""
        await self.store.get_chat(chat_id, user_id)
        result = await self.db.execute(
            select(Message)
            .where(
                Message.chat_id == chat_id,
                Message.message_type.in_(list(OFFER_TYPES | RESPONSE_TYPES)),
            )
            .order_by(Message.id)
        )
        rows = list(result.scalars())
        offers = [m for m in rows if m.message_type in OFFER_TYPES]
        responses = await self.dispatcher.build_responses(offers)

        now = self.clock()
        views = []
        for offer, rendered in zip(offers, responses):
            state, response = derive_offer_state(offer, [m for m in rows if m.id > offer.id], now)
            views.append(OfferView(
                offer=rendered,
                state=state,
                response_message_id=response.id if response else None,
            ))
        return views
