"""
Tests for the negotiation engine: offers, counter-offers, resolution and
the derived offer state.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from marketchat.core.config import get_settings
from marketchat.core.constants import (
    ACTION_CREATE_TRANSACTION,
    MessageType,
    NotificationKind,
    OfferDecision,
    OfferState,
)
from marketchat.core.exceptions import (
    BusinessLogicError,
    ForbiddenError,
    NegotiationLimitError,
    NotFoundError,
    OfferAlreadyResolvedError,
    OfferNotPendingError,
    ValidationError,
)
from marketchat.models import Message
from marketchat.services.conversations import ConversationStore
from marketchat.services.events import MessageCreated
from marketchat.services.negotiation import NegotiationEngine, derive_offer_state


def _states(views) -> list[tuple[Decimal, OfferState]]:
    return [(v.offer.offer_amount, v.state) for v in views]


# =============================================================================
# Making offers
# =============================================================================

@pytest.mark.asyncio
async def test_offer_records_listing_context(negotiation, events, clock, chat, buyer, vendor):
    events.clear()

    offer = await negotiation.make_offer(chat.id, buyer.id, "150", notes="Cash today")

    assert offer.message_type == MessageType.OFFER
    assert offer.offer_amount == Decimal("150")
    assert offer.content == "Cash today"
    assert offer.metadata == {"original_price": "200.00", "offer_percentage": 75.0}
    assert offer.offer_expires_at == clock.now + timedelta(hours=24)

    created = events.of_type(MessageCreated)[0]
    notification = created.offline_notification()
    assert notification.user_id == vendor.id
    assert notification.kind == NotificationKind.OFFER_RECEIVED
    # Only text messages carry a preview
    assert notification.payload["preview"] is None


@pytest.mark.asyncio
async def test_offer_without_expiry(negotiation, chat, buyer):
    offer = await negotiation.make_offer(chat.id, buyer.id, "150", expires_in_hours=0)

    assert offer.offer_expires_at is None


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, "abc", None, "NaN", True])
async def test_offer_amount_must_be_positive(negotiation, chat, buyer, amount):
    with pytest.raises(ValidationError):
        await negotiation.make_offer(chat.id, buyer.id, amount)


@pytest.mark.asyncio
async def test_offer_kind_must_be_an_offer(negotiation, chat, buyer):
    with pytest.raises(ValidationError):
        await negotiation.make_offer(chat.id, buyer.id, "10", kind=MessageType.TEXT)


@pytest.mark.asyncio
async def test_counter_offer_must_reference_an_offer(negotiation, dispatcher, chat, buyer, vendor):
    text = await dispatcher.send(chat.id, buyer.id, content="how much?")

    with pytest.raises(ValidationError):
        await negotiation.make_offer(
            chat.id, vendor.id, "180", kind=MessageType.COUNTER_OFFER, reply_to_id=text.id
        )


@pytest.mark.asyncio
async def test_outsider_cannot_offer(negotiation, chat, outsider):
    with pytest.raises(ForbiddenError):
        await negotiation.make_offer(chat.id, outsider.id, "100")


@pytest.mark.asyncio
async def test_negotiation_round_limit(db_session, events, clock, chat, buyer, vendor):
    settings = get_settings().model_copy(update={"max_negotiation_rounds": 2})
    engine = NegotiationEngine(ConversationStore(db_session, events=events, settings=settings, clock=clock).dispatcher)
    chat_id, buyer_id, vendor_id = chat.id, buyer.id, vendor.id

    first = await engine.make_offer(chat_id, buyer_id, "100")
    await engine.make_offer(chat_id, vendor_id, "190", kind=MessageType.COUNTER_OFFER, reply_to_id=first.id)

    with pytest.raises(NegotiationLimitError) as exc_info:
        await engine.make_offer(chat_id, buyer_id, "120")
    assert exc_info.value.context["max_rounds"] == 2


# =============================================================================
# Scenarios
# =============================================================================

@pytest.mark.asyncio
async def test_vendor_accepts_buyer_offer(negotiation, events, chat, buyer, vendor):
    offer = await negotiation.make_offer(chat.id, buyer.id, "150")
    events.clear()

    resolution = await negotiation.respond_to_offer(chat.id, offer.id, vendor.id, OfferDecision.ACCEPT)

    response = resolution.response_message
    assert response.message_type == MessageType.OFFER_ACCEPTED
    assert response.reply_to_id == offer.id
    assert response.sender_id == vendor.id
    assert response.metadata == {
        "original_offer_id": offer.id,
        "offer_amount": "150.00",
        "response_type": "ACCEPT",
    }
    assert resolution.action_required == ACTION_CREATE_TRANSACTION
    assert resolution.amount == Decimal("150")
    assert resolution.buyer_id == buyer.id
    assert resolution.original_offer.id == offer.id

    notification = events.of_type(MessageCreated)[0].offline_notification()
    assert notification.user_id == buyer.id
    assert notification.kind == NotificationKind.OFFER_ACCEPTED

    views = await negotiation.list_offers(chat.id, buyer.id)
    assert _states(views) == [(Decimal("150"), OfferState.ACCEPTED)]
    assert views[0].response_message_id == response.id


@pytest.mark.asyncio
async def test_counter_offer_supersedes_original(negotiation, chat, buyer, vendor):
    chat_id, buyer_id, vendor_id = chat.id, buyer.id, vendor.id
    original = await negotiation.make_offer(chat_id, buyer_id, "150")
    counter = await negotiation.make_offer(
        chat_id, vendor_id, "180", kind=MessageType.COUNTER_OFFER, reply_to_id=original.id
    )

    resolution = await negotiation.respond_to_offer(chat_id, counter.id, buyer_id, "ACCEPT")
    assert resolution.action_required == ACTION_CREATE_TRANSACTION
    assert resolution.amount == Decimal("180")

    with pytest.raises(OfferNotPendingError) as exc_info:
        await negotiation.respond_to_offer(chat_id, original.id, vendor_id, "ACCEPT")
    assert exc_info.value.context["state"] == "SUPERSEDED"

    views = await negotiation.list_offers(chat_id, buyer_id)
    assert _states(views) == [
        (Decimal("150"), OfferState.SUPERSEDED),
        (Decimal("180"), OfferState.ACCEPTED),
    ]


@pytest.mark.asyncio
async def test_vendor_counter_offer_accepted_by_buyer(store, negotiation, dispatcher, buyer, vendor, listing):
    buyer_id, vendor_id = buyer.id, vendor.id
    creation = await store.create_or_get_chat(
        buyer_id=buyer_id, listing_id=listing.id, initial_message="Would you take less?"
    )
    chat_id = creation.chat.id

    counter = await negotiation.make_offer(
        chat_id, vendor_id, Decimal("150.00"), kind=MessageType.COUNTER_OFFER
    )
    resolution = await negotiation.respond_to_offer(chat_id, counter.id, buyer_id, OfferDecision.ACCEPT)

    assert resolution.action_required == ACTION_CREATE_TRANSACTION
    assert resolution.amount == Decimal("150.00")
    history = await dispatcher.get_messages(chat_id, buyer_id)
    assert [m.message_type for m in history.messages] == [
        MessageType.TEXT,
        MessageType.COUNTER_OFFER,
        MessageType.OFFER_ACCEPTED,
    ]
    assert history.messages[2].reply_to_id == counter.id


@pytest.mark.asyncio
async def test_rejected_offer_cannot_be_accepted_later(negotiation, chat, buyer, vendor):
    chat_id, buyer_id, vendor_id = chat.id, buyer.id, vendor.id
    offer = await negotiation.make_offer(chat_id, buyer_id, "120")

    rejected = await negotiation.respond_to_offer(chat_id, offer.id, vendor_id, OfferDecision.REJECT, notes="Too low")
    assert rejected.action_required is None
    assert rejected.response_message.message_type == MessageType.OFFER_REJECTED
    assert rejected.response_message.content == "Too low"

    with pytest.raises(OfferAlreadyResolvedError) as exc_info:
        await negotiation.respond_to_offer(chat_id, offer.id, vendor_id, OfferDecision.ACCEPT)
    error = exc_info.value
    assert isinstance(error, BusinessLogicError)
    assert error.resolution == "REJECTED"
    assert error.response_message_id == rejected.response_message.id


@pytest.mark.asyncio
async def test_concurrent_responses_resolve_once(session_factory, negotiation, chat, buyer, vendor):
    chat_id, buyer_id = chat.id, buyer.id
    offer = await negotiation.make_offer(chat_id, vendor.id, "190")

    async def respond(decision):
        async with session_factory() as db:
            engine = NegotiationEngine(ConversationStore(db).dispatcher)
            return await engine.respond_to_offer(chat_id, offer.id, buyer_id, decision)

    results = await asyncio.gather(
        respond(OfferDecision.ACCEPT),
        respond(OfferDecision.REJECT),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], OfferAlreadyResolvedError)
    assert failures[0].response_message_id == successes[0].response_message.id

    async with session_factory() as db:
        views = await NegotiationEngine(ConversationStore(db).dispatcher).list_offers(chat_id, buyer_id)
    assert views[0].state in (OfferState.ACCEPTED, OfferState.REJECTED)


# =============================================================================
# Resolution guards
# =============================================================================

@pytest.mark.asyncio
async def test_cannot_respond_to_own_offer(negotiation, chat, buyer):
    chat_id, buyer_id = chat.id, buyer.id
    offer = await negotiation.make_offer(chat_id, buyer_id, "150")

    with pytest.raises(ForbiddenError):
        await negotiation.respond_to_offer(chat_id, offer.id, buyer_id, OfferDecision.ACCEPT)


@pytest.mark.asyncio
async def test_outsider_cannot_respond(negotiation, chat, buyer, outsider):
    offer = await negotiation.make_offer(chat.id, buyer.id, "150")

    with pytest.raises(ForbiddenError):
        await negotiation.respond_to_offer(chat.id, offer.id, outsider.id, OfferDecision.ACCEPT)


@pytest.mark.asyncio
async def test_invalid_decision(negotiation, chat, buyer, vendor):
    offer = await negotiation.make_offer(chat.id, buyer.id, "150")

    with pytest.raises(ValidationError):
        await negotiation.respond_to_offer(chat.id, offer.id, vendor.id, "MAYBE")


@pytest.mark.asyncio
async def test_respond_to_non_offer(negotiation, dispatcher, chat, buyer, vendor):
    chat_id, vendor_id = chat.id, vendor.id
    text = await dispatcher.send(chat_id, buyer.id, content="hello")

    with pytest.raises(NotFoundError):
        await negotiation.respond_to_offer(chat_id, text.id, vendor_id, OfferDecision.ACCEPT)


@pytest.mark.asyncio
async def test_expired_offer(negotiation, clock, chat, buyer, vendor):
    chat_id, buyer_id, vendor_id = chat.id, buyer.id, vendor.id
    offer = await negotiation.make_offer(chat_id, buyer_id, "150", expires_in_hours=1)
    clock.advance(hours=2)

    with pytest.raises(OfferNotPendingError) as exc_info:
        await negotiation.respond_to_offer(chat_id, offer.id, vendor_id, OfferDecision.ACCEPT)
    assert exc_info.value.context["state"] == "EXPIRED"

    views = await negotiation.list_offers(chat_id, buyer_id)
    assert views[0].state == OfferState.EXPIRED


@pytest.mark.asyncio
async def test_withdrawn_offer(negotiation, dispatcher, chat, buyer, vendor):
    chat_id, buyer_id, vendor_id = chat.id, buyer.id, vendor.id
    offer = await negotiation.make_offer(chat_id, buyer_id, "150")
    await dispatcher.soft_delete(offer.id, buyer_id)

    with pytest.raises(OfferNotPendingError) as exc_info:
        await negotiation.respond_to_offer(chat_id, offer.id, vendor_id, OfferDecision.ACCEPT)
    assert exc_info.value.context["state"] == "WITHDRAWN"


# =============================================================================
# Derived state
# =============================================================================

def _message(message_id: int, message_type: MessageType, reply_to_id=None, **kwargs) -> Message:
    return Message(id=message_id, chat_id=1, sender_id=1, message_type=message_type, reply_to_id=reply_to_id, **kwargs)


def test_first_response_wins(clock):
    offer = _message(1, MessageType.OFFER, offer_expires_at=clock.now - timedelta(hours=1))
    later = [
        _message(2, MessageType.OFFER_REJECTED, reply_to_id=1),
        _message(3, MessageType.OFFER_ACCEPTED, reply_to_id=1),
    ]

    state, response = derive_offer_state(offer, later, clock.now)

    # Resolution outranks expiry
    assert state == OfferState.REJECTED
    assert response.id == 2


def test_response_to_another_offer_does_not_resolve(clock):
    offer = _message(1, MessageType.OFFER)
    later = [_message(2, MessageType.OFFER_ACCEPTED, reply_to_id=99)]

    assert derive_offer_state(offer, later, clock.now) == (OfferState.PENDING, None)


def test_expiry_boundary_is_inclusive(clock):
    offer = _message(1, MessageType.OFFER, offer_expires_at=clock.now)

    assert derive_offer_state(offer, [], clock.now)[0] == OfferState.EXPIRED
    assert derive_offer_state(offer, [], clock.now - timedelta(seconds=1))[0] == OfferState.PENDING


def test_newer_offer_supersedes(clock):
    offer = _message(1, MessageType.OFFER)
    later = [_message(2, MessageType.TEXT), _message(3, MessageType.OFFER)]

    assert derive_offer_state(offer, later, clock.now)[0] == OfferState.SUPERSEDED
