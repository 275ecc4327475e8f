"""
Chat API endpoints.

Conversations between a buyer and a vendor, their message history, and the
price negotiation that happens inside them.
"""
from typing import Optional

import structlog
from fastapi import APIRouter, Query, Response

from marketchat.api.deps import AdminUser, CurrentUser, Gateway
from marketchat.core.constants import ChatStatus
from marketchat.schemas.chat import (
    ChatCreateResponse,
    ChatDetail,
    ChatListResponse,
    CreateChatRequest,
    UnreadCountResponse,
    UpdateChatStatusRequest,
)
from marketchat.schemas.message import (
    MarkReadRequest,
    MarkReadResponse,
    MessageListResponse,
    MessageResponse,
    MessageSearchResponse,
    OfferCreateRequest,
    OfferRespondRequest,
    OfferResolutionResponse,
    OfferView,
    SendMessageRequest,
)

router = APIRouter()
logger = structlog.get_logger(__name__)


# =============================================================================
# Chats
# =============================================================================

@router.post("", response_model=ChatCreateResponse, status_code=201)
async def create_chat(
    request: CreateChatRequest,
    response: Response,
    current_user: CurrentUser,
    gateway: Gateway,
):
    """
    Start a chat about a listing or with a vendor.

    Returns the existing chat (200) when one already exists for the same
    buyer, vendor and listing; archived chats are reopened.
    """
    result = await gateway.create_chat(
        current_user.id,
        listing_id=request.listing_id,
        vendor_id=request.vendor_id,
        initial_message=request.initial_message,
    )
    if not result.is_new:
        response.status_code = 200
    return result


@router.get("", response_model=ChatListResponse)
async def list_chats(
    current_user: CurrentUser,
    gateway: Gateway,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[ChatStatus] = Query(None, description="Filter by chat status"),
):
    """List the user's chats, most recently active first."""
    return await gateway.list_chats(current_user.id, page=page, limit=limit, status=status)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(current_user: CurrentUser, gateway: Gateway):
    """Unread messages across all active chats."""
    return UnreadCountResponse(unread_count=await gateway.unread_count(current_user.id))


@router.get("/search", response_model=MessageSearchResponse)
async def search_messages(
    current_user: CurrentUser,
    gateway: Gateway,
    q: str = Query(..., min_length=1, max_length=200),
    limit: int = Query(20, ge=1, le=100),
    chat_id: Optional[int] = Query(None),
):
    return await gateway.search_messages(current_user.id, q, limit=limit, chat_id=chat_id)


@router.post("/listings/{listing_id}/archive")
async def archive_listing_chats(listing_id: int, admin: AdminUser, gateway: Gateway):
    """
    Archive every active chat about a listing.

    Used when a listing is sold or removed. Admin only.
    """
    archived = await gateway.archive_listing_chats(listing_id)
    logger.info("admin_archived_listing_chats", listing_id=listing_id, archived=archived, admin_id=admin.id)
    return {"listing_id": listing_id, "archived": archived}


@router.get("/{chat_id}", response_model=ChatDetail)
async def get_chat(chat_id: int, current_user: CurrentUser, gateway: Gateway):
    return await gateway.get_chat(current_user.id, chat_id)


@router.patch("/{chat_id}/status", response_model=ChatDetail)
async def update_chat_status(
    chat_id: int,
    request: UpdateChatStatusRequest,
    current_user: CurrentUser,
    gateway: Gateway,
):
    """Archive, block or reactivate a chat."""
    return await gateway.set_chat_status(current_user.id, chat_id, request.status)


# =============================================================================
# Messages
# =============================================================================

@router.get("/{chat_id}/messages", response_model=MessageListResponse)
async def get_messages(
    chat_id: int,
    current_user: CurrentUser,
    gateway: Gateway,
    limit: int = Query(50, ge=1, le=100),
    before_id: Optional[int] = Query(None, description="Return messages older than this one"),
):
    """
    Message history, oldest first.

    Page backwards by passing ``next_before_id`` from the previous response.
    """
    return await gateway.get_messages(current_user.id, chat_id, limit=limit, before_message_id=before_id)


@router.post("/{chat_id}/messages", response_model=MessageResponse, status_code=201)
async def send_message(
    chat_id: int,
    request: SendMessageRequest,
    current_user: CurrentUser,
    gateway: Gateway,
):
    return await gateway.send_message(
        current_user.id,
        chat_id,
        message_type=request.message_type,
        content=request.content,
        offer_amount=request.offer_amount,
        reply_to_id=request.reply_to_id,
    )


@router.post("/{chat_id}/read", response_model=MarkReadResponse)
async def mark_read(
    chat_id: int,
    current_user: CurrentUser,
    gateway: Gateway,
    request: Optional[MarkReadRequest] = None,
):
    """Mark messages from the other participant as read."""
    message_ids = request.message_ids if request else None
    updated = await gateway.mark_read(current_user.id, chat_id, message_ids)
    return MarkReadResponse(updated=updated)


# =============================================================================
# Offers
# =============================================================================

@router.get("/{chat_id}/offers", response_model=list[OfferView])
async def list_offers(chat_id: int, current_user: CurrentUser, gateway: Gateway):
    """Every offer in the chat with its current state."""
    return await gateway.list_offers(current_user.id, chat_id)


@router.post("/{chat_id}/offers", response_model=MessageResponse, status_code=201)
async def make_offer(
    chat_id: int,
    request: OfferCreateRequest,
    current_user: CurrentUser,
    gateway: Gateway,
):
    return await gateway.make_offer(
        current_user.id,
        chat_id,
        request.amount,
        kind=request.kind,
        notes=request.notes,
        reply_to_id=request.reply_to_id,
        expires_in_hours=request.expires_in_hours,
    )


@router.post("/{chat_id}/offers/{offer_id}/respond", response_model=OfferResolutionResponse)
async def respond_to_offer(
    chat_id: int,
    offer_id: int,
    request: OfferRespondRequest,
    current_user: CurrentUser,
    gateway: Gateway,
):
    """
    Accept or reject a pending offer.

    An offer can be resolved once. Accepting returns
    ``action_required="create_transaction"`` and, when the transaction
    service answered, its ``transaction_id``.
    """
    return await gateway.respond_to_offer(
        current_user.id,
        chat_id,
        offer_id,
        request.decision,
        notes=request.notes,
    )
