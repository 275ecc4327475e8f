"""
Chat Pydantic schemas.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from marketchat.core.constants import ChatStatus
from marketchat.schemas.directory import ListingSummary, UserSummary
from marketchat.schemas.message import MessageResponse


class CreateChatRequest(BaseModel):
    """
    Start (or reopen) a conversation.

    Give ``listing_id`` for a product chat (the vendor is taken from the
    listing) or ``vendor_id`` alone for a vendor-profile chat.
    """
    listing_id: Optional[int] = None
    vendor_id: Optional[int] = None
    initial_message: Optional[str] = None


class UpdateChatStatusRequest(BaseModel):
    status: ChatStatus


class ChatDetail(BaseModel):
    """A chat as seen by one of its participants."""
    id: int
    chat_type: str  # "product" or "vendor"
    status: ChatStatus
    buyer: UserSummary
    vendor: UserSummary
    listing: Optional[ListingSummary] = None
    other_participant: UserSummary
    is_user_buyer: bool
    last_message_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ChatSummary(ChatDetail):
    """Chat list entry with preview and unread badge."""
    last_message: Optional[MessageResponse] = None
    unread_count: int = 0


class ChatListResponse(BaseModel):
    chats: list[ChatSummary] = []
    page: int = 1
    limit: int = 20
    has_more: bool = False


class ChatCreateResponse(BaseModel):
    chat: ChatDetail
    is_new: bool
    initial_message: Optional[MessageResponse] = None


class UnreadCountResponse(BaseModel):
    unread_count: int = Field(default=0, ge=0)
