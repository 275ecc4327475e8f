"""
Message and offer Pydantic schemas.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from marketchat.core.constants import MessageType, OfferDecision, OfferState
from marketchat.core.utils import as_utc
from marketchat.models.chat import Message
from marketchat.schemas.directory import UserSummary


class MessageResponse(BaseModel):
    """A chat message with the sender's display fields."""
    id: int
    chat_id: int
    sender_id: int
    sender_username: str
    sender_display_name: Optional[str] = None
    sender_avatar_url: Optional[str] = None
    message_type: MessageType
    content: Optional[str] = None
    offer_amount: Optional[Decimal] = None
    offer_expires_at: Optional[datetime] = None
    reply_to_id: Optional[int] = None
    metadata: dict[str, Any] = {}
    is_read: bool = False
    read_at: Optional[datetime] = None
    edited_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    is_deleted: bool = False
    created_at: datetime

    @classmethod
    def from_message(cls, message: Message, sender: Optional[UserSummary]) -> "MessageResponse":
        sender = sender or UserSummary.unknown(message.sender_id)
        return cls(
            id=message.id,
            chat_id=message.chat_id,
            sender_id=message.sender_id,
            sender_username=sender.username,
            sender_display_name=sender.display_name,
            sender_avatar_url=sender.avatar_url,
            message_type=message.message_type,
            content=message.content,
            offer_amount=message.offer_amount,
            offer_expires_at=as_utc(message.offer_expires_at),
            reply_to_id=message.reply_to_id,
            metadata=dict(message.details or {}),
            is_read=message.is_read,
            read_at=as_utc(message.read_at),
            edited_at=as_utc(message.edited_at),
            deleted_at=as_utc(message.deleted_at),
            is_deleted=message.is_deleted,
            created_at=as_utc(message.created_at),
        )


class SendMessageRequest(BaseModel):
    """Schema for sending a plain message."""
    message_type: MessageType = MessageType.TEXT
    content: Optional[str] = None
    offer_amount: Optional[Decimal] = None
    reply_to_id: Optional[int] = None


class EditMessageRequest(BaseModel):
    content: str


class MarkReadRequest(BaseModel):
    """Omit ``message_ids`` to mark everything from the other participant."""
    message_ids: Optional[list[int]] = None


class MarkReadResponse(BaseModel):
    updated: int


class MessageListResponse(BaseModel):
    """A page of history in chronological order."""
    messages: list[MessageResponse] = []
    has_more: bool = False
    next_before_id: Optional[int] = None


class MessageSearchResponse(BaseModel):
    query: str
    results: list[MessageResponse] = []


class OfferCreateRequest(BaseModel):
    """Schema for proposing a price."""
    amount: Decimal
    kind: MessageType = MessageType.OFFER
    notes: Optional[str] = Field(default=None, max_length=1000)
    reply_to_id: Optional[int] = None
    expires_in_hours: Optional[int] = Field(default=None, ge=0, le=24 * 30)


class OfferRespondRequest(BaseModel):
    decision: OfferDecision
    notes: Optional[str] = Field(default=None, max_length=1000)


class OfferView(BaseModel):
    """An offer message with its derived state."""
    offer: MessageResponse
    state: OfferState
    response_message_id: Optional[int] = None


class OfferResolutionResponse(BaseModel):
    """Result of accepting or rejecting an offer."""
    response_message: MessageResponse
    original_offer: MessageResponse
    action_required: Optional[str] = None
    transaction_id: Optional[str] = None
