"""
Chat and message models.

A chat is one buyer/vendor negotiation thread, optionally anchored to a
listing. Messages are append-only: edits rewrite content in place and
deletes replace it with a sentinel, rows are never removed. Offers are
messages too; their state is derived from later messages referencing them.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from marketchat.core.constants import ChatStatus, MessageType
from marketchat.db.base import Base


class Chat(Base):
    """
    A negotiation thread between a buyer and a vendor.

    At most one chat exists per (listing, buyer, vendor); archived chats are
    reactivated rather than duplicated.
    """

    __tablename__ = "chats"
    __table_args__ = (
        UniqueConstraint("listing_id", "buyer_id", "vendor_id", name="uq_chats_listing_participants"),
        # NULL listing ids never collide in the constraint above
        Index(
            "uq_chats_vendor_profile_pair",
            "buyer_id",
            "vendor_id",
            unique=True,
            postgresql_where=text("listing_id IS NULL"),
            sqlite_where=text("listing_id IS NULL"),
        ),
        CheckConstraint("buyer_id <> vendor_id", name="ck_chats_distinct_participants"),
        Index("ix_chats_buyer_updated", "buyer_id", "updated_at"),
        Index("ix_chats_vendor_updated", "vendor_id", "updated_at"),
    )

    buyer_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    vendor_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    listing_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("listings.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    status: Mapped[ChatStatus] = mapped_column(
        SQLEnum(ChatStatus, native_enum=False, length=20),
        default=ChatStatus.ACTIVE,
        nullable=False,
    )
    last_message_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def participant_ids(self) -> tuple[int, int]:
        return (self.buyer_id, self.vendor_id)

    def is_participant(self, user_id: int) -> bool:
        return user_id in (self.buyer_id, self.vendor_id)

    def counterpart(self, user_id: int) -> int:
        """The participant who is not ``user_id``."""
        return self.vendor_id if user_id == self.buyer_id else self.buyer_id

    def __repr__(self) -> str:
        return f"<Chat {self.id} buyer={self.buyer_id} vendor={self.vendor_id} {self.status}>"


class Message(Base):
    """A single event inside a chat."""

    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("ix_chat_messages_chat_created", "chat_id", "created_at"),
        Index("ix_chat_messages_reply_to", "reply_to_id"),
    )

    chat_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("chats.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    message_type: Mapped[MessageType] = mapped_column(
        SQLEnum(MessageType, native_enum=False, length=20),
        default=MessageType.TEXT,
        nullable=False,
    )
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Offer fields, set only for OFFER / COUNTER_OFFER
    offer_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    offer_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    edited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    reply_to_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("chat_messages.id", ondelete="SET NULL"),
        nullable=True,
    )
    # "metadata" is reserved on declarative classes
    details: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self) -> str:
        return f"<Message {self.id} chat={self.chat_id} {self.message_type}>"
