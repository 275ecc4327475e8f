"""
Core constants and enums for the chat and negotiation engine.
"""
from enum import Enum


class ChatStatus(str, Enum):
    """
    Lifecycle of a chat.

    ARCHIVED is reopened by the next message; BLOCKED is only left through an
    explicit status change by a participant or an admin.
    """
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"
    BLOCKED = "BLOCKED"


class MessageType(str, Enum):
    """Kinds of message a chat can hold."""
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    OFFER = "OFFER"
    COUNTER_OFFER = "COUNTER_OFFER"
    OFFER_ACCEPTED = "OFFER_ACCEPTED"
    OFFER_REJECTED = "OFFER_REJECTED"


class OfferDecision(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class OfferState(str, Enum):
    """Derived state of an offer message."""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    SUPERSEDED = "SUPERSEDED"
    EXPIRED = "EXPIRED"
    WITHDRAWN = "WITHDRAWN"


class UserRole(str, Enum):
    BUYER = "BUYER"
    VENDOR = "VENDOR"
    ADMIN = "ADMIN"


class ListingStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    SOLD = "SOLD"
    INACTIVE = "INACTIVE"
    REMOVED = "REMOVED"


class NotificationKind(str, Enum):
    """Notification kinds handed to the offline delivery sink."""
    NEW_CHAT = "NEW_CHAT"
    CHAT_MESSAGE = "CHAT_MESSAGE"
    OFFER_RECEIVED = "OFFER_RECEIVED"
    OFFER_ACCEPTED = "OFFER_ACCEPTED"
    OFFER_REJECTED = "OFFER_REJECTED"


OFFER_TYPES = frozenset({MessageType.OFFER, MessageType.COUNTER_OFFER})
RESPONSE_TYPES = frozenset({MessageType.OFFER_ACCEPTED, MessageType.OFFER_REJECTED})
CONTENT_TYPES = frozenset({MessageType.TEXT, MessageType.IMAGE})

DECISION_MESSAGE_TYPES: dict[OfferDecision, MessageType] = {
    OfferDecision.ACCEPT: MessageType.OFFER_ACCEPTED,
    OfferDecision.REJECT: MessageType.OFFER_REJECTED,
}

# Content stored in place of a deleted message's text
DELETED_MESSAGE_SENTINEL = "[Message deleted]"

# Signal returned with an accepted offer; the caller creates the transaction
ACTION_CREATE_TRANSACTION = "create_transaction"

# Characters of message text included in offline notifications
NOTIFICATION_PREVIEW_LENGTH = 100
