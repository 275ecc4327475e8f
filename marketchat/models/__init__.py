"""
SQLAlchemy models.

``users`` and ``listings`` belong to the marketplace's account and catalog
services; they are mapped here read-only so chats can reference them.
"""
from marketchat.models.user import User
from marketchat.models.listing import Listing
from marketchat.models.chat import Chat, Message

__all__ = ["User", "Listing", "Chat", "Message"]
