"""
Participant and listing summaries shown alongside chats and messages.
"""
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from marketchat.core.constants import ListingStatus, UserRole


class UserSummary(BaseModel):
    """Public view of a chat participant."""
    id: int
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: UserRole = UserRole.BUYER

    class Config:
        from_attributes = True

    @classmethod
    def unknown(cls, user_id: int) -> "UserSummary":
        """Placeholder for an account the directory no longer knows about."""
        return cls(id=user_id, username="Unknown")


class ListingSummary(BaseModel):
    """Listing context displayed in a product chat header."""
    id: int
    vendor_id: int
    title: str
    price: Decimal
    status: ListingStatus
    primary_image_url: Optional[str] = None

    class Config:
        from_attributes = True
