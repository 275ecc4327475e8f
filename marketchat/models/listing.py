"""
Listing model (owned by the catalog service).
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy import Enum as SQLEnum, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from marketchat.core.constants import ListingStatus
from marketchat.db.base import Base


class Listing(Base):
    """A product offered by a vendor. Product chats are anchored to one."""

    __tablename__ = "listings"

    vendor_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[ListingStatus] = mapped_column(
        SQLEnum(ListingStatus, native_enum=False, length=20),
        default=ListingStatus.ACTIVE,
        nullable=False,
    )
    primary_image_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return f"<Listing {self.id} vendor={self.vendor_id} {self.status}>"
