"""
SQLAlchemy Base class for all models.
"""
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from marketchat.core.utils import utcnow


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    # Timestamps are set client side so ordering keeps sub-second precision
    # on every backend and refreshed values never need a lazy reload.
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary."""
        return {c.key: getattr(self, c.key) for c in self.__mapper__.column_attrs}
