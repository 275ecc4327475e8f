"""
Lookups into the account and catalog services.

The chat core only needs read access to users and listings. The SQL-backed
implementations read the shared tables directly; anything satisfying the
protocols can be swapped in.
"""
from typing import Iterable, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketchat.models.listing import Listing
from marketchat.models.user import User
from marketchat.schemas.directory import ListingSummary, UserSummary


class UserDirectory(Protocol):
    async def get_user(self, user_id: int) -> Optional[User]: ...

    async def get_users(self, user_ids: Iterable[int]) -> dict[int, User]: ...


class ListingCatalog(Protocol):
    async def get_listing(self, listing_id: int) -> Optional[Listing]: ...

    async def get_listings(self, listing_ids: Iterable[int]) -> dict[int, Listing]: ...


class SqlUserDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def get_users(self, user_ids: Iterable[int]) -> dict[int, User]:
        ids = set(user_ids)
        if not ids:
            return {}
        result = await self.db.execute(select(User).where(User.id.in_(ids)))
        return {user.id: user for user in result.scalars()}


class SqlListingCatalog:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_listing(self, listing_id: int) -> Optional[Listing]:
        return await self.db.get(Listing, listing_id)

    async def get_listings(self, listing_ids: Iterable[int]) -> dict[int, Listing]:
        ids = set(listing_ids)
        if not ids:
            return {}
        result = await self.db.execute(select(Listing).where(Listing.id.in_(ids)))
        return {listing.id: listing for listing in result.scalars()}


def summarize_user(user: Optional[User], user_id: int) -> UserSummary:
    if user is None:
        return UserSummary.unknown(user_id)
    return UserSummary.model_validate(user)


def summarize_listing(listing: Optional[Listing]) -> Optional[ListingSummary]:
    if listing is None:
        return None
    return ListingSummary.model_validate(listing)
