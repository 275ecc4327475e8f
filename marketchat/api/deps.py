"""
API dependencies for authentication, sessions and the chat gateway.
"""
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketchat.core.security import user_id_from_token
from marketchat.db.session import async_session_maker, get_db
from marketchat.models.user import User
from marketchat.services.gateway import ChatGateway
from marketchat.services.realtime import RealtimeHub, get_realtime_hub

# Security scheme for JWT bearer tokens
security = HTTPBearer(auto_error=False)


async def get_current_user(
    db: Annotated[AsyncSession, Depends(get_db)],
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> User:
    """
    Get the current authenticated user from the JWT token.

    Raises HTTPException 401 if token is invalid or user not found.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = user_id_from_token(credentials.credentials)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is disabled",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def get_current_admin_user(
    current_user: Annotated[User, Depends(get_current_user)],
) -> User:
    """
    Get the current user and verify they are an admin.

    Raises HTTPException 403 if user is not an admin.
    """
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions",
        )
    return current_user


def get_hub() -> RealtimeHub:
    return get_realtime_hub()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for handlers that open one session per unit of work."""
    return async_session_maker


async def get_gateway(
    db: Annotated[AsyncSession, Depends(get_db)],
    hub: Annotated[RealtimeHub, Depends(get_hub)],
) -> ChatGateway:
    return ChatGateway(db, hub)


# Type aliases for cleaner dependency injection
CurrentUser = Annotated[User, Depends(get_current_user)]
AdminUser = Annotated[User, Depends(get_current_admin_user)]
Gateway = Annotated[ChatGateway, Depends(get_gateway)]
Hub = Annotated[RealtimeHub, Depends(get_hub)]
