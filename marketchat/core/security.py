"""
JWT access token handling.

Tokens are issued by the marketplace auth service; this service only needs to
validate them. ``create_access_token`` exists for tooling and tests.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError
import structlog

from marketchat.core.config import settings

logger = structlog.get_logger()


class TokenPayload(BaseModel):
    """Schema for JWT token payload."""

    sub: str  # user id
    exp: datetime
    iat: datetime
    type: str = "access"


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))

    payload = {
        "sub": str(user_id),
        "exp": expire,
        "iat": now,
        "type": "access",
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[TokenPayload]:
    """
    Decode and validate a JWT access token.

    Returns None when the signature, expiry or token type is invalid.
    """
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        token_data = TokenPayload(**payload)
    except (JWTError, ValidationError) as e:
        logger.warning("jwt_decode_failed", error=str(e))
        return None

    if token_data.type != "access":
        logger.warning("jwt_wrong_type", token_type=token_data.type)
        return None
    return token_data


def user_id_from_token(token: str) -> Optional[int]:
    """Resolve the user id carried by a token, or None if it is unusable."""
    payload = decode_access_token(token)
    if payload is None:
        return None
    try:
        return int(payload.sub)
    except (TypeError, ValueError):
        logger.warning("jwt_invalid_subject", sub=payload.sub)
        return None
