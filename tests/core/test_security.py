"""Tests for JWT validation."""
from datetime import timedelta

from jose import jwt

from marketchat.core.config import settings
from marketchat.core.security import create_access_token, decode_access_token, user_id_from_token


def test_token_round_trip():
    token = create_access_token(42)

    assert user_id_from_token(token) == 42


def test_expired_token_is_rejected():
    token = create_access_token(42, expires_delta=timedelta(seconds=-5))

    assert decode_access_token(token) is None
    assert user_id_from_token(token) is None


def test_garbage_token_is_rejected():
    assert user_id_from_token("not-a-jwt") is None


def test_refresh_token_is_rejected():
    token = jwt.encode(
        {"sub": "42", "exp": 4102444800, "iat": 1700000000, "type": "refresh"},
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )

    assert user_id_from_token(token) is None


def test_non_numeric_subject_is_rejected():
    token = jwt.encode(
        {"sub": "alice", "exp": 4102444800, "iat": 1700000000, "type": "access"},
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )

    assert decode_access_token(token) is not None
    assert user_id_from_token(token) is None
