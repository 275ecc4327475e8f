"""Tests for the presence registry."""
import pytest

from marketchat.core.exceptions import AuthenticationError, ForbiddenError
from marketchat.core.security import create_access_token
from marketchat.services.presence import PresenceRegistry


@pytest.fixture
def presence(clock) -> PresenceRegistry:
    return PresenceRegistry(clock=clock)


@pytest.mark.asyncio
async def test_authenticate_binds_user(presence, make_connection):
    conn = make_connection()
    await presence.register(conn)

    user_id = await presence.authenticate(conn, create_access_token(7))

    assert user_id == 7
    assert presence.user_for(conn) == 7
    assert presence.is_online(7)
    assert presence.online_users() == {7}


@pytest.mark.asyncio
@pytest.mark.parametrize("token", [None, "", "garbage"])
async def test_bad_token_leaves_connection_anonymous(presence, make_connection, token):
    conn = make_connection()
    await presence.register(conn)

    assert await presence.authenticate(conn, token) is None
    assert presence.user_for(conn) is None
    assert presence.online_users() == set()
    assert presence.stats()["connections"] == 1


@pytest.mark.asyncio
async def test_connection_cannot_switch_user(presence, make_connection):
    conn = make_connection()
    await presence.bind_user(conn, 1)

    # Re-binding the same user is fine
    assert await presence.bind_user(conn, 1) is False
    with pytest.raises(AuthenticationError):
        await presence.bind_user(conn, 2)


@pytest.mark.asyncio
async def test_multiple_connections_per_user(presence, make_connection):
    phone, laptop = make_connection(), make_connection()

    assert await presence.bind_user(phone, 1) is True
    assert await presence.bind_user(laptop, 1) is False
    assert {c.id for c in presence.connections_for_user(1)} == {phone.id, laptop.id}

    first = await presence.disconnect(phone)
    assert not first.went_offline
    assert presence.is_online(1)

    last = await presence.disconnect(laptop)
    assert last.went_offline
    assert last.user_id == 1
    assert not presence.is_online(1)


@pytest.mark.asyncio
async def test_join_requires_authentication(presence, store, make_connection, chat):
    conn = make_connection()
    await presence.register(conn)

    with pytest.raises(AuthenticationError):
        await presence.join(conn, chat.id, store)


@pytest.mark.asyncio
async def test_join_checks_membership(presence, store, make_connection, chat, outsider):
    conn = make_connection()
    await presence.bind_user(conn, outsider.id)

    with pytest.raises(ForbiddenError):
        await presence.join(conn, chat.id, store)
    assert presence.chats_for(conn) == set()


@pytest.mark.asyncio
async def test_join_leave_and_disconnect(presence, store, make_connection, chat, buyer):
    conn = make_connection()
    await presence.bind_user(conn, buyer.id)

    assert await presence.join(conn, chat.id, store) is True
    assert await presence.join(conn, chat.id, store) is False
    assert presence.users_in_chat(chat.id) == {buyer.id}
    assert presence.stats()["active_chats"] == 1

    assert await presence.leave(conn, chat.id) is True
    assert await presence.leave(conn, chat.id) is False
    assert presence.connections_for_chat(chat.id) == []

    await presence.join(conn, chat.id, store)
    change = await presence.disconnect(conn)
    assert change.chat_ids == {chat.id}
    assert presence.stats() == {
        "connections": 0,
        "authenticated_connections": 0,
        "online_users": 0,
        "active_chats": 0,
    }


@pytest.mark.asyncio
async def test_touch_updates_last_activity(presence, clock, make_connection):
    conn = make_connection()
    await presence.bind_user(conn, 3)
    clock.advance(minutes=5)

    await presence.touch(conn)

    assert presence.last_activity[3] == clock.now
