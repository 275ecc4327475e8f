"""
WebSocket API for live chat.

Clients connect to ``/ws?token=<jwt>`` (or send an ``authenticate`` action
later) and exchange JSON frames of the form ``{"action": "...", ...}``.

Every action gets exactly one reply: ``{"type": "<action>_ok", ...}`` on
success or ``{"type": "error", "code": ..., "detail": ...}`` on failure.
Chat events (new messages, reads, offers, typing, presence) are pushed
independently as they happen.

Actions:
- authenticate {"token"}
- join_chat / leave_chat {"chat_id"}
- send_message {"chat_id", "content", "message_type"?, "reply_to_id"?}
- mark_read {"chat_id", "message_ids"?}
- typing_start / typing_stop {"chat_id"}
- send_offer / counter_offer {"chat_id", "amount", "notes"?, "reply_to_id"?}
- respond_offer {"chat_id", "message_id", "decision", "notes"?}
- accept_offer / reject_offer {"chat_id", "message_id", "notes"?}
- edit_message {"message_id", "content"}
- delete_message {"message_id"}
- ping
"""
import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketchat.api.deps import get_hub, get_session_factory
from marketchat.core.constants import MessageType, OfferDecision
from marketchat.core.exceptions import AuthenticationError, ChatError, ValidationError
from marketchat.core.utils import utcnow
from marketchat.services.gateway import ChatGateway
from marketchat.services.presence import Connection
from marketchat.services.realtime import RealtimeHub

logger = structlog.get_logger()

router = APIRouter()

SessionFactory = async_sessionmaker[AsyncSession]
ActionHandler = Callable[[Connection, RealtimeHub, dict[str, Any], SessionFactory], Awaitable[dict[str, Any]]]


class WebSocketConnection:
    """A Starlette WebSocket with the id the presence registry keys on."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.id = uuid.uuid4().hex

    async def send_json(self, data: Any) -> None:
        await self.websocket.send_json(data)


# =============================================================================
# Frame helpers
# =============================================================================

def _ok(action: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"type": f"{action}_ok", "timestamp": utcnow().isoformat(), **payload}


def _error(code: str, detail: str, action: Any = None, context: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "type": "error",
        "action": action,
        "code": code,
        "detail": detail,
        "context": context or {},
        "timestamp": utcnow().isoformat(),
    }


def _require_int(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(f"{key} is required", field=key)
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{key} must be an integer", field=key) from None


def _optional_int(data: dict[str, Any], key: str) -> int | None:
    if data.get(key) is None:
        return None
    return _require_int(data, key)


@asynccontextmanager
async def _gateway(hub: RealtimeHub, session_factory: SessionFactory) -> AsyncIterator[ChatGateway]:
    """A gateway on a fresh session, one per action."""
    async with session_factory() as db:
        yield ChatGateway(db, hub)


# =============================================================================
# Actions
# =============================================================================

async def _authenticate(connection, hub, data, session_factory):
    user_id = await hub.authenticate(connection, data.get("token"))
    if user_id is None:
        raise AuthenticationError("Invalid or expired token")
    return {"user_id": user_id}


async def _join_chat(connection, hub, data, session_factory):
    chat_id = _require_int(data, "chat_id")
    async with _gateway(hub, session_factory) as gateway:
        joined = await hub.join_chat(connection, chat_id, gateway.store)
    return {"chat_id": chat_id, "joined": joined}


async def _leave_chat(connection, hub, data, session_factory):
    chat_id = _require_int(data, "chat_id")
    left = await hub.leave_chat(connection, chat_id)
    return {"chat_id": chat_id, "left": left}


async def _send_message(connection, hub, data, session_factory):
    user_id = hub.require_user(connection)
    chat_id = _require_int(data, "chat_id")
    async with _gateway(hub, session_factory) as gateway:
        message = await gateway.send_message(
            user_id,
            chat_id,
            message_type=data.get("message_type") or MessageType.TEXT,
            content=data.get("content"),
            offer_amount=data.get("offer_amount"),
            reply_to_id=_optional_int(data, "reply_to_id"),
        )
    # A message implies the sender stopped typing
    if hub.typing.stop(chat_id, user_id):
        await hub.fanout.broadcast_typing(chat_id, user_id, False)
    return {"message": message.model_dump(mode="json")}


async def _mark_read(connection, hub, data, session_factory):
    user_id = hub.require_user(connection)
    chat_id = _require_int(data, "chat_id")
    message_ids = data.get("message_ids")
    if message_ids is not None and not isinstance(message_ids, list):
        raise ValidationError("message_ids must be a list", field="message_ids")
    async with _gateway(hub, session_factory) as gateway:
        updated = await gateway.mark_read(user_id, chat_id, message_ids)
    return {"chat_id": chat_id, "updated": updated}


async def _typing_start(connection, hub, data, session_factory):
    chat_id = _require_int(data, "chat_id")
    await hub.typing_start(connection, chat_id)
    return {"chat_id": chat_id, "is_typing": True}


async def _typing_stop(connection, hub, data, session_factory):
    chat_id = _require_int(data, "chat_id")
    await hub.typing_stop(connection, chat_id)
    return {"chat_id": chat_id, "is_typing": False}


async def _offer(kind: MessageType, connection, hub, data, session_factory):
    user_id = hub.require_user(connection)
    chat_id = _require_int(data, "chat_id")
    async with _gateway(hub, session_factory) as gateway:
        message = await gateway.make_offer(
            user_id,
            chat_id,
            data.get("amount"),
            kind=kind,
            notes=data.get("notes"),
            reply_to_id=_optional_int(data, "reply_to_id"),
            expires_in_hours=_optional_int(data, "expires_in_hours"),
        )
    return {"message": message.model_dump(mode="json")}


async def _send_offer(connection, hub, data, session_factory):
    return await _offer(MessageType.OFFER, connection, hub, data, session_factory)


async def _counter_offer(connection, hub, data, session_factory):
    return await _offer(MessageType.COUNTER_OFFER, connection, hub, data, session_factory)


async def _respond(decision: Any, connection, hub, data, session_factory):
    user_id = hub.require_user(connection)
    chat_id = _require_int(data, "chat_id")
    offer_id = _require_int(data, "message_id")
    async with _gateway(hub, session_factory) as gateway:
        resolution = await gateway.respond_to_offer(
            user_id,
            chat_id,
            offer_id,
            decision,
            notes=data.get("notes"),
        )
    return resolution.model_dump(mode="json")


async def _respond_offer(connection, hub, data, session_factory):
    return await _respond(data.get("decision"), connection, hub, data, session_factory)


async def _accept_offer(connection, hub, data, session_factory):
    return await _respond(OfferDecision.ACCEPT, connection, hub, data, session_factory)


async def _reject_offer(connection, hub, data, session_factory):
    return await _respond(OfferDecision.REJECT, connection, hub, data, session_factory)


async def _edit_message(connection, hub, data, session_factory):
    user_id = hub.require_user(connection)
    message_id = _require_int(data, "message_id")
    async with _gateway(hub, session_factory) as gateway:
        message = await gateway.edit_message(user_id, message_id, data.get("content") or "")
    return {"message": message.model_dump(mode="json")}


async def _delete_message(connection, hub, data, session_factory):
    user_id = hub.require_user(connection)
    message_id = _require_int(data, "message_id")
    async with _gateway(hub, session_factory) as gateway:
        message = await gateway.delete_message(user_id, message_id)
    return {"message": message.model_dump(mode="json")}


ACTIONS: dict[str, ActionHandler] = {
    "authenticate": _authenticate,
    "join_chat": _join_chat,
    "leave_chat": _leave_chat,
    "send_message": _send_message,
    "mark_read": _mark_read,
    "typing_start": _typing_start,
    "typing_stop": _typing_stop,
    "send_offer": _send_offer,
    "counter_offer": _counter_offer,
    "respond_offer": _respond_offer,
    "accept_offer": _accept_offer,
    "reject_offer": _reject_offer,
    "edit_message": _edit_message,
    "delete_message": _delete_message,
}


async def handle_action(
    connection: Connection,
    hub: RealtimeHub,
    data: Any,
    session_factory: SessionFactory,
) -> dict[str, Any]:
    """
    Run one client action and build its reply frame.

    Chat errors become error frames; anything else propagates and closes
    the socket.
    """
    if not isinstance(data, dict):
        return _error("validation_error", "Frames must be JSON objects")

    action = data.get("action")
    if action == "ping":
        await hub.presence.touch(connection)
        return {"type": "pong", "timestamp": utcnow().isoformat()}

    handler = ACTIONS.get(action) if isinstance(action, str) else None
    if handler is None:
        return _error("unknown_action", f"Unknown action: {action}", action=action)

    await hub.presence.touch(connection)
    try:
        payload = await handler(connection, hub, data, session_factory)
    except ChatError as e:
        logger.info(
            "websocket_action_rejected",
            action=action,
            connection_id=connection.id,
            code=e.code,
            detail=e.message,
        )
        return _error(e.code, e.message, action=action, context=e.context)
    return _ok(action, payload)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str | None = Query(None),
    hub: RealtimeHub = Depends(get_hub),
    session_factory: SessionFactory = Depends(get_session_factory),
):
    """
    WebSocket endpoint for live chat.

    Authentication:
    Pass JWT token as query parameter: /ws?token=<jwt_token>
    or send {"action": "authenticate", "token": "<jwt_token>"} after connecting.
    """
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    user_id = await hub.connect(connection, token)
    await connection.send_json({
        "type": "connected",
        "connection_id": connection.id,
        "authenticated": user_id is not None,
        "user_id": user_id,
        "timestamp": utcnow().isoformat(),
    })

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await connection.send_json(_error("validation_error", "Invalid JSON"))
                continue
            await connection.send_json(await handle_action(connection, hub, data, session_factory))

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("websocket_error", connection_id=connection.id, error=str(e), exc_info=True)
    finally:
        await hub.disconnect(connection)
