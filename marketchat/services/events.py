"""
Typed events produced by the conversation store and message dispatcher.

Writers publish an event after their transaction commits; delivery is the
fanout's job. Every event carries both participant ids so it can be routed
without another database read.
"""
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Protocol

from marketchat.core.constants import (
    NOTIFICATION_PREVIEW_LENGTH,
    MessageType,
    NotificationKind,
)

_NOTIFICATION_KINDS = {
    MessageType.OFFER: NotificationKind.OFFER_RECEIVED,
    MessageType.COUNTER_OFFER: NotificationKind.OFFER_RECEIVED,
    MessageType.OFFER_ACCEPTED: NotificationKind.OFFER_ACCEPTED,
    MessageType.OFFER_REJECTED: NotificationKind.OFFER_REJECTED,
}


@dataclass(frozen=True)
class OfflineNotification:
    user_id: int
    kind: NotificationKind
    payload: dict[str, Any]


@dataclass(frozen=True)
class ChatEvent:
    name: ClassVar[str] = "chat_event"

    chat_id: int
    buyer_id: int
    vendor_id: int

    def participants(self) -> tuple[int, int]:
        return (self.buyer_id, self.vendor_id)

    def payload(self) -> dict[str, Any]:
        return {"chat_id": self.chat_id}

    def offline_notification(self) -> Optional[OfflineNotification]:
        """Notification for a participant who is not connected, if any."""
        return None


@dataclass(frozen=True)
class ChatCreated(ChatEvent):
    name: ClassVar[str] = "chat_created"

    initiator_id: int = 0
    chat: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {"chat_id": self.chat_id, "initiator_id": self.initiator_id, "chat": self.chat}

    def offline_notification(self) -> Optional[OfflineNotification]:
        recipient = self.vendor_id if self.initiator_id == self.buyer_id else self.buyer_id
        return OfflineNotification(
            user_id=recipient,
            kind=NotificationKind.NEW_CHAT,
            payload={"chat_id": self.chat_id, "from_user_id": self.initiator_id},
        )


@dataclass(frozen=True)
class MessageCreated(ChatEvent):
    name: ClassVar[str] = "new_message"

    sender_id: int = 0
    recipient_id: int = 0
    message_type: MessageType = MessageType.TEXT
    message: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "recipient_id": self.recipient_id,
            "message": self.message,
        }

    def offline_notification(self) -> Optional[OfflineNotification]:
        kind = _NOTIFICATION_KINDS.get(self.message_type, NotificationKind.CHAT_MESSAGE)
        return OfflineNotification(
            user_id=self.recipient_id,
            kind=kind,
            payload=build_notification_payload(self),
        )


@dataclass(frozen=True)
class MessagesRead(ChatEvent):
    name: ClassVar[str] = "messages_read"

    reader_id: int = 0
    message_ids: tuple[int, ...] = ()
    read_at: str = ""

    def payload(self) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "reader_id": self.reader_id,
            "message_ids": list(self.message_ids),
            "read_at": self.read_at,
        }


@dataclass(frozen=True)
class MessageEdited(ChatEvent):
    name: ClassVar[str] = "message_edited"

    message: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {"chat_id": self.chat_id, "message": self.message}


@dataclass(frozen=True)
class MessageDeleted(ChatEvent):
    name: ClassVar[str] = "message_deleted"

    message_id: int = 0
    deleted_by: int = 0

    def payload(self) -> dict[str, Any]:
        return {"chat_id": self.chat_id, "message_id": self.message_id, "deleted_by": self.deleted_by}


@dataclass(frozen=True)
class ChatStatusChanged(ChatEvent):
    name: ClassVar[str] = "chat_status_changed"

    status: str = ""
    previous_status: str = ""
    changed_by: Optional[int] = None

    def payload(self) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "status": self.status,
            "previous_status": self.previous_status,
            "changed_by": self.changed_by,
        }


def build_notification_payload(event: MessageCreated) -> dict[str, Any]:
    """Offline notification body for a new message. Only text is previewed."""
    message = event.message
    preview = None
    if event.message_type == MessageType.TEXT and message.get("content"):
        preview = message["content"][:NOTIFICATION_PREVIEW_LENGTH]
    return {
        "chat_id": event.chat_id,
        "message_id": message.get("id"),
        "sender_id": event.sender_id,
        "sender_name": message.get("sender_display_name") or message.get("sender_username"),
        "message_type": event.message_type.value,
        "preview": preview,
        "offer_amount": message.get("offer_amount"),
    }


class EventSink(Protocol):
    """Receives committed events. Must not block or raise."""

    def publish(self, event: ChatEvent) -> None: ...


class NullEventSink:
    def publish(self, event: ChatEvent) -> None:
        return None


class RecordingEventSink:
    """Keeps published events in memory. Used by tests and tooling."""

    def __init__(self):
        self.events: list[ChatEvent] = []

    def publish(self, event: ChatEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> list[ChatEvent]:
        return [e for e in self.events if isinstance(e, event_type)]

    def clear(self) -> None:
        self.events.clear()
