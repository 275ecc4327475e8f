"""
Typed errors raised by the chat core.

The core never formats transport responses. The HTTP layer maps each class to
a status code and the WebSocket layer maps it to an error frame, both keyed by
``code`` so clients can react to specific conditions.
"""
from typing import Any


class ChatError(Exception):
    """Base exception for chat and negotiation errors."""

    code = "chat_error"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code, "context": self.context}


class ValidationError(ChatError):
    """Malformed or missing input."""

    code = "validation_error"
    status_code = 400


class AuthenticationError(ChatError):
    """Missing or invalid credentials."""

    code = "unauthenticated"
    status_code = 401


class ForbiddenError(ChatError):
    """Authenticated, but not a participant or lacking the required role."""

    code = "forbidden"
    status_code = 403


class NotFoundError(ChatError):
    """Chat, message or offer does not exist."""

    code = "not_found"
    status_code = 404


class BusinessLogicError(ChatError):
    """Valid input that violates a domain rule."""

    code = "business_rule_violation"
    status_code = 409


class ChatBlockedError(BusinessLogicError):
    code = "chat_blocked"


class EditWindowExpiredError(BusinessLogicError):
    code = "edit_window_expired"


class NegotiationLimitError(BusinessLogicError):
    code = "negotiation_limit_reached"


class OfferNotPendingError(BusinessLogicError):
    """Offer is expired, superseded or withdrawn."""

    code = "offer_not_pending"


class OfferAlreadyResolvedError(BusinessLogicError):
    """
    The offer already has an accept or reject response.

    Carries the winning resolution so clients can show
    "this offer was already accepted/rejected" without another round trip.
    """

    code = "offer_already_resolved"

    def __init__(self, message: str, *, offer_id: int, resolution: str, response_message_id: int):
        super().__init__(
            message,
            offer_id=offer_id,
            resolution=resolution,
            response_message_id=response_message_id,
        )
        self.offer_id = offer_id
        self.resolution = resolution
        self.response_message_id = response_message_id
