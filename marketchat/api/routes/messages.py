"""
Message endpoints addressed by message id.
"""
from fastapi import APIRouter

from marketchat.api.deps import CurrentUser, Gateway
from marketchat.schemas.message import EditMessageRequest, MessageResponse

router = APIRouter()


@router.patch("/{message_id}", response_model=MessageResponse)
async def edit_message(
    message_id: int,
    request: EditMessageRequest,
    current_user: CurrentUser,
    gateway: Gateway,
):
    """
    Edit the text of your own message.

    Only text messages can be edited, and only shortly after sending.
    """
    return await gateway.edit_message(current_user.id, message_id, request.content)


@router.delete("/{message_id}", response_model=MessageResponse)
async def delete_message(message_id: int, current_user: CurrentUser, gateway: Gateway):
    """Soft-delete your own message. The row stays; its content is replaced."""
    return await gateway.delete_message(current_user.id, message_id)
