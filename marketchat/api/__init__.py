"""
API module for FastAPI routes.
"""
from fastapi import APIRouter

from marketchat.api.routes import chats, health, messages, websocket

api_router = APIRouter()

api_router.include_router(health.router, tags=["Health"])
api_router.include_router(chats.router, prefix="/chats", tags=["Chats"])
api_router.include_router(messages.router, prefix="/messages", tags=["Messages"])
api_router.include_router(websocket.router, tags=["WebSocket"])
