"""HTTP middleware."""
from marketchat.middleware.request_id import RequestIdMiddleware

__all__ = ["RequestIdMiddleware"]
