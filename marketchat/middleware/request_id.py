"""Request ID middleware for log correlation."""
import uuid
from typing import Callable

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag each HTTP request with an id.

    The id comes from the X-Request-ID header when a client or proxy sends
    one. It is bound into the structlog context so every log line emitted
    while handling the request (chat writes, fanout scheduling, transaction
    calls) carries it, and it is echoed back in the response headers.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
