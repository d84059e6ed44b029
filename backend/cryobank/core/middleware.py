"""Middleware: request ID injection, caller deadlines."""

import asyncio
import logging
import uuid

from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from cryobank.core.error_handlers import deadline_exceeded_response

logger = logging.getLogger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add a unique X-Request-ID header to every request/response."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class DeadlineMiddleware:
    """Cancel handlers that outlive the caller's deadline.

    The deadline comes from ``X-Request-Timeout`` (seconds) and is capped
    by ``max_timeout``; without the header ``max_timeout`` applies. Plain
    ASGI so the handler task itself is cancelled on timeout.
    """

    def __init__(self, app: ASGIApp, *, max_timeout: float) -> None:
        self.app = app
        self.max_timeout = max_timeout

    def _timeout_for(self, scope: Scope) -> float:
        raw = Headers(scope=scope).get("X-Request-Timeout")
        if raw is None:
            return self.max_timeout
        try:
            requested = float(raw)
        except ValueError:
            return self.max_timeout
        if requested <= 0:
            return self.max_timeout
        return min(requested, self.max_timeout)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        timeout = self._timeout_for(scope)
        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await asyncio.wait_for(self.app(scope, receive, send_wrapper), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Deadline of %gs exceeded on %s %s",
                timeout,
                scope.get("method"),
                scope.get("path"),
            )
            # A response already on the wire cannot be replaced.
            if response_started:
                raise
            response = deadline_exceeded_response(timeout)
            await response(scope, receive, send)
