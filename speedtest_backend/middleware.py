"""ASGI middleware for the request envelope: cache suppression and body limits."""

import logging

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .exceptions import PayloadTooLarge

logger = logging.getLogger("speedtest-backend")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}


class NoCacheMiddleware:
    """Adds cache suppression headers to every HTTP response.

    Headers a route already set are left alone.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_no_cache(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in NO_CACHE_HEADERS.items():
                    headers.setdefault(name, value)
            await send(message)

        await self.app(scope, receive, send_with_no_cache)


class BodySizeLimitMiddleware:
    """Caps request bodies on every path except the raw-stream ones."""

    def __init__(self, app: ASGIApp, limit: int, exempt_paths=("/api/upload",)):
        self.app = app
        self.limit = limit
        self.exempt_paths = set(exempt_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["path"] in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        declared = Headers(scope=scope).get("content-length")
        if declared is not None and declared.isdigit() and int(declared) > self.limit:
            logger.info(f"Rejecting {scope['path']}: declared body of {declared} bytes")
            response = JSONResponse({"error": PayloadTooLarge.message}, status_code=PayloadTooLarge.status_code)
            await response(scope, receive, send)
            return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.limit:
                    raise PayloadTooLarge()
            return message

        await self.app(scope, limited_receive, send)
