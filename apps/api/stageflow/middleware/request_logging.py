from __future__ import annotations

import logging
import time

from starlette.requests import HTTPConnection
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from stageflow.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("stageflow.request")

_QUIET_PATHS = {"/health", "/health/ready", "/metrics"}


class RequestLoggingMiddleware:
    """Logs one line per HTTP request and one per websocket session.

    Websocket sessions are long-lived change-feed relays, so they are logged
    when they end, with the close code in ``status_code``.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            await self._handle_http(scope, receive, send)
        elif scope["type"] == "websocket":
            await self._handle_websocket(scope, receive, send)
        else:
            await self.app(scope, receive, send)

    async def _handle_http(self, scope: Scope, receive: Receive, send: Send) -> None:
        method = scope["method"]
        status_code = 500
        started = time.perf_counter()

        async def send_with_status(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_with_status)
        except Exception:
            path = resolve_http_path_label(HTTPConnection(scope))
            duration = time.perf_counter() - started
            observe_http_request(method=method, path=path, status=500, duration=duration)
            logger.error(
                "http.error",
                exc_info=True,
                extra={"method": method, "path": path, "status_code": 500, "duration_ms": round(duration * 1000, 2)},
            )
            raise

        path = resolve_http_path_label(HTTPConnection(scope))
        duration = time.perf_counter() - started
        observe_http_request(method=method, path=path, status=status_code, duration=duration)
        logger.log(
            logging.DEBUG if path in _QUIET_PATHS else logging.INFO,
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round(duration * 1000, 2),
            },
        )

    async def _handle_websocket(self, scope: Scope, receive: Receive, send: Send) -> None:
        close_code: int | None = None
        started = time.perf_counter()

        async def send_with_close(message: Message) -> None:
            nonlocal close_code
            if message["type"] == "websocket.close":
                close_code = message.get("code", 1000)
            await send(message)

        try:
            await self.app(scope, receive, send_with_close)
        finally:
            logger.info(
                "ws.session",
                extra={
                    "method": "WS",
                    "path": resolve_http_path_label(HTTPConnection(scope)),
                    "status_code": close_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
