"""Structured logging configuration.

Configures structlog with JSON output in production and a coloured
console renderer in development. Every entry carries the context bound
for the current request:

- request_id: set by RequestIdMiddleware (or taken from X-Request-ID)
- user_id / feature: bound by the orchestrator for the duration of a call

Log format (production):
    {
        "timestamp": "2026-10-18T10:30:45.123456Z",
        "level": "info",
        "logger": "ai_orchestrator.model_router.orchestrator",
        "event": "orchestrator.request_served",
        "request_id": "req_3f2a...",
        "user_id": "user-123",
        "feature": "chat",
        "backend": "gpt-4o-mini",
        "cost_cents": "0.013500"
    }
"""

from __future__ import annotations

import logging
import sys
import uuid
from typing import Any

import structlog
from structlog.types import Processor

_REQUEST_ID_HEADER = b"x-request-id"


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    # litellm is chatty at INFO; its failures surface through our adapters anyway
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.RichTracebackFormatter(),
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Request ID Middleware
# ------------------------------------------------------------------ #


class RequestIdMiddleware:
    """ASGI middleware that binds a request id to the log context.

    Reuses the caller's X-Request-ID header when present so ids correlate
    across services, and echoes the id back on the response.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = self._incoming_id(scope) or f"req_{uuid.uuid4().hex[:16]}"

        clear_context()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        async def send_with_request_id(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((_REQUEST_ID_HEADER, request_id.encode()))
                message["headers"] = headers
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            clear_context()

    @staticmethod
    def _incoming_id(scope: dict[str, Any]) -> str | None:
        for name, value in scope.get("headers", []):
            if name.lower() == _REQUEST_ID_HEADER:
                decoded = value.decode("latin-1").strip()
                # Bound the length so a client cannot flood every log line
                return decoded[:64] or None
        return None


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def clear_context() -> None:
    """Clear all context variables bound for the current request."""
    structlog.contextvars.clear_contextvars()
