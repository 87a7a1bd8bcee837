"""Structured logging configuration.

Configures structlog with JSON output in production and a rich console
renderer in development, plus request tracking.

Features:
- JSON-formatted logs in production (human-readable in dev)
- Request ID propagation through middleware
- Tenant ID and user ID in all log entries
- ISO8601 timestamps with timezone
- Stack traces for exceptions

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "warning",
        "event": "deletion.request_created",
        "request_id": "req_789...",
        "tenant_id": "tenant_uuid",
        "user_id": "user_uuid",
        "request_id_db": "deletion_request_uuid"
    }

Personal data never goes into log entries: ids, counts and statuses only.
"""

from __future__ import annotations

import logging
import sys
import uuid
from typing import Any

import structlog
from structlog.types import Processor


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
    """Pure ASGI middleware that generates and propagates request IDs.

    The id is bound into structlog's context variables for the lifetime of
    the request and echoed back in the ``x-request-id`` response header.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = f"req_{uuid.uuid4().hex[:16]}"

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        async def send_with_request_id(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode()))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_with_request_id)


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_tenant_context(tenant_id: str | uuid.UUID) -> None:
    """Bind tenant ID to log context for this request."""
    structlog.contextvars.bind_contextvars(tenant_id=str(tenant_id))


def bind_user_context(user_id: str | uuid.UUID) -> None:
    """Bind user ID to log context for this request."""
    structlog.contextvars.bind_contextvars(user_id=str(user_id))


def bind_job_context(task_id: str, task_type: str) -> None:
    """Bind background task identity to logs for one job attempt."""
    structlog.contextvars.bind_contextvars(task_id=task_id, task_type=task_type)


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
