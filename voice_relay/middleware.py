"""HTTP middleware and the uniform error response of the relay."""
from __future__ import annotations

import logging
import time
import uuid
from typing import List

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from structlog.contextvars import bind_contextvars, unbind_contextvars

from .models import ErrorResponse
from .telemetry import reset_correlation_id, set_correlation_id

GENERIC_ERROR = "Error processing request"

logger = logging.getLogger(__name__)


def error_response(details: str) -> JSONResponse:
    payload = ErrorResponse(error=GENERIC_ERROR, details=details)
    return JSONResponse(payload.model_dump(), status_code=500)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Attach correlation identifiers and latency to responses."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        token = set_correlation_id(correlation_id)
        bind_contextvars(correlation_id=correlation_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled exception during request", extra={"path": request.url.path})
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            reset_correlation_id(token)
            unbind_contextvars("correlation_id")
            logger.info(
                "Request completed",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": round(duration_ms, 2),
                },
            )

        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Process-Time-ms"] = f"{duration_ms:.2f}"
        return response


class BodySizeLimitMiddleware:
    """Reject request bodies larger than ``max_body_bytes`` before they are parsed.

    The declared ``Content-Length`` is checked first; the streamed body is
    counted as well, since chunked uploads carry no length header. Accepted
    bodies are replayed to the application unchanged.
    """

    def __init__(self, app: ASGIApp, max_body_bytes: int) -> None:
        self.app = app
        self.max_body_bytes = max_body_bytes

    async def _reject(self, scope: Scope, receive: Receive, send: Send) -> None:
        logger.warning(
            "Rejected oversized request body",
            extra={"path": scope.get("path"), "max_body_bytes": self.max_body_bytes},
        )
        response = error_response(
            f"Request body exceeds the limit of {self.max_body_bytes} bytes"
        )
        await response(scope, receive, send)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        declared = Headers(scope=scope).get("content-length")
        if declared is not None and declared.isdigit() and int(declared) > self.max_body_bytes:
            await self._reject(scope, receive, send)
            return

        chunks: List[bytes] = []
        received = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] == "http.disconnect":
                return
            body = message.get("body", b"")
            received += len(body)
            if received > self.max_body_bytes:
                await self._reject(scope, receive, send)
                return
            chunks.append(body)
            more_body = message.get("more_body", False)

        buffered: Message = {"type": "http.request", "body": b"".join(chunks), "more_body": False}
        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if not replayed:
                replayed = True
                return buffered
            return await receive()

        await self.app(scope, replay, send)
