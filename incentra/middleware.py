"""HTTP middleware for the REST API: body size limit and request logging."""

from __future__ import annotations

import logging
import time

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject request bodies (document uploads included) above the configured size."""

    def __init__(self, app, max_bytes: int):
        super().__init__(app)
        self.max_bytes = max_bytes

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length is not None:
            try:
                too_large = int(content_length) > self.max_bytes
            except ValueError:
                return JSONResponse(
                    status_code=400,
                    content={"success": False, "message": "Invalid Content-Length header", "errors": {}},
                )
            if too_large:
                return JSONResponse(
                    status_code=413,
                    content={
                        "success": False,
                        "message": f"Request body too large (> {self.max_bytes} bytes)",
                        "errors": {"max_bytes": self.max_bytes},
                    },
                )
        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One INFO line per request: method, path, status and duration."""

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms
        )
        return response
