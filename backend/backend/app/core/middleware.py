from __future__ import annotations

import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.logger import get_logger
from app.core.request_context import set_request_id

log = get_logger("http")


def _get_request_id(request: Request) -> str:
    rid = request.headers.get("X-Request-Id") or request.headers.get("X-Request-ID")
    if rid:
        return rid
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Propagates X-Request-Id into the audit trail and logs every request."""

    async def dispatch(self, request: Request, call_next):
        request_id = _get_request_id(request)
        set_request_id(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            log.exception(
                "Unhandled exception in %s %s",
                request.method,
                request.url.path,
                extra={"request_id": request_id},
            )
            raise
        finally:
            set_request_id(None)

        response.headers["X-Request-Id"] = request_id
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        log.info(
            "%s %s -> %s (%sms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={"request_id": request_id},
        )
        return response
