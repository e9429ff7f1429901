import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from storefront.core.logging_config import request_id_ctx_var

logger = logging.getLogger("storefront.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = (request.headers.get("X-Request-ID") or "").strip()[:64] or str(uuid.uuid4())
        token = request_id_ctx_var.set(request_id)
        start = time.perf_counter()
        request.state.request_id = request_id
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = int((time.perf_counter() - start) * 1000)
            fields = {"path": request.url.path, "method": request.method, "duration_ms": duration_ms}
            if response is not None:
                response.headers["X-Request-ID"] = request_id
                logger.info("request", extra={**fields, "status_code": response.status_code})
            else:
                logger.error("request_failed", extra={**fields, "status_code": 500})
            request_id_ctx_var.reset(token)
