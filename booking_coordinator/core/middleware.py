"""Request logging middleware."""

import logging
import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = logging.getLogger(__name__)

SLOW_REQUEST_SECONDS = 1.0
WEBHOOK_PATH_MARKER = "/webhooks/"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log its outcome.

    Webhook deliveries are logged at INFO so a provider's retry history can
    be matched against ingestion log lines; rejected deliveries are logged
    at WARNING.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or f"req-{time.time_ns()}"
        request.state.request_id = request_id

        response = await call_next(request)
        elapsed = time.perf_counter() - started

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed:.3f}s"

        line = f"{request.method} {request.url.path} -> {response.status_code} ({elapsed:.3f}s) request_id={request_id}"
        if elapsed > SLOW_REQUEST_SECONDS:
            logger.warning(f"SLOW_REQUEST: {line}")
        elif WEBHOOK_PATH_MARKER in request.url.path:
            if response.status_code >= 400:
                logger.warning(f"WEBHOOK_REJECTED: {line}")
            else:
                logger.info(f"Webhook delivery {line}")
        else:
            logger.debug(line)

        return response
