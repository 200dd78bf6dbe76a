"""FastAPI middleware for request/response logging and correlation."""

import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from iap_reconciler.logging_config import bind_context, clear_context, get_logger, shorten_token

logger = get_logger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with a correlation ID.

    - Generates a request_id per request and binds it to all logs
    - Logs method, path and (optionally) client details
    - Logs status code and duration
    - Returns the request_id in the X-Request-ID header
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        """Initialize middleware.

        Args:
            app: ASGI application
            include_request_details: If True, log client host and user agent
        """
        super().__init__(app)
        self.include_request_details = include_request_details

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        bind_context(request_id=request_id)

        if self.include_request_details:
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
                query_params=str(request.query_params) if request.query_params else None,
                client_host=request.client.host if request.client else "unknown",
                user_agent=request.headers.get("user-agent"),
            )
        else:
            logger.info("request_started", method=request.method, path=request.url.path)

        start_time = time.time()

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000

            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as exc:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 2),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        finally:
            clear_context()


def _segment_after(path: str, marker: str) -> Optional[str]:
    parts = path.split("/")
    if marker not in parts:
        return None
    index = parts.index(marker)
    if index + 1 < len(parts) and parts[index + 1]:
        return parts[index + 1]
    return None


class ContextMiddleware(BaseHTTPMiddleware):
    """Binds business context found in the path to the logging context.

    - entitlement key (``/entitlements/{key}``)
    - product_id (``/products/{product_id}``)
    - token (``/purchases/{token}``, truncated)
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path

        key = _segment_after(path, "entitlements")
        if key:
            bind_context(entitlement_key=key)

        product_id = _segment_after(path, "products")
        if product_id:
            bind_context(product_id=product_id)

        token = _segment_after(path, "purchases")
        if token:
            bind_context(token=shorten_token(token))

        return await call_next(request)
