"""HTTP middleware stack for the MedLink hub.

Requests are tagged with a request id, timed, and logged with the client
address taken from the first ``X-Forwarded-For`` hop. Paths routinely contain
IC numbers; ``ICMaskingFilter`` on the log handler redacts them.
"""

import logging
import os
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from medlink.api.security import (
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
    get_client_ip,
    get_rate_limit_config,
)

logger = logging.getLogger(__name__)

GENERIC_ERROR = {"detail": "An unexpected error occurred"}


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request and its outcome with timing and request context."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Time the request and attach X-Request-ID and X-Process-Time headers.

        Parameters:
            request: Incoming HTTP request
            call_next: Next middleware or route handler

        Returns:
            Response: HTTP response, or a generic 500 when the handler raised
        """
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        context = {
            "request_id": request_id,
            "client_ip": get_client_ip(request),
            "endpoint": request.url.path,
        }
        started = time.perf_counter()
        logger.info(f"{request.method} {request.url.path}", extra=context)

        try:
            response = await call_next(request)
        except Exception as e:
            elapsed = time.perf_counter() - started
            logger.error(
                f"{request.method} {request.url.path} failed after {elapsed:.3f}s: {type(e).__name__}",
                extra=context,
                exc_info=True,
            )
            response = JSONResponse(status_code=500, content=GENERIC_ERROR)
            response.headers["X-Request-ID"] = request_id
            return response

        elapsed = time.perf_counter() - started
        response.headers["X-Process-Time"] = f"{elapsed:.3f}"
        response.headers["X-Request-ID"] = request_id
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} in {elapsed:.3f}s",
            extra=context,
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Last-resort handler for errors the registered exception handlers did not map."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except ValueError as e:
            logger.warning(f"Rejected request to {request.url.path}: {e}")
            return JSONResponse(status_code=400, content={"detail": str(e)})
        except Exception as e:
            # Internal details stay in the log, never in the body
            logger.error(f"Unhandled {type(e).__name__} on {request.url.path}", exc_info=True)
            return JSONResponse(status_code=500, content=GENERIC_ERROR)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def setup_middleware(app) -> None:
    """Install the middleware stack on ``app``.

    Starlette runs the last-added middleware outermost, so a request passes
    through logging, error handling, rate limiting and finally the security
    headers layer before reaching a route.

    Parameters:
        app: FastAPI application instance
    """
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=_env_flag("MEDLINK_ENABLE_HSTS"))
    app.add_middleware(
        RateLimitMiddleware,
        default_limit=int(os.getenv("MEDLINK_RATE_LIMIT_DEFAULT", "100")),
        default_window=int(os.getenv("MEDLINK_RATE_LIMIT_WINDOW", "60")),
        per_endpoint_limits=get_rate_limit_config(),
    )
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(LoggingMiddleware)
