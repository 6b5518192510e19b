"""Security middleware for the federation API.

This module provides rate limiting and security headers.

Security Impact:
    - Rate limiting prevents abuse, in particular of unauthenticated emergency access
    - Security headers protect against common vulnerabilities
"""

import logging
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Callable, Deque, Dict, Optional, Tuple

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

UNLIMITED_PATHS = ("/api/health", "/api/docs", "/api/redoc", "/api/openapi.json", "/")
SWEEP_INTERVAL_SECONDS = 300


def get_client_ip(request: Request) -> str:
    """Client address, honouring the first X-Forwarded-For hop."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window rate limiter keyed by client address and endpoint prefix.

    State lives in memory and belongs to the middleware instance, so each
    application built by ``create_app`` starts with empty windows.

    Security Impact:
        - Anonymous emergency access is limited to one lookup per client per minute
        - Patient record queries are bounded per client
    """

    def __init__(
        self,
        app,
        default_limit: int = 100,
        default_window: int = 60,
        per_endpoint_limits: Optional[Dict[str, Tuple[int, int]]] = None
    ):
        """Initialize rate limiter.

        Parameters:
            app: ASGI application
            default_limit: Requests allowed per window for unlisted paths
            default_window: Window length in seconds for unlisted paths
            per_endpoint_limits: Path prefix to (limit, window seconds)
        """
        super().__init__(app)
        self.default_limit = default_limit
        self.default_window = default_window
        # Longest prefix first so "/central/query" wins over "/central"
        self.per_endpoint_limits = dict(
            sorted((per_endpoint_limits or {}).items(), key=lambda item: -len(item[0]))
        )

        self._windows: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)
        self._lock = Lock()
        self._next_sweep = time.monotonic() + SWEEP_INTERVAL_SECONDS

    def _endpoint_key(self, path: str) -> str:
        return next((prefix for prefix in self.per_endpoint_limits if path.startswith(prefix)), "default")

    def _limits_for(self, endpoint_key: str) -> Tuple[int, int]:
        return self.per_endpoint_limits.get(endpoint_key, (self.default_limit, self.default_window))

    def _sweep(self, now: float) -> None:
        """Forget clients whose newest request is older than any window."""
        if now < self._next_sweep:
            return
        horizon = max([self.default_window, *(w for _, w in self.per_endpoint_limits.values())])
        for key in [k for k, stamps in self._windows.items() if not stamps or stamps[-1] < now - horizon]:
            del self._windows[key]
        self._next_sweep = now + SWEEP_INTERVAL_SECONDS

    def _admit(self, client_id: str, endpoint_key: str) -> Tuple[bool, int, int]:
        """Record the request if it fits the window.

        Returns:
            Tuple of (allowed, remaining, seconds until the window frees a slot)
        """
        limit, window = self._limits_for(endpoint_key)
        now = time.monotonic()

        with self._lock:
            self._sweep(now)
            stamps = self._windows[(client_id, endpoint_key)]
            while stamps and stamps[0] <= now - window:
                stamps.popleft()

            if len(stamps) >= limit:
                return False, 0, max(int(window - (now - stamps[0])), 1)

            stamps.append(now)
            return True, limit - len(stamps), window

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in UNLIMITED_PATHS:
            return await call_next(request)

        client_id = get_client_ip(request)
        endpoint_key = self._endpoint_key(path)
        limit, _ = self._limits_for(endpoint_key)
        allowed, remaining, reset_after = self._admit(client_id, endpoint_key)

        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(int(time.time()) + reset_after),
        }

        if not allowed:
            logger.warning(f"Rate limit exceeded for {client_id} on {endpoint_key}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Rate limit exceeded. Please try again later."},
                headers={**headers, "Retry-After": str(reset_after)},
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Referrer-Policy": "no-referrer",
    # Patient data must never sit in a shared cache
    "Cache-Control": "no-store",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=(), payment=(), usb=()",
}
HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds the hardening headers to every response; HSTS only when enabled."""

    def __init__(self, app, enable_hsts: bool = False):
        super().__init__(app)
        self.headers = dict(SECURITY_HEADERS)
        if enable_hsts:
            self.headers["Strict-Transport-Security"] = HSTS_VALUE

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers.update(self.headers)
        return response


def get_rate_limit_config() -> Dict[str, Tuple[int, int]]:
    """Rate limits per endpoint prefix as (limit, window seconds)."""
    return {
        "/emergency": (1, 60),  # one emergency lookup per client per minute
        "/central/query": (30, 60),
        "/central/medication-check": (30, 60),
        "/central/audit-logs": (30, 60),
    }
