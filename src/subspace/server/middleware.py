"""HTTP middleware stack: request IDs, logging, recovery, rate limiting, auth."""

import math
import uuid
from typing import Any, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from subspace.auth.manager import AuthManager
from subspace.exceptions import AuthError, ErrorKind, SubspaceError
from subspace.observability import (
    RequestContext,
    Timer,
    emit_counter,
    emit_timer,
    get_logger,
    user_id_var,
)
from subspace.rate_limiting import RateLimiter

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def error_response(error: SubspaceError) -> JSONResponse:
    """Render a domain error as ``{"error", "message"}`` with its status."""
    return JSONResponse(error.to_dict(), status_code=error.status_code)


def client_ip(request: Request) -> str:
    """Client address, preferring the first ``X-Forwarded-For`` hop."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagates or issues a request ID and binds it to the log context."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Any],
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        with RequestContext(request_id=request_id):
            response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs one line per request with status and duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Any],
    ) -> Response:
        with Timer() as timer:
            response = await call_next(request)

        context = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "client_ip": client_ip(request),
        }
        if response.status_code >= 500:
            logger.error("Request failed", context=context, duration_ms=timer.duration_ms)
        else:
            logger.info("Request completed", context=context, duration_ms=timer.duration_ms)
        emit_timer("http.request.duration", timer.duration_ms, {"status": response.status_code})
        return response


class RecoveryMiddleware(BaseHTTPMiddleware):
    """Turns unhandled exceptions into a generic 500 response.

    The exception is logged with its traceback; the client only sees
    ``internal_error``.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Any],
    ) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(
                "Unhandled exception",
                context={"method": request.method, "path": request.url.path},
                error=e,
            )
            emit_counter("http.panic_recovered")
            return JSONResponse(
                {"error": ErrorKind.INTERNAL.value, "message": "Internal server error"},
                status_code=500,
            )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP rate limiting.

    For multi-instance deployments, use a distributed rate limiter.
    """

    def __init__(
        self,
        app: Any,
        limiter: RateLimiter,
    ) -> None:
        """Initialize rate limit middleware.

        Args:
            app: The ASGI application
            limiter: Rate limiter keyed by client IP
        """
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Any],
    ) -> Response:
        ip = client_ip(request)
        info = await self.limiter.check(ip)
        if not info.is_allowed:
            emit_counter("http.rate_limited")
            logger.warning("Rate limit exceeded", context={"client_ip": ip})
            return JSONResponse(
                {"error": "rate_limit_exceeded", "message": "Rate limit exceeded. Try again later."},
                status_code=429,
                headers={"Retry-After": str(max(1, math.ceil(info.retry_after or 1)))},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(info.limit)
        response.headers["X-RateLimit-Remaining"] = str(info.remaining)
        return response


class JWTAuthMiddleware(BaseHTTPMiddleware):
    """Validates Bearer access tokens on non-public paths.

    Sets ``request.state.user_id``, ``email``, ``claims`` and the decoded
    ``token`` payload for downstream handlers.
    """

    def __init__(
        self,
        app: Any,
        auth_manager: AuthManager,
        public_paths: list[str] | None = None,
    ) -> None:
        """Initialize authentication middleware.

        Args:
            app: The ASGI application
            auth_manager: Authentication manager
            public_paths: Paths that don't require authentication
        """
        super().__init__(app)
        self.auth_manager = auth_manager
        self.public_paths = set(public_paths or ["/health"])

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Any],
    ) -> Response:
        if request.method == "OPTIONS" or request.url.path in self.public_paths:
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return error_response(AuthError("missing or invalid authorization header"))

        try:
            payload = self.auth_manager.authenticate(token.strip())
        except SubspaceError as e:
            emit_counter("auth.token.rejected", {"error": e.kind.value})
            return error_response(e)

        request.state.user_id = payload.user_id
        request.state.email = payload.email
        request.state.claims = payload.raw
        request.state.token = payload
        token_var = user_id_var.set(payload.user_id)
        try:
            return await call_next(request)
        finally:
            user_id_var.reset(token_var)
