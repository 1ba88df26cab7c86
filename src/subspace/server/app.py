"""ASGI application for standalone deployment."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware

from subspace.rate_limiting import TokenBucketRateLimiter
from subspace.server.middleware import (
    JWTAuthMiddleware,
    LoggingMiddleware,
    RateLimitMiddleware,
    RecoveryMiddleware,
    RequestIDMiddleware,
)
from subspace.server.routes import PUBLIC_PATHS, create_routes

if TYPE_CHECKING:
    from subspace.backend import Backend


def create_app(backend: "Backend") -> Starlette:
    """Create the ASGI application.

    The application lifespan starts and closes the backend.

    Args:
        backend: The configured Backend instance

    Returns:
        Starlette application
    """

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await backend.start()
        try:
            yield
        finally:
            await backend.close()

    config = backend.config

    # Middleware stack, outermost first:
    # CORS -> RequestID -> Logging -> Recovery -> RateLimit -> Auth -> Route handler
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=config.server.cors_origins or ["*"],
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
            expose_headers=["X-Request-ID"],
        ),
        Middleware(RequestIDMiddleware),
        Middleware(LoggingMiddleware),
        Middleware(RecoveryMiddleware),
    ]
    if config.rate_limit.enabled:
        middleware.append(
            Middleware(
                RateLimitMiddleware,
                limiter=TokenBucketRateLimiter.per_minute(
                    config.rate_limit.requests_per_minute,
                    burst=config.rate_limit.burst,
                ),
            )
        )
    middleware.append(
        Middleware(
            JWTAuthMiddleware,
            auth_manager=backend.auth,
            public_paths=PUBLIC_PATHS,
        )
    )

    return Starlette(
        routes=create_routes(backend),
        middleware=middleware,
        lifespan=lifespan,
    )
