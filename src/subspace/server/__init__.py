"""HTTP Server module."""

from subspace.server.app import create_app
from subspace.server.middleware import (
    JWTAuthMiddleware,
    LoggingMiddleware,
    RateLimitMiddleware,
    RecoveryMiddleware,
    RequestIDMiddleware,
)
from subspace.server.routes import API_PREFIX, PUBLIC_PATHS, create_routes

__all__ = [
    "API_PREFIX",
    "JWTAuthMiddleware",
    "LoggingMiddleware",
    "PUBLIC_PATHS",
    "RateLimitMiddleware",
    "RecoveryMiddleware",
    "RequestIDMiddleware",
    "create_app",
    "create_routes",
]
