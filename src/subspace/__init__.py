"""Subspace - user authentication backend with password, Apple and Google sign-in."""

from subspace.backend import Backend
from subspace.config import Config
from subspace.exceptions import ErrorKind, SubspaceError
from subspace.models import AuthResult, RefreshToken, User
from subspace.observability import (
    LogLevel,
    RequestContext,
    StructuredLogger,
    Timer,
    configure_logging,
    emit_counter,
    emit_metric,
    emit_timer,
    get_logger,
    register_metric_callback,
)
from subspace.rate_limiting import (
    RateLimiter,
    RateLimitInfo,
    RateLimitResult,
    TokenBucketRateLimiter,
)

__version__ = "0.1.0"
__all__ = [
    # Core
    "AuthResult",
    "Backend",
    "Config",
    "ErrorKind",
    "RefreshToken",
    "SubspaceError",
    "User",
    # Observability
    "LogLevel",
    "RequestContext",
    "StructuredLogger",
    "Timer",
    "configure_logging",
    "emit_counter",
    "emit_metric",
    "emit_timer",
    "get_logger",
    "register_metric_callback",
    # Rate Limiting
    "RateLimitInfo",
    "RateLimitResult",
    "RateLimiter",
    "TokenBucketRateLimiter",
]
