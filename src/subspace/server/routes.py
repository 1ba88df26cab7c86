"""HTTP route handlers for the auth API."""

import functools
import json
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from subspace.exceptions import AuthError, SubspaceError, ValidationError
from subspace.server.middleware import error_response

if TYPE_CHECKING:
    from subspace.backend import Backend

API_PREFIX = "/api/v1"

PUBLIC_PATHS = [
    "/health",
    f"{API_PREFIX}/auth/register",
    f"{API_PREFIX}/auth/login",
    f"{API_PREFIX}/auth/apple",
    f"{API_PREFIX}/auth/google",
    f"{API_PREFIX}/auth/refresh",
    f"{API_PREFIX}/auth/logout",
]


def handle_errors(
    handler: Callable[[Request], Awaitable[Response]],
) -> Callable[[Request], Awaitable[Response]]:
    """Decorator rendering domain errors as JSON responses."""

    @functools.wraps(handler)
    async def wrapper(request: Request) -> Response:
        try:
            return await handler(request)
        except SubspaceError as e:
            return error_response(e)

    return wrapper


async def read_json(request: Request) -> dict[str, Any]:
    """Parse a JSON object body.

    Raises:
        ValidationError: If the body is not a JSON object
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("invalid JSON body") from e
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    return body


def string_field(body: dict[str, Any], name: str) -> str | None:
    """Optional string field; other JSON types are rejected."""
    value = body.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def full_name_field(body: dict[str, Any]) -> str | None:
    """Apple sends ``fullName`` as ``{givenName, familyName}`` on first sign-in."""
    value = body.get("fullName")
    if isinstance(value, dict):
        parts = [value.get("givenName"), value.get("familyName")]
        joined = " ".join(p.strip() for p in parts if isinstance(p, str) and p.strip())
        return joined or None
    if value is None or isinstance(value, str):
        return value or None
    raise ValidationError("fullName must be an object or a string")


def create_routes(backend: "Backend") -> list[Route]:
    """Create HTTP routes for the backend.

    Args:
        backend: The configured Backend instance

    Returns:
        List of Starlette routes
    """

    async def health(request: Request) -> Response:
        """Health check endpoint."""
        healthy = await backend.check_health()
        return JSONResponse(
            {
                "status": "healthy" if healthy else "degraded",
                "timestamp": time.time(),
            },
            status_code=200 if healthy else 503,
        )

    @handle_errors
    async def auth_register(request: Request) -> Response:
        """Register with name, email and password."""
        body = await read_json(request)
        result = await backend.auth.register(
            name=string_field(body, "name") or "",
            email=string_field(body, "email") or "",
            password=string_field(body, "password") or "",
        )
        return JSONResponse(result.to_dict(), status_code=201)

    @handle_errors
    async def auth_login(request: Request) -> Response:
        """Login with email and password."""
        body = await read_json(request)
        result = await backend.auth.login(
            email=string_field(body, "email") or "",
            password=string_field(body, "password") or "",
        )
        return JSONResponse(result.to_dict())

    @handle_errors
    async def auth_apple(request: Request) -> Response:
        """Sign in with Apple.

        Body:
        - identityToken: Apple identity token
        - email: Optional, used when the token carries no email
        - fullName: Optional ``{givenName, familyName}``
        """
        body = await read_json(request)
        identity_token = string_field(body, "identityToken")
        if not identity_token:
            raise ValidationError("identityToken is required")
        result = await backend.auth.oauth_sign_in(
            "apple",
            identity_token,
            email=string_field(body, "email"),
            full_name=full_name_field(body),
        )
        return JSONResponse(result.to_dict())

    @handle_errors
    async def auth_google(request: Request) -> Response:
        """Sign in with Google.

        Body:
        - idToken: Google ID token
        - email, fullName: Optional fallbacks (``name`` is accepted for fullName)
        """
        body = await read_json(request)
        id_token = string_field(body, "idToken")
        if not id_token:
            raise ValidationError("idToken is required")
        result = await backend.auth.oauth_sign_in(
            "google",
            id_token,
            email=string_field(body, "email"),
            full_name=string_field(body, "fullName") or string_field(body, "name"),
        )
        return JSONResponse(result.to_dict())

    @handle_errors
    async def auth_refresh(request: Request) -> Response:
        """Exchange a refresh token for a new token pair."""
        body = await read_json(request)
        result = await backend.auth.refresh(string_field(body, "refreshToken") or "")
        return JSONResponse(result.to_dict())

    @handle_errors
    async def auth_logout(request: Request) -> Response:
        """Revoke the presented refresh token."""
        body = await read_json(request)
        await backend.auth.logout(string_field(body, "refreshToken") or "")
        return JSONResponse({"success": True})

    @handle_errors
    async def auth_logout_all(request: Request) -> Response:
        """Revoke every refresh token of the authenticated user."""
        user_id = getattr(request.state, "user_id", None)
        if not user_id:
            raise AuthError("authentication required")
        revoked = await backend.auth.logout_all(user_id)
        return JSONResponse({"success": True, "revoked": revoked})

    @handle_errors
    async def auth_me(request: Request) -> Response:
        """Get the authenticated user's profile."""
        payload = getattr(request.state, "token", None)
        if payload is None:
            raise AuthError("authentication required")
        user = await backend.auth.current_user(payload)
        return JSONResponse(user.to_public_dict())

    return [
        # Health
        Route("/health", health, methods=["GET"]),
        # Auth
        Route(f"{API_PREFIX}/auth/register", auth_register, methods=["POST"]),
        Route(f"{API_PREFIX}/auth/login", auth_login, methods=["POST"]),
        Route(f"{API_PREFIX}/auth/apple", auth_apple, methods=["POST"]),
        Route(f"{API_PREFIX}/auth/google", auth_google, methods=["POST"]),
        Route(f"{API_PREFIX}/auth/refresh", auth_refresh, methods=["POST"]),
        Route(f"{API_PREFIX}/auth/logout", auth_logout, methods=["POST"]),
        Route(f"{API_PREFIX}/auth/logout-all", auth_logout_all, methods=["POST"]),
        Route(f"{API_PREFIX}/auth/me", auth_me, methods=["GET"]),
    ]
