"""Access token encoding and validation with HMAC-signed JWTs."""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import jwt

from subspace.config import HMAC_ALGORITHMS
from subspace.exceptions import (
    ConfigError,
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
)
from subspace.models import Clock, utcnow

ACCESS_TOKEN_TYPE = "access"


@dataclass
class TokenPayload:
    """Decoded access token payload."""

    user_id: str
    email: str | None
    issued_at: int
    expires_at: int
    token_type: str
    raw: dict[str, Any]  # Full payload for custom claims


class AccessTokenCodec:
    """Issues and validates short-lived access tokens.

    Tokens are self-contained: validation needs only the shared secret and
    the current time, never storage.
    """

    def __init__(
        self,
        secret: str,
        ttl: timedelta,
        algorithm: str = "HS256",
        clock: Clock = utcnow,
    ) -> None:
        """Initialize the codec.

        Args:
            secret: Shared HMAC secret
            ttl: Lifetime of issued tokens
            algorithm: One of HS256, HS384, HS512
            clock: Source of the current time

        Raises:
            ConfigError: If the algorithm is not an HMAC algorithm
        """
        if algorithm not in HMAC_ALGORITHMS:
            raise ConfigError(f"Unsupported access token algorithm: {algorithm}")
        if not secret:
            raise ConfigError("Access token secret must not be empty")
        self._secret = secret
        self.ttl = ttl
        self.algorithm = algorithm
        self._clock = clock

    @property
    def expires_in(self) -> int:
        """Token lifetime in seconds."""
        return int(self.ttl.total_seconds())

    def issue(self, user_id: str, email: str | None = None) -> str:
        """Create a signed access token.

        Args:
            user_id: Subject of the token
            email: Optional email claim

        Returns:
            Encoded JWT
        """
        now = int(self._clock().timestamp())
        payload: dict[str, Any] = {
            "sub": user_id,
            "iat": now,
            "nbf": now,
            "exp": now + self.expires_in,
            "type": ACCESS_TOKEN_TYPE,
        }
        if email:
            payload["email"] = email

        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def validate(self, token: str) -> TokenPayload:
        """Decode and validate an access token.

        Time claims are checked against the injected clock rather than
        PyJWT's wall clock. Only the configured algorithm is accepted.

        Raises:
            TokenMalformedError: Undecodable token, missing claims, wrong type
                or a ``nbf`` in the future
            TokenSignatureError: Bad signature or unexpected algorithm
            TokenExpiredError: If ``now >= exp``
        """
        if not token:
            raise TokenMalformedError("Missing token")

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "require": ["sub", "exp", "iat"],
                },
            )
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError) as e:
            raise TokenSignatureError() from e
        except jwt.InvalidTokenError as e:
            raise TokenMalformedError(f"Invalid token: {e}") from e

        exp = payload["exp"]
        nbf = payload.get("nbf", payload["iat"])
        if not isinstance(exp, (int, float)) or not isinstance(nbf, (int, float)):
            raise TokenMalformedError("Invalid time claims")
        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise TokenMalformedError("Not an access token")
        if not isinstance(payload["sub"], str) or not payload["sub"]:
            raise TokenMalformedError("Invalid subject")

        now = self._clock().timestamp()
        if now >= exp:
            raise TokenExpiredError()
        if nbf > now:
            raise TokenMalformedError("Token is not yet valid")

        return TokenPayload(
            user_id=payload["sub"],
            email=payload.get("email"),
            issued_at=int(payload["iat"]),
            expires_at=int(exp),
            token_type=payload["type"],
            raw=payload,
        )
