"""Subspace exceptions.

Every error the service layer can raise carries a stable ``kind`` tag from
:class:`ErrorKind` so callers can branch on it instead of comparing strings.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed set of error tags surfaced to clients."""

    VALIDATION = "validation_error"
    CONFLICT = "conflict"
    INVALID_CREDENTIALS = "invalid_credentials"
    TOKEN_MALFORMED = "token_malformed"
    TOKEN_SIGNATURE_INVALID = "token_signature_invalid"
    TOKEN_EXPIRED = "token_expired"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    REFRESH_TOKEN_EXPIRED = "refresh_token_expired"
    REFRESH_TOKEN_REVOKED = "refresh_token_revoked"
    EXTERNAL_VERIFICATION = "external_verification_failed"
    UNSUPPORTED_PROVIDER = "unsupported_provider"
    NOT_FOUND = "not_found"
    HASHING = "hashing_error"
    STORAGE = "storage_error"
    CONFIG = "config_error"
    UNAUTHORIZED = "unauthorized"
    INTERNAL = "internal_error"


class SubspaceError(Exception):
    """Base exception for subspace."""

    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Render the error for a response body."""
        return {"error": self.kind.value, "message": self.message}


class ConfigError(SubspaceError):
    """Configuration error."""

    kind = ErrorKind.CONFIG
    default_message = "Invalid configuration"


class ValidationError(SubspaceError):
    """Malformed client input."""

    kind = ErrorKind.VALIDATION
    status_code = 400
    default_message = "Invalid request"


class ConflictError(SubspaceError):
    """Resource already exists (e.g. email already registered)."""

    kind = ErrorKind.CONFLICT
    status_code = 409
    default_message = "email already registered"


class AuthError(SubspaceError):
    """Authentication error."""

    kind = ErrorKind.UNAUTHORIZED
    status_code = 401
    default_message = "Authentication failed"


class InvalidCredentialsError(AuthError):
    """Invalid email or password.

    Unknown email and wrong password map to this same error.
    """

    kind = ErrorKind.INVALID_CREDENTIALS
    default_message = "invalid email or password"


class TokenError(AuthError):
    """Base class for access and refresh token failures."""


class TokenMalformedError(TokenError):
    """Token could not be parsed or lacks required claims."""

    kind = ErrorKind.TOKEN_MALFORMED
    default_message = "Invalid token"


class TokenSignatureError(TokenError):
    """Token signature did not verify or used an unexpected algorithm."""

    kind = ErrorKind.TOKEN_SIGNATURE_INVALID
    default_message = "Invalid token signature"


class TokenExpiredError(TokenError):
    """Token has expired."""

    kind = ErrorKind.TOKEN_EXPIRED
    default_message = "Token has expired"


class InvalidRefreshTokenError(TokenError):
    """Refresh token was never issued (or was swept)."""

    kind = ErrorKind.INVALID_REFRESH_TOKEN
    default_message = "invalid refresh token"


class RefreshTokenExpiredError(TokenError):
    """Refresh token is past its expiry."""

    kind = ErrorKind.REFRESH_TOKEN_EXPIRED
    default_message = "refresh token has expired"


class RefreshTokenRevokedError(TokenError):
    """Refresh token has been revoked or already rotated."""

    kind = ErrorKind.REFRESH_TOKEN_REVOKED
    default_message = "refresh token has been revoked"


class ExternalVerificationError(AuthError):
    """Identity token from an external provider could not be verified."""

    kind = ErrorKind.EXTERNAL_VERIFICATION
    default_message = "Invalid identity token"


class KeyFetchError(ExternalVerificationError):
    """Provider signing keys could not be fetched or parsed."""

    status_code = 502
    default_message = "Failed to fetch provider signing keys"


class UnknownKeyError(ExternalVerificationError):
    """Token was signed by a key the provider does not publish."""

    default_message = "Identity token signed with unknown key"


class IdentitySignatureError(ExternalVerificationError):
    """Identity token signature or algorithm is invalid."""

    default_message = "Invalid identity token signature"


class InvalidIssuerError(ExternalVerificationError):
    """Identity token issuer mismatch."""

    default_message = "Invalid identity token issuer"


class InvalidAudienceError(ExternalVerificationError):
    """Identity token audience mismatch."""

    default_message = "Invalid identity token audience"


class IdentityTokenExpiredError(ExternalVerificationError):
    """Identity token has expired."""

    default_message = "Identity token has expired"


class EmailNotVerifiedError(ExternalVerificationError):
    """Provider reports the email address as unverified."""

    default_message = "email not verified"


class ProviderVerificationError(ExternalVerificationError):
    """Provider introspection call failed or rejected the token."""

    default_message = "Identity provider rejected the token"


class UnsupportedProviderError(SubspaceError):
    """No verifier is configured for the requested provider."""

    kind = ErrorKind.UNSUPPORTED_PROVIDER
    status_code = 400
    default_message = "Unsupported identity provider"


class NotFoundError(SubspaceError):
    """Resource not found."""

    kind = ErrorKind.NOT_FOUND
    status_code = 404
    default_message = "Not found"


class UserNotFoundError(NotFoundError):
    """User not found."""

    default_message = "User not found"


class RefreshTokenNotFoundError(NotFoundError):
    """Refresh token not found."""

    default_message = "refresh token not found"


class HashingError(SubspaceError):
    """Password hashing failed."""

    kind = ErrorKind.HASHING
    default_message = "Failed to process password"


class StorageError(SubspaceError):
    """Storage backend failed or timed out."""

    kind = ErrorKind.STORAGE
    status_code = 503
    default_message = "Storage unavailable"
