"""Authentication module."""

from subspace.auth.google import GoogleIdentityVerifier
from subspace.auth.jwt_utils import AccessTokenCodec, TokenPayload
from subspace.auth.manager import AuthManager
from subspace.auth.mock import MockIdentityVerifier
from subspace.auth.oidc import (
    AppleIdentityVerifier,
    IdentityClaims,
    IdentityVerifier,
    JWKSKeyCache,
    KeySet,
)
from subspace.auth.password import PasswordHasher
from subspace.auth.refresh_tokens import RefreshTokenStore, TokenSweeper

__all__ = [
    "AccessTokenCodec",
    "AppleIdentityVerifier",
    "AuthManager",
    "GoogleIdentityVerifier",
    "IdentityClaims",
    "IdentityVerifier",
    "JWKSKeyCache",
    "KeySet",
    "MockIdentityVerifier",
    "PasswordHasher",
    "RefreshTokenStore",
    "TokenPayload",
    "TokenSweeper",
]
