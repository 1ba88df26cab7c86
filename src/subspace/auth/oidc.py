"""Identity token verification against a provider's published signing keys.

Apple-style providers publish RSA keys as a JWKS document. Keys are cached
for a refresh interval and refetched once when a token names an unknown key,
at most once per minimum refresh interval.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Mapping, Protocol, runtime_checkable

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from jwt.algorithms import RSAAlgorithm

from subspace.exceptions import (
    ExternalVerificationError,
    IdentitySignatureError,
    IdentityTokenExpiredError,
    InvalidAudienceError,
    InvalidIssuerError,
    KeyFetchError,
    UnknownKeyError,
)
from subspace.models import Clock, utcnow
from subspace.observability import emit_counter, get_logger

logger = get_logger(__name__)

APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"
APPLE_ISSUER = "https://appleid.apple.com"
DEFAULT_MIN_REFRESH_INTERVAL = timedelta(minutes=5)


@dataclass
class IdentityClaims:
    """Claims extracted from a verified external identity token."""

    subject: str
    provider: str
    email: str | None = None
    email_verified: bool = False
    name: str | None = None
    picture: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class IdentityVerifier(Protocol):
    """Verifies identity tokens issued by one external provider."""

    provider: str

    async def verify(self, identity_token: str, audience: str | None = None) -> IdentityClaims:
        """Verify a token and return its claims.

        Raises:
            ExternalVerificationError: (or a subclass) on any failure
        """
        ...


def parse_email_verified(value: Any) -> bool:
    """Providers send ``email_verified`` as a bool or as ``"true"``."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() == "true"
    return False


def jwk_to_public_key(jwk: Mapping[str, Any]) -> RSAPublicKey:
    """Build an RSA public key from a JWK.

    Raises:
        jwt.InvalidKeyError: If the JWK is not a usable RSA public key
    """
    key = RSAAlgorithm.from_jwk(dict(jwk))
    if not isinstance(key, RSAPublicKey):
        raise jwt.InvalidKeyError("JWK is not an RSA public key")
    return key


@dataclass(frozen=True)
class KeySet:
    """An immutable snapshot of a provider's keys, indexed by ``kid``."""

    keys: Mapping[str, RSAPublicKey]
    fetched_at: datetime

    @classmethod
    def from_jwks(cls, document: Any, fetched_at: datetime) -> "KeySet":
        """Parse a JWKS document.

        Raises:
            KeyFetchError: If the document or an RSA key in it is malformed
        """
        if not isinstance(document, dict) or not isinstance(document.get("keys"), list):
            raise KeyFetchError("Malformed JWKS document")

        keys: dict[str, RSAPublicKey] = {}
        for jwk in document["keys"]:
            if not isinstance(jwk, dict) or jwk.get("kty") != "RSA" or not jwk.get("kid"):
                continue
            try:
                keys[jwk["kid"]] = jwk_to_public_key(jwk)
            except (jwt.InvalidKeyError, ValueError) as e:
                raise KeyFetchError(f"Malformed key {jwk['kid']}") from e

        return cls(keys=MappingProxyType(keys), fetched_at=fetched_at)


class JWKSKeyCache:
    """Caches a provider's JWKS with at most one fetch in flight.

    Readers see either the old or the new ``KeySet``, never a partial one:
    the snapshot is replaced with a single assignment.
    """

    def __init__(
        self,
        keys_url: str,
        refresh_interval: timedelta = timedelta(hours=24),
        min_refresh_interval: timedelta = DEFAULT_MIN_REFRESH_INTERVAL,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.keys_url = keys_url
        self.refresh_interval = refresh_interval
        self.min_refresh_interval = min_refresh_interval
        self.timeout = timeout
        self._http = http_client
        self._clock = clock
        self._keyset: KeySet | None = None
        self._lock = asyncio.Lock()
        self.fetch_count = 0

    @property
    def keyset(self) -> KeySet | None:
        return self._keyset

    def _is_fresh(self, keyset: KeySet) -> bool:
        return self._clock() - keyset.fetched_at <= self.refresh_interval

    async def get_key(self, kid: str) -> RSAPublicKey:
        """Resolve a key id, refreshing once if it is not known.

        An unknown key only forces a refetch when the cached keys are older
        than ``min_refresh_interval``.

        Raises:
            UnknownKeyError: If the key is absent even after a refresh, or
                the cached keys are too recent to refetch
            KeyFetchError: If a needed fetch fails
        """
        keyset = await self._current()
        key = keyset.keys.get(kid)
        if key is not None:
            return key

        if self._clock() - keyset.fetched_at < self.min_refresh_interval:
            emit_counter("auth.jwks.refresh_throttled", {"url": self.keys_url})
            raise UnknownKeyError()

        keyset = await self.refresh(seen=keyset)
        key = keyset.keys.get(kid)
        if key is None:
            raise UnknownKeyError()
        return key

    async def _current(self) -> KeySet:
        keyset = self._keyset
        if keyset is not None and self._is_fresh(keyset):
            return keyset

        async with self._lock:
            # Double-check after acquiring lock
            keyset = self._keyset
            if keyset is not None and self._is_fresh(keyset):
                return keyset
            return await self._fetch()

    async def refresh(self, seen: KeySet | None = None) -> KeySet:
        """Force a refetch.

        If ``seen`` is given and another caller already replaced it while
        this one waited for the lock, that newer snapshot is returned.
        """
        async with self._lock:
            current = self._keyset
            if seen is not None and current is not None and current is not seen:
                return current
            return await self._fetch()

    async def _fetch(self) -> KeySet:
        """Fetch and install a new snapshot. Caller must hold the lock."""
        self.fetch_count += 1
        try:
            if self._http is not None:
                response = await self._http.get(self.keys_url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(self.keys_url, timeout=self.timeout)
            response.raise_for_status()
            document = response.json()
        except httpx.HTTPError as e:
            emit_counter("auth.jwks.fetch_failed", {"url": self.keys_url})
            logger.warning("JWKS fetch failed", context={"url": self.keys_url}, error=e)
            raise KeyFetchError(f"JWKS fetch failed: {e}") from e
        except ValueError as e:
            emit_counter("auth.jwks.fetch_failed", {"url": self.keys_url})
            raise KeyFetchError("JWKS response is not valid JSON") from e

        keyset = KeySet.from_jwks(document, self._clock())
        self._keyset = keyset
        logger.info("JWKS refreshed", context={"url": self.keys_url, "keys": len(keyset.keys)})
        return keyset


class AppleIdentityVerifier:
    """Validates Sign in with Apple identity tokens locally."""

    provider = "apple"

    def __init__(
        self,
        client_id: str,
        keys_url: str = APPLE_KEYS_URL,
        issuer: str = APPLE_ISSUER,
        refresh_interval: timedelta = timedelta(hours=24),
        min_refresh_interval: timedelta = DEFAULT_MIN_REFRESH_INTERVAL,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize the verifier.

        Args:
            client_id: Expected audience when the caller supplies none
            keys_url: JWKS endpoint
            issuer: Expected ``iss`` claim
            refresh_interval: Maximum age of cached keys
            min_refresh_interval: Minimum age of cached keys before an
                unknown key id may force a refetch
            timeout: Key fetch timeout in seconds
            http_client: Shared client; a short-lived one is used if omitted
            clock: Source of the current time
        """
        self.client_id = client_id
        self.issuer = issuer
        self._clock = clock
        self.keys = JWKSKeyCache(
            keys_url,
            refresh_interval=refresh_interval,
            min_refresh_interval=min_refresh_interval,
            timeout=timeout,
            http_client=http_client,
            clock=clock,
        )

    async def verify(self, identity_token: str, audience: str | None = None) -> IdentityClaims:
        """Verify an Apple identity token.

        Checks run in order: header, signature, issuer, audience, expiry.
        """
        try:
            header = jwt.get_unverified_header(identity_token)
        except jwt.InvalidTokenError as e:
            raise ExternalVerificationError("Malformed identity token") from e

        if header.get("alg") != "RS256":
            raise IdentitySignatureError(f"Unexpected signing algorithm: {header.get('alg')}")
        kid = header.get("kid")
        if not kid:
            raise UnknownKeyError("Identity token has no key id")

        key = await self.keys.get_key(kid)

        try:
            claims = jwt.decode(
                identity_token,
                key,
                algorithms=["RS256"],
                options={
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "verify_aud": False,
                    "verify_iss": False,
                },
            )
        except jwt.InvalidSignatureError as e:
            raise IdentitySignatureError() from e
        except jwt.InvalidTokenError as e:
            raise ExternalVerificationError(f"Invalid identity token: {e}") from e

        if claims.get("iss") != self.issuer:
            raise InvalidIssuerError()

        expected_audience = audience or self.client_id
        token_audience = claims.get("aud")
        audiences = token_audience if isinstance(token_audience, list) else [token_audience]
        if expected_audience not in audiences:
            raise InvalidAudienceError()

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or self._clock().timestamp() >= exp:
            raise IdentityTokenExpiredError()

        subject = claims.get("sub")
        if not subject:
            raise ExternalVerificationError("Identity token has no subject")

        return IdentityClaims(
            subject=subject,
            provider=self.provider,
            email=claims.get("email") or None,
            email_verified=parse_email_verified(claims.get("email_verified")),
            raw=claims,
        )
