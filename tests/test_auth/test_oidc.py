"""Tests for JWKS caching and Apple identity token verification."""

import asyncio
from datetime import timedelta
from typing import Any

import httpx
import jwt
import pytest

from subspace.auth.oidc import (
    AppleIdentityVerifier,
    IdentityVerifier,
    JWKSKeyCache,
    KeySet,
    jwk_to_public_key,
    parse_email_verified,
)
from subspace.exceptions import (
    ExternalVerificationError,
    IdentitySignatureError,
    IdentityTokenExpiredError,
    InvalidAudienceError,
    InvalidIssuerError,
    KeyFetchError,
    UnknownKeyError,
)

from conftest import APPLE_CLIENT_ID, APPLE_ISSUER, APPLE_KEYS_URL, FakeJWKSServer, RSAKey


def apple_claims(clock, **overrides: Any) -> dict[str, Any]:
    now = int(clock().timestamp())
    claims = {
        "iss": APPLE_ISSUER,
        "aud": APPLE_CLIENT_ID,
        "sub": "001234.apple-user",
        "iat": now,
        "exp": now + 600,
        "email": "user@privaterelay.appleid.com",
        "email_verified": "true",
    }
    claims.update(overrides)
    return claims


@pytest.fixture
def jwks_server(apple_key):
    return FakeJWKSServer([apple_key])


@pytest.fixture
async def http_client(jwks_server):
    client = jwks_server.client()
    yield client
    await client.aclose()


@pytest.fixture
def verifier(http_client, clock):
    return AppleIdentityVerifier(
        client_id=APPLE_CLIENT_ID,
        http_client=http_client,
        clock=clock,
    )


class TestParseEmailVerified:
    """Tests for parse_email_verified."""

    def test_values(self):
        """Test bool and string forms."""
        assert parse_email_verified(True) is True
        assert parse_email_verified(False) is False
        assert parse_email_verified("true") is True
        assert parse_email_verified("TRUE") is True
        assert parse_email_verified("false") is False
        assert parse_email_verified(None) is False
        assert parse_email_verified(1) is False


class TestKeySet:
    """Tests for KeySet parsing."""

    def test_from_jwks(self, apple_key, clock):
        """Test that RSA keys are indexed by kid."""
        keyset = KeySet.from_jwks({"keys": [apple_key.jwk]}, clock())

        assert set(keyset.keys) == {"apple-key-1"}
        assert keyset.fetched_at == clock()

    def test_skips_non_rsa_keys(self, apple_key, clock):
        """Test that unsupported key types are ignored."""
        document = {"keys": [{"kty": "EC", "kid": "ec-1", "crv": "P-256"}, apple_key.jwk]}

        keyset = KeySet.from_jwks(document, clock())

        assert set(keyset.keys) == {"apple-key-1"}

    def test_snapshot_is_read_only(self, apple_key, clock):
        """Test that the key mapping cannot be mutated."""
        keyset = KeySet.from_jwks({"keys": [apple_key.jwk]}, clock())

        with pytest.raises(TypeError):
            keyset.keys["other"] = None  # type: ignore[index]

    @pytest.mark.parametrize("document", [None, [], {}, {"keys": "nope"}])
    def test_malformed_document(self, document, clock):
        """Test that a malformed document is a fetch error."""
        with pytest.raises(KeyFetchError):
            KeySet.from_jwks(document, clock())

    def test_malformed_key(self, clock):
        """Test that an RSA key without modulus is a fetch error."""
        with pytest.raises(KeyFetchError):
            KeySet.from_jwks({"keys": [{"kty": "RSA", "kid": "k1", "e": "AQAB"}]}, clock())

    def test_jwk_to_public_key(self, apple_key):
        """Test that a published JWK yields the signing key's public half."""
        key = jwk_to_public_key(apple_key.jwk)

        assert key.public_numbers() == apple_key.private_key.public_key().public_numbers()


class TestJWKSKeyCache:
    """Tests for JWKSKeyCache."""

    @pytest.mark.asyncio
    async def test_fetches_once_while_fresh(self, jwks_server, http_client, clock):
        """Test that keys are served from cache within the interval."""
        cache = JWKSKeyCache(APPLE_KEYS_URL, http_client=http_client, clock=clock)

        await cache.get_key("apple-key-1")
        clock.advance(hours=23)
        await cache.get_key("apple-key-1")

        assert jwks_server.requests == 1
        assert cache.fetch_count == 1

    @pytest.mark.asyncio
    async def test_refetches_when_stale(self, jwks_server, http_client, clock):
        """Test that keys older than the interval are refetched."""
        cache = JWKSKeyCache(APPLE_KEYS_URL, http_client=http_client, clock=clock)

        await cache.get_key("apple-key-1")
        clock.advance(hours=24, seconds=1)
        await cache.get_key("apple-key-1")

        assert jwks_server.requests == 2

    @pytest.mark.asyncio
    async def test_unknown_kid_triggers_one_refresh(self, jwks_server, http_client, clock):
        """Test that a rotated key is picked up by a forced refresh."""
        cache = JWKSKeyCache(APPLE_KEYS_URL, http_client=http_client, clock=clock)
        await cache.get_key("apple-key-1")
        clock.advance(minutes=5)

        rotated = RSAKey("apple-key-2")
        jwks_server.keys.append(rotated)
        key = await cache.get_key("apple-key-2")

        assert key.public_numbers() == rotated.private_key.public_key().public_numbers()
        assert jwks_server.requests == 2

    @pytest.mark.asyncio
    async def test_unknown_kid_after_refresh(self, jwks_server, http_client, clock):
        """Test that a key absent after refresh is unknown."""
        cache = JWKSKeyCache(APPLE_KEYS_URL, http_client=http_client, clock=clock)
        await cache.get_key("apple-key-1")
        clock.advance(minutes=5)

        with pytest.raises(UnknownKeyError):
            await cache.get_key("no-such-key")
        assert jwks_server.requests == 2

    @pytest.mark.asyncio
    async def test_unknown_kids_throttled(self, jwks_server, http_client, clock):
        """Test that unknown key ids refetch at most once per minimum interval."""
        cache = JWKSKeyCache(APPLE_KEYS_URL, http_client=http_client, clock=clock)
        await cache.get_key("apple-key-1")

        for i in range(20):
            with pytest.raises(UnknownKeyError):
                await cache.get_key(f"bogus-{i}")
        assert jwks_server.requests == 1

        clock.advance(minutes=5)
        for i in range(20):
            with pytest.raises(UnknownKeyError):
                await cache.get_key(f"bogus-{i}")
        assert jwks_server.requests == 2

    @pytest.mark.asyncio
    async def test_concurrent_unknown_kids_single_fetch(self, jwks_server, http_client, clock):
        """Test that concurrent unknown key ids share one refetch."""
        cache = JWKSKeyCache(APPLE_KEYS_URL, http_client=http_client, clock=clock)
        await cache.get_key("apple-key-1")
        clock.advance(minutes=10)

        results = await asyncio.gather(
            *(cache.get_key(f"bogus-{i}") for i in range(10)),
            return_exceptions=True,
        )

        assert all(isinstance(r, UnknownKeyError) for r in results)
        assert jwks_server.requests == 2

    @pytest.mark.asyncio
    async def test_min_refresh_interval_configurable(self, jwks_server, http_client, clock):
        """Test that a zero minimum interval refetches on every unknown key id."""
        cache = JWKSKeyCache(
            APPLE_KEYS_URL, min_refresh_interval=timedelta(0), http_client=http_client, clock=clock
        )

        with pytest.raises(UnknownKeyError):
            await cache.get_key("no-such-key")
        assert jwks_server.requests == 2

    @pytest.mark.asyncio
    async def test_concurrent_cold_start_single_fetch(self, jwks_server, http_client, clock):
        """Test that concurrent first lookups share one fetch."""
        cache = JWKSKeyCache(APPLE_KEYS_URL, http_client=http_client, clock=clock)

        keys = await asyncio.gather(*(cache.get_key("apple-key-1") for _ in range(10)))

        assert len(keys) == 10
        assert jwks_server.requests == 1

    @pytest.mark.asyncio
    async def test_concurrent_refresh_collapses(self, jwks_server, http_client, clock):
        """Test that waiters reuse a snapshot swapped in by another caller."""
        cache = JWKSKeyCache(APPLE_KEYS_URL, http_client=http_client, clock=clock)
        seen = await cache.refresh()

        results = await asyncio.gather(*(cache.refresh(seen=seen) for _ in range(5)))

        assert jwks_server.requests == 2
        assert all(r is results[0] for r in results)
        assert cache.keyset is results[0]

    @pytest.mark.asyncio
    async def test_http_error(self, jwks_server, http_client, clock):
        """Test that a failing endpoint raises KeyFetchError."""
        jwks_server.status_code = 503
        cache = JWKSKeyCache(APPLE_KEYS_URL, http_client=http_client, clock=clock)

        with pytest.raises(KeyFetchError):
            await cache.get_key("apple-key-1")
        assert cache.keyset is None

    @pytest.mark.asyncio
    async def test_invalid_json(self, jwks_server, http_client, clock):
        """Test that a non-JSON body raises KeyFetchError."""
        jwks_server.body = b"<html>oops</html>"
        cache = JWKSKeyCache(APPLE_KEYS_URL, http_client=http_client, clock=clock)

        with pytest.raises(KeyFetchError):
            await cache.get_key("apple-key-1")

    @pytest.mark.asyncio
    async def test_transport_error(self, clock):
        """Test that connection failures raise KeyFetchError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            cache = JWKSKeyCache(APPLE_KEYS_URL, http_client=client, clock=clock)
            with pytest.raises(KeyFetchError):
                await cache.get_key("apple-key-1")

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_old_snapshot(self, jwks_server, http_client, clock):
        """Test that a failed forced refresh leaves the cached keys in place."""
        cache = JWKSKeyCache(APPLE_KEYS_URL, http_client=http_client, clock=clock)
        before = await cache.refresh()
        clock.advance(minutes=5)
        jwks_server.status_code = 500

        with pytest.raises(KeyFetchError):
            await cache.get_key("apple-key-2")
        assert cache.keyset is before


class TestAppleIdentityVerifier:
    """Tests for AppleIdentityVerifier."""

    def test_satisfies_protocol(self, verifier):
        """Test structural conformance to IdentityVerifier."""
        assert isinstance(verifier, IdentityVerifier)
        assert verifier.provider == "apple"

    @pytest.mark.asyncio
    async def test_valid_token(self, verifier, apple_key, clock):
        """Test a well-formed token."""
        token = apple_key.sign(apple_claims(clock))

        claims = await verifier.verify(token)

        assert claims.subject == "001234.apple-user"
        assert claims.provider == "apple"
        assert claims.email == "user@privaterelay.appleid.com"
        assert claims.email_verified is True

    @pytest.mark.asyncio
    async def test_audience_list(self, verifier, apple_key, clock):
        """Test that aud may be a list containing the client id."""
        token = apple_key.sign(apple_claims(clock, aud=["other", APPLE_CLIENT_ID]))

        claims = await verifier.verify(token)

        assert claims.subject == "001234.apple-user"

    @pytest.mark.asyncio
    async def test_explicit_audience(self, verifier, apple_key, clock):
        """Test that an explicit audience overrides the client id."""
        token = apple_key.sign(apple_claims(clock, aud="com.subspace.web"))

        assert (await verifier.verify(token, audience="com.subspace.web")).subject
        with pytest.raises(InvalidAudienceError):
            await verifier.verify(token)

    @pytest.mark.asyncio
    async def test_wrong_issuer(self, verifier, apple_key, clock):
        """Test that a foreign issuer is rejected."""
        token = apple_key.sign(apple_claims(clock, iss="https://evil.example.com"))

        with pytest.raises(InvalidIssuerError):
            await verifier.verify(token)

    @pytest.mark.asyncio
    async def test_wrong_audience(self, verifier, apple_key, clock):
        """Test that another app's token is rejected."""
        token = apple_key.sign(apple_claims(clock, aud="com.other.app"))

        with pytest.raises(InvalidAudienceError):
            await verifier.verify(token)

    @pytest.mark.asyncio
    async def test_expired(self, verifier, apple_key, clock):
        """Test that an expired token is rejected."""
        token = apple_key.sign(apple_claims(clock))
        clock.advance(minutes=10)

        with pytest.raises(IdentityTokenExpiredError):
            await verifier.verify(token)

    @pytest.mark.asyncio
    async def test_missing_exp(self, verifier, apple_key, clock):
        """Test that a token without exp is rejected."""
        claims = apple_claims(clock)
        del claims["exp"]

        with pytest.raises(IdentityTokenExpiredError):
            await verifier.verify(apple_key.sign(claims))

    @pytest.mark.asyncio
    async def test_issuer_checked_before_expiry(self, verifier, apple_key, clock):
        """Test that the issuer check precedes the expiry check."""
        token = apple_key.sign(apple_claims(clock, iss="https://evil.example.com"))
        clock.advance(hours=1)

        with pytest.raises(InvalidIssuerError):
            await verifier.verify(token)

    @pytest.mark.asyncio
    async def test_bad_signature(self, verifier, clock):
        """Test that a token signed by an impostor key is rejected."""
        impostor = RSAKey("apple-key-1")
        token = impostor.sign(apple_claims(clock))

        with pytest.raises(IdentitySignatureError):
            await verifier.verify(token)

    @pytest.mark.asyncio
    async def test_unknown_key(self, verifier, clock, jwks_server):
        """Test that a token from an unpublished key is rejected."""
        token = RSAKey("unpublished").sign(apple_claims(clock))

        with pytest.raises(UnknownKeyError):
            await verifier.verify(token)
        assert jwks_server.requests == 1

    @pytest.mark.asyncio
    async def test_unknown_keys_do_not_flood_provider(self, verifier, clock, jwks_server, apple_key):
        """Test that many tokens with unpublished key ids cost one extra fetch."""
        await verifier.verify(apple_key.sign(apple_claims(clock)))
        clock.advance(minutes=5)

        for i in range(20):
            token = apple_key.sign(apple_claims(clock), headers={"kid": f"unpublished-{i}"})
            with pytest.raises(UnknownKeyError):
                await verifier.verify(token)

        assert jwks_server.requests == 2

    @pytest.mark.asyncio
    async def test_missing_kid(self, verifier, apple_key, clock):
        """Test that a header without kid is rejected."""
        token = jwt.encode(apple_claims(clock), apple_key.private_key, algorithm="RS256")

        with pytest.raises(UnknownKeyError):
            await verifier.verify(token)

    @pytest.mark.asyncio
    async def test_hmac_token_rejected(self, verifier, clock):
        """Test that a symmetric token cannot pose as an Apple token."""
        token = jwt.encode(
            apple_claims(clock),
            "guessable-secret-value",
            algorithm="HS256",
            headers={"kid": "apple-key-1"},
        )

        with pytest.raises(IdentitySignatureError):
            await verifier.verify(token)

    @pytest.mark.asyncio
    async def test_garbage(self, verifier):
        """Test that an undecodable token is a verification error."""
        with pytest.raises(ExternalVerificationError):
            await verifier.verify("garbage")

    @pytest.mark.asyncio
    async def test_missing_subject(self, verifier, apple_key, clock):
        """Test that a token without sub is rejected."""
        claims = apple_claims(clock)
        del claims["sub"]

        with pytest.raises(ExternalVerificationError):
            await verifier.verify(apple_key.sign(claims))

    @pytest.mark.asyncio
    async def test_rotation_with_stale_cache(self, verifier, jwks_server, apple_key, clock):
        """Test verification after the provider rotates keys."""
        await verifier.verify(apple_key.sign(apple_claims(clock)))
        clock.advance(minutes=5)
        rotated = RSAKey("apple-key-2")
        jwks_server.keys = [rotated]

        claims = await verifier.verify(rotated.sign(apple_claims(clock)))

        assert claims.subject == "001234.apple-user"
        assert verifier.keys.fetch_count == 2
