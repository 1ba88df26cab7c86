"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from subspace.auth.jwt_utils import AccessTokenCodec
from subspace.auth.manager import AuthManager
from subspace.auth.password import PasswordHasher
from subspace.auth.refresh_tokens import RefreshTokenStore
from subspace.backends.memory import MemoryRefreshTokenRepository, MemoryUserRepository

TEST_SECRET = "test-secret-key-for-testing-only-0123456789"
APPLE_CLIENT_ID = "com.subspace.app"
APPLE_ISSUER = "https://appleid.apple.com"
APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"


class FakeClock:
    """Controllable clock returning aware UTC datetimes."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RSAKey:
    """An RSA signing key with its JWK representation."""

    def __init__(self, kid: str) -> None:
        self.kid = kid
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    @property
    def jwk(self) -> dict[str, Any]:
        jwk = RSAAlgorithm.to_jwk(self.private_key.public_key(), as_dict=True)
        return {**jwk, "kid": self.kid, "use": "sig", "alg": "RS256"}

    def sign(self, claims: dict[str, Any], headers: dict[str, Any] | None = None) -> str:
        return jwt.encode(
            claims,
            self.private_key,
            algorithm="RS256",
            headers={"kid": self.kid, **(headers or {})},
        )


class FakeJWKSServer:
    """httpx transport serving a JWKS document and counting fetches."""

    def __init__(self, keys: list[RSAKey]) -> None:
        self.keys = keys
        self.requests = 0
        self.status_code = 200
        self.body: Any = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.body is not None:
            return httpx.Response(self.status_code, content=self.body)
        return httpx.Response(self.status_code, json={"keys": [k.jwk for k in self.keys]})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def make_http_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def clock() -> FakeClock:
    """A fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def hasher():
    """Argon2 hasher with minimal work factors for fast tests."""
    h = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, workers=2)
    yield h
    h.close()


@pytest.fixture
def users() -> MemoryUserRepository:
    return MemoryUserRepository()


@pytest.fixture
def token_repo() -> MemoryRefreshTokenRepository:
    return MemoryRefreshTokenRepository()


@pytest.fixture
def codec(clock: FakeClock) -> AccessTokenCodec:
    return AccessTokenCodec(TEST_SECRET, ttl=timedelta(hours=24), clock=clock)


@pytest.fixture
def refresh_store(token_repo: MemoryRefreshTokenRepository, clock: FakeClock) -> RefreshTokenStore:
    return RefreshTokenStore(token_repo, ttl=timedelta(days=7), clock=clock)


@pytest.fixture
def auth_manager(
    users: MemoryUserRepository,
    hasher: PasswordHasher,
    codec: AccessTokenCodec,
    refresh_store: RefreshTokenStore,
    clock: FakeClock,
) -> AuthManager:
    """AuthManager over in-memory storage with no identity providers."""
    return AuthManager(
        users=users,
        hasher=hasher,
        access_tokens=codec,
        refresh_tokens=refresh_store,
        clock=clock,
    )


@pytest.fixture
def apple_key() -> RSAKey:
    return RSAKey("apple-key-1")


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Sample configuration dictionary for testing."""
    return {
        "environment": "test",
        "auth": {
            "jwt": {"secret": TEST_SECRET},
            "password": {"time_cost": 1, "memory_cost": 8, "parallelism": 1, "hash_workers": 2},
        },
        "storage": {"backend": "memory"},
        "rate_limit": {"enabled": False},
        "sweep_interval_minutes": 0,
    }
