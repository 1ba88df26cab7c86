"""Backend composition root: wires configuration into running services."""

import asyncio
from datetime import timedelta
from pathlib import Path
from typing import Any

import httpx

from subspace.auth.google import GoogleIdentityVerifier
from subspace.auth.jwt_utils import AccessTokenCodec
from subspace.auth.manager import AuthManager
from subspace.auth.mock import MockIdentityVerifier
from subspace.auth.oidc import AppleIdentityVerifier, IdentityVerifier
from subspace.auth.password import PasswordHasher
from subspace.auth.refresh_tokens import RefreshTokenStore, TokenSweeper
from subspace.config import Config
from subspace.models import Clock, utcnow
from subspace.observability import Timer, emit_timer, get_logger
from subspace.plugins import Storage, create_storage

logger = get_logger(__name__)


class Backend:
    """The assembled auth service.

    Example usage:
        # Load from config file
        backend = Backend.from_config("config.yaml")

        # Start HTTP server
        backend.serve(port=8080)

        # Or use directly
        async with Backend.from_env() as backend:
            result = await backend.auth.login("a@example.com", "hunter22")
    """

    def __init__(
        self,
        config: Config,
        storage: Storage | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize the backend with configuration.

        Use `Backend.from_config()` for convenience.

        Args:
            config: Validated configuration
            storage: Pre-built storage; created from ``config.storage`` if omitted
            http_client: Client for identity provider calls
            clock: Source of the current time
        """
        self.config = config
        self._clock = clock
        self._started = False
        self._start_lock = asyncio.Lock()

        storage_config = config.storage
        self.storage = storage or create_storage(storage_config.backend, path=storage_config.path)
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient()

        auth_config = config.auth
        self.hasher = PasswordHasher(
            time_cost=auth_config.password.time_cost,
            memory_cost=auth_config.password.memory_cost,
            parallelism=auth_config.password.parallelism,
            workers=auth_config.password.hash_workers,
        )
        self.access_tokens = AccessTokenCodec(
            secret=auth_config.jwt.secret,
            ttl=timedelta(minutes=auth_config.jwt.access_token_ttl_minutes),
            algorithm=auth_config.jwt.algorithm,
            clock=clock,
        )
        self.refresh_tokens = RefreshTokenStore(
            self.storage.refresh_tokens,
            ttl=timedelta(days=auth_config.jwt.refresh_token_ttl_days),
            clock=clock,
        )
        self.verifiers = self._build_verifiers()
        self.auth = AuthManager(
            users=self.storage.users,
            hasher=self.hasher,
            access_tokens=self.access_tokens,
            refresh_tokens=self.refresh_tokens,
            verifiers=self.verifiers,
            storage_timeout=storage_config.timeout_seconds,
            min_password_length=auth_config.password.min_length,
            clock=clock,
        )

        self.sweeper: TokenSweeper | None = None
        if config.sweep_interval_minutes > 0:
            self.sweeper = TokenSweeper(
                self.refresh_tokens,
                interval=timedelta(minutes=config.sweep_interval_minutes),
            )

    def _build_verifiers(self) -> dict[str, IdentityVerifier]:
        apple_config = self.config.auth.apple
        google_config = self.config.auth.google
        verifiers: dict[str, IdentityVerifier] = {
            "apple": AppleIdentityVerifier(
                client_id=apple_config.client_id,
                keys_url=apple_config.keys_url,
                issuer=apple_config.issuer,
                refresh_interval=timedelta(hours=apple_config.key_refresh_hours),
                min_refresh_interval=timedelta(seconds=apple_config.min_key_refresh_seconds),
                timeout=apple_config.timeout_seconds,
                http_client=self.http_client,
                clock=self._clock,
            ),
            "google": GoogleIdentityVerifier(
                tokeninfo_url=google_config.tokeninfo_url,
                client_id=google_config.client_id,
                timeout=google_config.timeout_seconds,
                http_client=self.http_client,
            ),
        }
        if self.config.mock_tokens_enabled:
            logger.warning("Mock identity tokens are enabled", context={"environment": self.config.environment})
            verifiers = {
                name: MockIdentityVerifier(verifier, self.config.auth.mock_tokens)
                for name, verifier in verifiers.items()
            }
        return verifiers

    @classmethod
    def from_config(cls, path: str | Path) -> "Backend":
        """Create a Backend from a YAML or JSON configuration file."""
        return cls(Config.from_file(path))

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "Backend":
        """Create a Backend from a configuration dictionary."""
        return cls(Config.from_dict(config_dict))

    @classmethod
    def from_env(cls) -> "Backend":
        """Create a Backend from process environment variables."""
        return cls(Config.from_env())

    async def start(self) -> None:
        """Prepare storage and start background tasks.

        Safe to call more than once.
        """
        if self._started:
            return

        # Double-checked locking pattern
        async with self._start_lock:
            if self._started:
                return

            with Timer() as timer:
                await self.storage.initialize()
                if self.sweeper is not None:
                    await self.sweeper.start()
                self._started = True

        logger.info(
            "Backend started",
            context={"storage": self.config.storage.backend, "environment": self.config.environment},
            duration_ms=timer.duration_ms,
        )
        emit_timer("backend.start", timer.duration_ms)

    async def close(self) -> None:
        """Stop background tasks and release resources."""
        if self.sweeper is not None:
            await self.sweeper.stop()
        if self._owns_http_client:
            await self.http_client.aclose()
        await self.storage.close()
        self.hasher.close()
        self._started = False
        logger.info("Backend closed")

    async def check_health(self) -> bool:
        """Probe storage within the storage timeout."""
        try:
            await asyncio.wait_for(
                self.storage.users.count(),
                self.config.storage.timeout_seconds,
            )
        except Exception as e:
            logger.warning("Health check failed", error=e)
            return False
        return True

    def serve(
        self,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        """Start the HTTP server.

        Args:
            host: Host to bind to (defaults to config value)
            port: Port to bind to (defaults to config value)
        """
        import uvicorn

        from subspace.server.app import create_app

        app = create_app(self)
        uvicorn.run(
            app,
            host=host or self.config.server.host,
            port=port or self.config.server.port,
            log_config=None,
        )

    async def __aenter__(self) -> "Backend":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
