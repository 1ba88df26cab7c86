"""Opaque, server-side refresh tokens with single-use rotation."""

import asyncio
import uuid
from datetime import timedelta

from subspace.exceptions import (
    InvalidRefreshTokenError,
    RefreshTokenExpiredError,
    RefreshTokenNotFoundError,
    RefreshTokenRevokedError,
)
from subspace.models import Clock, RefreshToken, utcnow
from subspace.observability import get_logger
from subspace.protocols import RefreshTokenRepository
from subspace.utils.crypto import generate_random_token

logger = get_logger(__name__)

DEFAULT_REFRESH_TOKEN_TTL = timedelta(days=7)


class RefreshTokenStore:
    """Issues, looks up, rotates and revokes refresh tokens."""

    def __init__(
        self,
        repository: RefreshTokenRepository,
        ttl: timedelta = DEFAULT_REFRESH_TOKEN_TTL,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.ttl = ttl
        self._clock = clock

    async def issue(self, user_id: str) -> RefreshToken:
        """Mint and persist a new token for a user."""
        now = self._clock()
        record = RefreshToken(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=generate_random_token(32),
            expires_at=now + self.ttl,
            created_at=now,
        )
        return await self.repository.create(record)

    async def lookup(self, token: str) -> RefreshToken:
        """Find a token record. Raises RefreshTokenNotFoundError."""
        return await self.repository.get_by_token(token)

    def is_valid(self, record: RefreshToken) -> bool:
        return record.is_valid(self._clock())

    async def revoke(self, token: str) -> bool:
        """Revoke a token. Repeated calls are no-ops that return False."""
        return await self.repository.revoke(token, self._clock())

    async def revoke_all(self, user_id: str) -> int:
        """Revoke every outstanding token of a user."""
        return await self.repository.revoke_all_for_user(user_id, self._clock())

    async def sweep_expired(self) -> int:
        """Delete expired tokens, revoked or not."""
        return await self.repository.delete_expired(self._clock())

    def check(self, record: RefreshToken) -> None:
        """Reject a token that is past expiry or revoked, in that order.

        Raises:
            RefreshTokenExpiredError: Token is past expiry
            RefreshTokenRevokedError: Token was revoked or already consumed
        """
        if record.is_expired(self._clock()):
            raise RefreshTokenExpiredError()
        if record.is_revoked:
            raise RefreshTokenRevokedError()

    async def consume(self, token: str) -> RefreshToken:
        """Validate a token and atomically mark it used.

        Of any number of concurrent callers presenting the same token,
        exactly one gets the record back; the others see it as revoked.

        Raises:
            InvalidRefreshTokenError: Token was never issued
            RefreshTokenExpiredError: Token is past expiry
            RefreshTokenRevokedError: Token was revoked or already consumed
        """
        try:
            record = await self.repository.get_by_token(token)
        except RefreshTokenNotFoundError as e:
            raise InvalidRefreshTokenError() from e

        self.check(record)
        now = self._clock()

        try:
            won = await self.repository.revoke(token, now)
        except RefreshTokenNotFoundError as e:
            # Swept between lookup and revoke
            raise InvalidRefreshTokenError() from e
        if not won:
            raise RefreshTokenRevokedError()

        record.revoked_at = now
        return record


class TokenSweeper:
    """Background task that periodically deletes expired refresh tokens."""

    def __init__(self, store: RefreshTokenStore, interval: timedelta) -> None:
        self.store = store
        self.interval = interval
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start periodic sweeping."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop periodic sweeping."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval.total_seconds())
            try:
                deleted = await self.store.sweep_expired()
            except Exception as e:
                logger.error("Refresh token sweep failed", error=e)
                continue
            if deleted:
                logger.info("Swept expired refresh tokens", context={"deleted": deleted})
