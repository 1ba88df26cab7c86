"""Repository protocols for users and refresh tokens."""

from datetime import datetime
from typing import Protocol, runtime_checkable

from subspace.models import RefreshToken, User


@runtime_checkable
class UserRepository(Protocol):
    """Storage contract for user accounts (memory, SQLite, PostgreSQL)."""

    async def get_by_id(self, user_id: str) -> User:
        """Get a user by ID. Raises UserNotFoundError if absent."""
        ...

    async def get_by_email(self, email: str) -> User:
        """Get a user by exact email. Raises UserNotFoundError if absent."""
        ...

    async def create(self, user: User) -> User:
        """Insert a user. Raises ConflictError if the email is taken."""
        ...

    async def update(self, user: User) -> User:
        """Replace a user's mutable fields.

        Raises UserNotFoundError if absent, ConflictError if the new email is taken.
        """
        ...

    async def delete(self, user_id: str) -> None:
        """Delete a user. Raises UserNotFoundError if absent."""
        ...

    async def count(self) -> int:
        """Number of stored users."""
        ...


@runtime_checkable
class RefreshTokenRepository(Protocol):
    """Storage contract for refresh tokens, keyed by token string or owner."""

    async def create(self, token: RefreshToken) -> RefreshToken:
        """Persist a new token record."""
        ...

    async def get_by_token(self, token: str) -> RefreshToken:
        """Get a record by token string. Raises RefreshTokenNotFoundError."""
        ...

    async def get_by_user_id(self, user_id: str) -> list[RefreshToken]:
        """All records owned by a user, newest first."""
        ...

    async def revoke(self, token: str, now: datetime) -> bool:
        """Set ``revoked_at`` if it is still unset.

        Returns True only for the call that performed the transition.
        Raises RefreshTokenNotFoundError if the token does not exist.
        """
        ...

    async def revoke_all_for_user(self, user_id: str, now: datetime) -> int:
        """Revoke every unrevoked token of a user. Returns the number revoked."""
        ...

    async def delete_expired(self, now: datetime) -> int:
        """Delete records with ``expires_at <= now``. Returns the number deleted."""
        ...
