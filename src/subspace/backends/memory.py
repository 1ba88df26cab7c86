"""In-memory repositories.

Suitable for development and testing. Data is lost on restart.
"""

import asyncio
import dataclasses
from datetime import datetime
from typing import Any

from subspace.exceptions import ConflictError, RefreshTokenNotFoundError, UserNotFoundError
from subspace.models import RefreshToken, User
from subspace.plugins import Storage


class MemoryUserRepository:
    """In-memory user store with email uniqueness."""

    def __init__(self, **kwargs: Any) -> None:
        """Initialize memory user store.

        Args:
            **kwargs: Ignored (for compatibility with other backends)
        """
        self._users: dict[str, User] = {}
        self._lock = asyncio.Lock()

    def _email_taken(self, email: str, exclude_id: str | None = None) -> bool:
        return any(u.email == email and u.id != exclude_id for u in self._users.values())

    async def get_by_id(self, user_id: str) -> User:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError()
            return dataclasses.replace(user)

    async def get_by_email(self, email: str) -> User:
        async with self._lock:
            for user in self._users.values():
                if user.email == email:
                    return dataclasses.replace(user)
            raise UserNotFoundError()

    async def create(self, user: User) -> User:
        async with self._lock:
            if self._email_taken(user.email):
                raise ConflictError()
            self._users[user.id] = dataclasses.replace(user)
            return user

    async def update(self, user: User) -> User:
        async with self._lock:
            if user.id not in self._users:
                raise UserNotFoundError()
            if self._email_taken(user.email, exclude_id=user.id):
                raise ConflictError()
            self._users[user.id] = dataclasses.replace(user)
            return user

    async def delete(self, user_id: str) -> None:
        async with self._lock:
            if self._users.pop(user_id, None) is None:
                raise UserNotFoundError()

    async def count(self) -> int:
        async with self._lock:
            return len(self._users)


class MemoryRefreshTokenRepository:
    """In-memory refresh token store keyed by token string."""

    def __init__(self, **kwargs: Any) -> None:
        self._tokens: dict[str, RefreshToken] = {}
        self._lock = asyncio.Lock()

    async def create(self, token: RefreshToken) -> RefreshToken:
        async with self._lock:
            self._tokens[token.token] = dataclasses.replace(token)
            return token

    async def get_by_token(self, token: str) -> RefreshToken:
        async with self._lock:
            record = self._tokens.get(token)
            if record is None:
                raise RefreshTokenNotFoundError()
            return dataclasses.replace(record)

    async def get_by_user_id(self, user_id: str) -> list[RefreshToken]:
        async with self._lock:
            records = [dataclasses.replace(t) for t in self._tokens.values() if t.user_id == user_id]
        return sorted(records, key=lambda t: t.created_at, reverse=True)

    async def revoke(self, token: str, now: datetime) -> bool:
        async with self._lock:
            record = self._tokens.get(token)
            if record is None:
                raise RefreshTokenNotFoundError()
            if record.revoked_at is not None:
                return False
            record.revoked_at = now
            return True

    async def revoke_all_for_user(self, user_id: str, now: datetime) -> int:
        async with self._lock:
            revoked = 0
            for record in self._tokens.values():
                if record.user_id == user_id and record.revoked_at is None:
                    record.revoked_at = now
                    revoked += 1
            return revoked

    async def delete_expired(self, now: datetime) -> int:
        async with self._lock:
            expired = [key for key, record in self._tokens.items() if record.expires_at <= now]
            for key in expired:
                del self._tokens[key]
            return len(expired)

    async def clear(self) -> None:
        """Clear all data. Useful for testing."""
        async with self._lock:
            self._tokens.clear()


def open_storage(**kwargs: Any) -> Storage:
    """Storage factory registered as the ``memory`` backend."""
    return Storage(
        users=MemoryUserRepository(**kwargs),
        refresh_tokens=MemoryRefreshTokenRepository(**kwargs),
    )
