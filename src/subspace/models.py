"""Domain entities."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    """Serialize a datetime the way API clients expect (UTC, ``Z`` suffix)."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class User:
    """A user account.

    ``password_hash`` is ``None`` for accounts created through OAuth sign-in;
    such accounts can never complete password login.
    """

    id: str
    name: str
    email: str
    created_at: datetime
    updated_at: datetime
    password_hash: str | None = None
    avatar_url: str | None = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def to_public_dict(self) -> dict[str, Any]:
        """Serialize for API responses. Never includes the password hash."""
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "email": self.email,
        }
        if self.avatar_url:
            data["avatarUrl"] = self.avatar_url
        data["createdAt"] = isoformat(self.created_at)
        data["updatedAt"] = isoformat(self.updated_at)
        return data


@dataclass
class RefreshToken:
    """A persisted, opaque refresh token."""

    id: str
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime
    revoked_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_valid(self, now: datetime) -> bool:
        """Valid iff not revoked and not yet expired."""
        return not self.is_revoked and not self.is_expired(now)


@dataclass
class AuthResult:
    """Result of every successful authentication operation."""

    access_token: str
    refresh_token: str
    user: User

    def to_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "user": self.user.to_public_dict(),
        }
