"""SQLite database backend and SQL repositories."""

import asyncio
import re
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from subspace.exceptions import ConflictError, RefreshTokenNotFoundError, UserNotFoundError
from subspace.models import RefreshToken, User
from subspace.plugins import Storage
from subspace.protocols.database import Database, Row

_PARAM_RE = re.compile(r":(\w+)")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT,
    avatar_url TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS refresh_tokens (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    token TEXT NOT NULL UNIQUE,
    expires_at REAL NOT NULL,
    created_at REAL NOT NULL,
    revoked_at REAL
);

CREATE INDEX IF NOT EXISTS idx_refresh_tokens_user_id ON refresh_tokens(user_id);
CREATE INDEX IF NOT EXISTS idx_refresh_tokens_expires_at ON refresh_tokens(expires_at);
"""


class SQLiteDatabase:
    """SQLite database backend.

    Suitable for development and small deployments. Statements are
    serialized through a single connection guarded by an asyncio lock.
    """

    def __init__(
        self,
        path: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize SQLite database.

        Args:
            path: Path to SQLite database file. Defaults to ./data/subspace.db
                  Use ":memory:" for in-memory database.
            **kwargs: Ignored (for compatibility with other backends)
        """
        if path == ":memory:":
            self.path: str | Path = ":memory:"
        else:
            self.path = Path(path) if path else Path("./data/subspace.db")
            self.path.parent.mkdir(parents=True, exist_ok=True)

        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()
        self._in_transaction = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    @staticmethod
    def _bind(query: str, params: dict[str, Any] | None) -> tuple[str, tuple[Any, ...]]:
        """Rewrite :name placeholders to positional ones."""
        if not params:
            return query, ()

        names: list[str] = []

        def replace(match: re.Match[str]) -> str:
            names.append(match.group(1))
            return "?"

        query = _PARAM_RE.sub(replace, query)
        return query, tuple(params[name] for name in names)

    async def execute(
        self,
        query: str,
        params: dict[str, Any] | None = None,
    ) -> list[Row]:
        """Execute a statement and return result rows."""
        async with self._lock:
            conn = self._get_connection()
            sql, values = self._bind(query, params)
            try:
                cursor = conn.execute(sql, values)
                rows = cursor.fetchall()
            except sqlite3.Error:
                if not self._in_transaction:
                    conn.rollback()
                raise

            # Only auto-commit if not in a transaction
            if not self._in_transaction:
                conn.commit()

            return [Row(_data=dict(row)) for row in rows]

    async def executescript(self, script: str) -> None:
        async with self._lock:
            self._get_connection().executescript(script)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SQLiteDatabase"]:
        """Start a transaction.

        Note: SQLite doesn't support nested transactions.
        """
        if self._in_transaction:
            yield self
            return

        conn = self._get_connection()
        self._in_transaction = True
        try:
            yield self
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._in_transaction = False

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None


def _to_ts(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _from_ts(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


async def init_schema(db: Database) -> None:
    """Create tables and indexes if they do not exist."""
    await db.executescript(SCHEMA)


class SQLUserRepository:
    """User repository on top of a :class:`Database`."""

    _COLUMNS = "id, name, email, password_hash, avatar_url, created_at, updated_at"

    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _to_user(row: Row) -> User:
        return User(
            id=row.id,
            name=row.name,
            email=row.email,
            password_hash=row.password_hash,
            avatar_url=row.avatar_url,
            created_at=_from_ts(row.created_at),
            updated_at=_from_ts(row.updated_at),
        )

    @staticmethod
    def _params(user: User) -> dict[str, Any]:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "password_hash": user.password_hash,
            "avatar_url": user.avatar_url,
            "created_at": _to_ts(user.created_at),
            "updated_at": _to_ts(user.updated_at),
        }

    async def get_by_id(self, user_id: str) -> User:
        rows = await self.db.execute(
            f"SELECT {self._COLUMNS} FROM users WHERE id = :id",
            {"id": user_id},
        )
        if not rows:
            raise UserNotFoundError()
        return self._to_user(rows[0])

    async def get_by_email(self, email: str) -> User:
        rows = await self.db.execute(
            f"SELECT {self._COLUMNS} FROM users WHERE email = :email",
            {"email": email},
        )
        if not rows:
            raise UserNotFoundError()
        return self._to_user(rows[0])

    async def create(self, user: User) -> User:
        try:
            await self.db.execute(
                """
                INSERT INTO users (id, name, email, password_hash, avatar_url, created_at, updated_at)
                VALUES (:id, :name, :email, :password_hash, :avatar_url, :created_at, :updated_at)
                """,
                self._params(user),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError() from e
        return user

    async def update(self, user: User) -> User:
        try:
            rows = await self.db.execute(
                """
                UPDATE users
                SET name = :name, email = :email, password_hash = :password_hash,
                    avatar_url = :avatar_url, updated_at = :updated_at
                WHERE id = :id
                RETURNING id
                """,
                {k: v for k, v in self._params(user).items() if k != "created_at"},
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError() from e
        if not rows:
            raise UserNotFoundError()
        return user

    async def delete(self, user_id: str) -> None:
        rows = await self.db.execute(
            "DELETE FROM users WHERE id = :id RETURNING id",
            {"id": user_id},
        )
        if not rows:
            raise UserNotFoundError()

    async def count(self) -> int:
        rows = await self.db.execute("SELECT COUNT(*) AS n FROM users")
        return int(rows[0].n)


class SQLRefreshTokenRepository:
    """Refresh token repository on top of a :class:`Database`."""

    _COLUMNS = "id, user_id, token, expires_at, created_at, revoked_at"

    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _to_token(row: Row) -> RefreshToken:
        return RefreshToken(
            id=row.id,
            user_id=row.user_id,
            token=row.token,
            expires_at=_from_ts(row.expires_at),
            created_at=_from_ts(row.created_at),
            revoked_at=_from_ts(row.revoked_at),
        )

    async def create(self, token: RefreshToken) -> RefreshToken:
        await self.db.execute(
            """
            INSERT INTO refresh_tokens (id, user_id, token, expires_at, created_at, revoked_at)
            VALUES (:id, :user_id, :token, :expires_at, :created_at, :revoked_at)
            """,
            {
                "id": token.id,
                "user_id": token.user_id,
                "token": token.token,
                "expires_at": _to_ts(token.expires_at),
                "created_at": _to_ts(token.created_at),
                "revoked_at": _to_ts(token.revoked_at),
            },
        )
        return token

    async def get_by_token(self, token: str) -> RefreshToken:
        rows = await self.db.execute(
            f"SELECT {self._COLUMNS} FROM refresh_tokens WHERE token = :token",
            {"token": token},
        )
        if not rows:
            raise RefreshTokenNotFoundError()
        return self._to_token(rows[0])

    async def get_by_user_id(self, user_id: str) -> list[RefreshToken]:
        rows = await self.db.execute(
            f"""
            SELECT {self._COLUMNS} FROM refresh_tokens
            WHERE user_id = :user_id
            ORDER BY created_at DESC
            """,
            {"user_id": user_id},
        )
        return [self._to_token(row) for row in rows]

    async def revoke(self, token: str, now: datetime) -> bool:
        # Conditional update is the compare-and-set that serializes rotation
        rows = await self.db.execute(
            """
            UPDATE refresh_tokens SET revoked_at = :now
            WHERE token = :token AND revoked_at IS NULL
            RETURNING id
            """,
            {"now": _to_ts(now), "token": token},
        )
        if rows:
            return True
        # Distinguish "already revoked" from "never existed"
        await self.get_by_token(token)
        return False

    async def revoke_all_for_user(self, user_id: str, now: datetime) -> int:
        rows = await self.db.execute(
            """
            UPDATE refresh_tokens SET revoked_at = :now
            WHERE user_id = :user_id AND revoked_at IS NULL
            RETURNING id
            """,
            {"now": _to_ts(now), "user_id": user_id},
        )
        return len(rows)

    async def delete_expired(self, now: datetime) -> int:
        rows = await self.db.execute(
            "DELETE FROM refresh_tokens WHERE expires_at <= :now RETURNING id",
            {"now": _to_ts(now)},
        )
        return len(rows)


def open_storage(path: str | None = None, **kwargs: Any) -> Storage:
    """Storage factory registered as the ``sqlite`` backend."""
    db = SQLiteDatabase(path=path, **kwargs)
    return Storage(
        users=SQLUserRepository(db),
        refresh_tokens=SQLRefreshTokenRepository(db),
        database=db,
    )
