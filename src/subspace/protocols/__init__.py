"""Protocol interfaces for pluggable storage backends."""

from subspace.protocols.database import Database, Row
from subspace.protocols.repositories import RefreshTokenRepository, UserRepository

__all__ = [
    "Database",
    "RefreshTokenRepository",
    "Row",
    "UserRepository",
]
