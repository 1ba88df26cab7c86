"""Tests for storage backend discovery."""

import pytest

from subspace.backends.memory import MemoryUserRepository
from subspace.backends.sqlite import SQLiteDatabase, SQLUserRepository
from subspace.exceptions import ConfigError
from subspace.plugins import BUILTIN_BACKENDS, Storage, create_storage, discover_backends, get_backend


class TestDiscovery:
    """Tests for backend discovery."""

    def test_builtins_always_available(self):
        """Test that built-in backends are discovered."""
        backends = discover_backends()

        assert set(BUILTIN_BACKENDS) <= set(backends)

    def test_get_backend(self):
        """Test resolving a factory by name."""
        factory = get_backend("memory")

        assert callable(factory)

    def test_unknown_backend(self):
        """Test that an unknown backend is a config error."""
        with pytest.raises(ConfigError, match="Available"):
            get_backend("cassandra")


class TestCreateStorage:
    """Tests for create_storage."""

    @pytest.mark.asyncio
    async def test_memory(self):
        """Test building memory storage."""
        storage = create_storage("memory", path=None)

        assert isinstance(storage, Storage)
        assert isinstance(storage.users, MemoryUserRepository)

    @pytest.mark.asyncio
    async def test_sqlite(self):
        """Test building and initializing sqlite storage."""
        storage = create_storage("sqlite", path=":memory:")
        try:
            assert isinstance(storage.users, SQLUserRepository)
            assert isinstance(storage.database, SQLiteDatabase)
            await storage.initialize()
            assert await storage.users.count() == 0
        finally:
            await storage.close()
