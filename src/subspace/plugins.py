"""Storage backend discovery via a built-in registry and Python entry points."""

from dataclasses import dataclass
from importlib import import_module
from importlib.metadata import entry_points
from typing import Any, Callable

from subspace.exceptions import ConfigError
from subspace.protocols import Database, RefreshTokenRepository, UserRepository

ENTRY_POINT_GROUP = "subspace.storage"

BUILTIN_BACKENDS = {
    "memory": "subspace.backends.memory:open_storage",
    "sqlite": "subspace.backends.sqlite:open_storage",
}


@dataclass
class Storage:
    """The repositories a backend provides, plus its optional SQL handle."""

    users: UserRepository
    refresh_tokens: RefreshTokenRepository
    database: Database | None = None

    async def initialize(self) -> None:
        """Prepare the backend (schema creation for SQL stores)."""
        if self.database is not None:
            from subspace.backends.sqlite import init_schema

            await init_schema(self.database)

    async def close(self) -> None:
        if self.database is not None:
            await self.database.close()


def _load(target: str) -> Callable[..., Storage]:
    module_name, _, attr = target.partition(":")
    return getattr(import_module(module_name), attr)


def discover_backends() -> dict[str, Any]:
    """Discover storage backends.

    Built-in backends are always available; third-party packages can
    register more under the ``subspace.storage`` entry point group.

    Returns:
        Dictionary mapping backend names to storage factories
    """
    backends: dict[str, Any] = {name: target for name, target in BUILTIN_BACKENDS.items()}
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        backends[ep.name] = ep
    return backends


def get_backend(name: str) -> Callable[..., Storage]:
    """Get a storage factory by name.

    Raises:
        ConfigError: If the backend is not found
    """
    backends = discover_backends()
    if name not in backends:
        available = ", ".join(sorted(backends.keys())) or "(none)"
        raise ConfigError(f"Storage backend '{name}' not found. Available: {available}")
    found = backends[name]
    if isinstance(found, str):
        return _load(found)
    return found.load()


def create_storage(backend: str, **kwargs: Any) -> Storage:
    """Create a Storage bundle.

    Args:
        backend: The backend name (e.g., "memory", "sqlite")
        **kwargs: Backend-specific configuration

    Returns:
        A Storage with user and refresh token repositories
    """
    factory = get_backend(backend)
    return factory(**kwargs)
