"""Configuration loading with environment variable substitution."""

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from subspace.exceptions import ConfigError

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

DEFAULT_JWT_SECRET = "default-secret-change-in-production"
MIN_PRODUCTION_SECRET_BYTES = 32

HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")


def substitute_env_vars(value: Any) -> Any:
    """Recursively substitute ${VAR_NAME} and ${VAR_NAME:-default} patterns.

    A variable that is unset and has no default is an error.
    """
    if isinstance(value, str):
        def replace(match: re.Match[str]) -> str:
            var_name, default = match.group(1), match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is None:
                if default is not None:
                    return default
                raise ValueError(f"Environment variable {var_name} is not set")
            return env_value

        return ENV_VAR_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [substitute_env_vars(v) for v in value]
    return value


class PasswordConfig(BaseModel):
    """Password hashing and policy settings."""

    min_length: int = 8
    time_cost: int = 3
    memory_cost: int = 65536  # KiB
    parallelism: int = 4
    hash_workers: int = 4


class JWTConfig(BaseModel):
    """Access/refresh token settings."""

    secret: str = DEFAULT_JWT_SECRET
    algorithm: str = "HS256"
    access_token_ttl_minutes: int = 24 * 60
    refresh_token_ttl_days: int = 7

    @field_validator("algorithm")
    @classmethod
    def _hmac_only(cls, value: str) -> str:
        if value not in HMAC_ALGORITHMS:
            raise ValueError(f"algorithm must be one of {', '.join(HMAC_ALGORITHMS)}")
        return value


class AppleConfig(BaseModel):
    """Sign in with Apple settings."""

    client_id: str = "com.subspace.app"
    keys_url: str = "https://appleid.apple.com/auth/keys"
    issuer: str = "https://appleid.apple.com"
    key_refresh_hours: int = 24
    min_key_refresh_seconds: int = 300
    timeout_seconds: float = 10.0


class GoogleConfig(BaseModel):
    """Google Sign-In settings."""

    client_id: str | None = None  # Audience check is skipped when unset
    tokeninfo_url: str = "https://oauth2.googleapis.com/tokeninfo"
    timeout_seconds: float = 10.0


class AuthConfig(BaseModel):
    """Authentication configuration."""

    jwt: JWTConfig = Field(default_factory=JWTConfig)
    password: PasswordConfig = Field(default_factory=PasswordConfig)
    apple: AppleConfig = Field(default_factory=AppleConfig)
    google: GoogleConfig = Field(default_factory=GoogleConfig)
    # Sentinel identity tokens accepted without verification (never in production)
    allow_mock_tokens: bool = False
    mock_tokens: list[str] = Field(default_factory=lambda: ["mock-token", "mock-id-token"])


class StorageConfig(BaseModel):
    """Storage backend configuration."""

    backend: str = "memory"  # memory | sqlite
    path: str | None = None  # For SQLite
    timeout_seconds: float = 3.0


class RateLimitConfig(BaseModel):
    """Per-IP rate limiting."""

    enabled: bool = True
    requests_per_minute: int = 100
    burst: int = 10


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    @field_validator("port")
    @classmethod
    def _valid_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError(f"invalid port number: {value}")
        return value


class Config(BaseModel):
    """Main configuration for subspace."""

    environment: Literal["development", "test", "production"] = "development"
    log_level: str = "INFO"
    log_format: str = "json"
    auth: AuthConfig = Field(default_factory=AuthConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    sweep_interval_minutes: int = 60

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def mock_tokens_enabled(self) -> bool:
        """Whether sentinel identity tokens may bypass verification."""
        return self.auth.allow_mock_tokens and not self.is_production

    def validate_for_environment(self) -> "Config":
        """Reject settings that are unsafe for the configured environment.

        Raises:
            ConfigError: If production runs with the default or a short secret,
                or with mock tokens
        """
        if self.is_production:
            secret = self.auth.jwt.secret
            if secret == DEFAULT_JWT_SECRET:
                raise ConfigError("JWT secret must be set in production")
            if len(secret.encode()) < MIN_PRODUCTION_SECRET_BYTES:
                raise ConfigError(f"JWT secret must be at least {MIN_PRODUCTION_SECRET_BYTES} bytes in production")
            if self.auth.allow_mock_tokens:
                raise ConfigError("Mock identity tokens cannot be enabled in production")
        return self

    @classmethod
    def from_file(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML or JSON file."""
        path = Path(path)
        with path.open() as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                import json
                data = json.load(f)

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Load configuration from a dictionary."""
        data = substitute_env_vars(data)
        return cls.model_validate(data).validate_for_environment()

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Config":
        """Load configuration from environment variables.

        Unset variables fall back to the model defaults.
        """
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {"auth": {"jwt": {}, "apple": {}, "google": {}}, "server": {}, "storage": {}, "rate_limit": {}}

        def put(section: dict[str, Any], key: str, var: str, convert: Any = str) -> None:
            value = env.get(var)
            if value:
                section[key] = convert(value)

        put(data, "environment", "ENVIRONMENT")
        put(data, "log_level", "LOG_LEVEL")
        put(data["server"], "host", "HOST")
        put(data["server"], "port", "PORT", int)
        put(data["server"], "cors_origins", "CORS_ALLOWED_ORIGINS", lambda v: v.split(","))
        put(data["auth"]["jwt"], "secret", "JWT_SECRET")
        put(data["auth"]["jwt"], "access_token_ttl_minutes", "JWT_EXPIRATION_MINUTES", int)
        put(data["auth"]["apple"], "client_id", "APPLE_CLIENT_ID")
        put(data["auth"]["google"], "client_id", "GOOGLE_CLIENT_ID")
        put(data["auth"], "allow_mock_tokens", "ALLOW_MOCK_TOKENS", lambda v: v.lower() in ("1", "true", "yes"))
        put(data["storage"], "backend", "STORAGE_BACKEND")
        put(data["storage"], "path", "DATABASE_PATH")
        put(data["rate_limit"], "requests_per_minute", "API_RATE_LIMIT", int)

        return cls.model_validate(data).validate_for_environment()
