"""Configuration schema for the groover operator.

Defines Pydantic models for loading and validating operator configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


class RedisConfig(BaseModel):
    """Redis configuration for worker registrations and authorization facts."""

    url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL",
    )
    password: str | None = Field(default=None, description="Redis password (REDIS_AUTH)")
    db: int = Field(default=0, ge=0, le=15, description="Redis database number")
    registration_key_prefix: str = Field(
        default="groover:",
        description="Key prefix for group -> user worker registrations",
    )
    authorization_key_prefix: str = Field(
        default="oauth:",
        description="Key prefix for user authorization facts (owned externally)",
    )
    reservation_ttl_seconds: int = Field(
        default=60,
        ge=5,
        description="Expiry of a provisional reservation while a worker is being created",
    )
    connection_pool_size: int = Field(
        default=10,
        ge=1,
        description="Redis connection pool size",
    )

    @field_validator("url")
    @classmethod
    def normalize_url(cls, v: str) -> str:
        """Accept bare host:port addresses (REDIS_ADDR style)."""
        if "://" not in v:
            return f"redis://{v}"
        return v


class NatsConfig(BaseModel):
    """NATS message bus configuration."""

    url: str = Field(default="nats://localhost:4222", description="NATS server URL")
    connect_timeout_s: float = Field(
        default=5.0, gt=0, description="Initial connection timeout in seconds"
    )


class CredentialServiceConfig(BaseModel):
    """Credential-exchange (authify) service configuration."""

    url: str | None = Field(default=None, description="Base URL of the credential service")
    auth_key: str | None = Field(
        default=None,
        description="Static service credential sent as the Authorization header",
    )
    timeout_s: float = Field(default=10.0, gt=0, description="HTTP request timeout")

    @field_validator("url")
    @classmethod
    def strip_trailing_slash(cls, v: str | None) -> str | None:
        """Strip trailing slashes so endpoint paths join cleanly."""
        if v is None:
            return v
        return v.rstrip("/")


class KubernetesConfig(BaseModel):
    """Workload scheduler configuration."""

    namespace: str = Field(default="groover", description="Namespace for worker pods")
    template_path: Path = Field(
        default=Path("deployment.json"),
        description="Worker pod specification with $GUILD_ID/$USER_ID/$TOKEN/$POD_NAME",
    )
    worker_name_prefix: str = Field(default="worker-", description="Worker pod name prefix")
    in_cluster: bool = Field(
        default=True,
        description="Load in-cluster service account config (kubeconfig otherwise)",
    )
    watch_timeout_seconds: int = Field(
        default=300,
        ge=0,
        description="Server-side watch timeout before the reconciler re-lists",
    )
    reconnect_backoff_s: float = Field(
        default=2.0,
        ge=0,
        description="Delay before re-listing after a watch error",
    )


class DiscordConfig(BaseModel):
    """Voice gateway configuration."""

    token: str | None = Field(default=None, description="Bot token (DISCORD_TOKEN)")


class HealthConfig(BaseModel):
    """Health check HTTP server configuration."""

    enabled: bool = Field(default=True, description="Serve health check endpoints")
    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8081, ge=1024, le=65535, description="Bind port")


class OperatorConfig(BaseModel):
    """Root operator configuration."""

    redis: RedisConfig = Field(default_factory=RedisConfig)
    nats: NatsConfig = Field(default_factory=NatsConfig)
    credentials: CredentialServiceConfig = Field(default_factory=CredentialServiceConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    def require_runtime_settings(self) -> None:
        """Check the settings the operator cannot start without.

        Raises:
            ValueError: If the Discord token or credential service URL is missing
        """
        if not self.discord.token:
            raise ValueError(
                "Discord token not configured. "
                "Resolution: set DISCORD_TOKEN or discord.token in the config file."
            )
        if not self.credentials.url:
            raise ValueError(
                "Credential service URL not configured. "
                "Resolution: set AUTHIFY_URL or credentials.url in the config file."
            )

    @staticmethod
    def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
        """Overlay environment variables onto raw configuration data."""
        overrides = [
            ("REDIS_ADDR", "redis", "url"),
            ("REDIS_URL", "redis", "url"),
            ("REDIS_AUTH", "redis", "password"),
            ("NATS_URL", "nats", "url"),
            ("AUTHIFY_URL", "credentials", "url"),
            ("AUTHIFY_KEY", "credentials", "auth_key"),
            ("DISCORD_TOKEN", "discord", "token"),
            ("GROOVER_NAMESPACE", "kubernetes", "namespace"),
        ]
        for env_name, section, key in overrides:
            if value := os.getenv(env_name):
                if section not in data or data[section] is None:
                    data[section] = {}
                data[section][key] = value

        if log_level := os.getenv("LOG_LEVEL"):
            data["log_level"] = log_level

        return data

    @classmethod
    def from_yaml(cls, path: Path) -> "OperatorConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(cls._apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "OperatorConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(cls._apply_env_overrides({}))
