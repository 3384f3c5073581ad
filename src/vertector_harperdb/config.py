"""
Configuration management for the HarperDB client.

This module provides:
- Pydantic-based configuration validation
- Secrets management integration (AWS Secrets Manager, environment variables)
- Retry, cache and connection pool configuration
- Loading from environment variables / .env files
"""

import os
import json
import logging
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from enum import Enum

logger = logging.getLogger(__name__)


# ============================================================================
# Secrets Management
# ============================================================================

class SecretsProvider(str, Enum):
    """Where password_secret_name is looked up."""
    ENV = "env"
    AWS_SECRETS_MANAGER = "aws_secrets_manager"
    AZURE_KEY_VAULT = "azure_key_vault"
    HASHICORP_VAULT = "hashicorp_vault"


class SecretsManager:
    """
    Resolves HarperDB credentials by secret name.

    ENV reads an environment variable. AWS_SECRETS_MANAGER reads a secret
    whose string is either the bare password or a JSON object with a
    "password" key (the layout AWS uses for database credentials). The
    remaining providers are declared for configuration files but raise
    NotImplementedError.
    """

    def __init__(self, provider: SecretsProvider = SecretsProvider.ENV):
        self.provider = SecretsProvider(provider)
        self._aws_client = None

    def get_secret(self, secret_name: str, default: Optional[str] = None) -> Optional[str]:
        """
        Look up one secret.

        Args:
            secret_name: Environment variable or secret id
            default: Returned when the secret does not exist

        Raises:
            ValueError: If the secret does not exist and no default is given
            NotImplementedError: For providers without a reader
        """
        readers = {
            SecretsProvider.ENV: self._read_env,
            SecretsProvider.AWS_SECRETS_MANAGER: self._read_aws,
        }
        reader = readers.get(self.provider)
        if reader is None:
            raise NotImplementedError(f"Provider {self.provider.value} not yet implemented")

        value = reader(secret_name)
        if value is not None:
            return value
        if default is not None:
            logger.warning(f"Secret '{secret_name}' not found via {self.provider.value}, using default")
            return default
        raise ValueError(f"Secret '{secret_name}' not found via {self.provider.value}")

    def _read_env(self, secret_name: str) -> Optional[str]:
        return os.getenv(secret_name)

    def _read_aws(self, secret_name: str) -> Optional[str]:
        try:
            import boto3
            from botocore.exceptions import ClientError
        except ImportError:
            raise ImportError(
                "AWS Secrets Manager requires boto3. Install with: pip install vertector-harperdb[aws]"
            )

        if self._aws_client is None:
            self._aws_client = boto3.client("secretsmanager")

        try:
            response = self._aws_client.get_secret_value(SecretId=secret_name)
        except ClientError as e:
            if e.response["Error"]["Code"] == "ResourceNotFoundException":
                return None
            raise ValueError(f"Failed to retrieve secret '{secret_name}': {e}")

        secret_string = response.get("SecretString")
        if not secret_string:
            binary = response.get("SecretBinary")
            return binary.decode("utf-8") if isinstance(binary, bytes) else binary
        try:
            parsed = json.loads(secret_string)
        except json.JSONDecodeError:
            return secret_string
        if isinstance(parsed, dict) and "password" in parsed:
            return parsed["password"]
        return secret_string


# ============================================================================
# Configuration Models
# ============================================================================

class RetryConfig(BaseModel):
    """Retry configuration for transient transport failures."""

    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Maximum number of retries after the first attempt"
    )

    retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Base retry delay in seconds (delay = retry_delay * attempt)"
    )


class CacheConfig(BaseModel):
    """Response cache configuration for read operations."""

    enabled: bool = Field(
        default=False,
        description="Enable response caching for read operations"
    )

    ttl: float = Field(
        default=5.0,
        gt=0.0,
        le=86400.0,
        description="Default time-to-live for cached responses in seconds"
    )

    max_size: int = Field(
        default=1000,
        ge=1,
        le=1_000_000,
        description="Maximum number of live cache entries"
    )

    sweep_interval: float = Field(
        default=60.0,
        gt=0.0,
        le=3600.0,
        description="Seconds between background sweeps of expired entries"
    )


class PoolConfig(BaseModel):
    """Connection pool and fan-out configuration."""

    pool_size: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Maximum number of concurrent in-flight operations for batch/parallel calls"
    )

    keep_alive: bool = Field(
        default=True,
        description="Reuse sockets across requests"
    )

    keep_alive_expiry: float = Field(
        default=1.0,
        gt=0.0,
        le=300.0,
        description="Seconds an idle keep-alive connection is kept open"
    )

    max_connections: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Maximum number of open sockets"
    )

    max_keepalive_connections: int = Field(
        default=10,
        ge=0,
        le=1000,
        description="Maximum number of idle sockets kept for reuse"
    )

    @model_validator(mode='after')
    def validate_pool_config(self):
        """Validate pool configuration consistency."""
        if self.max_keepalive_connections > self.max_connections:
            raise ValueError("max_keepalive_connections cannot exceed max_connections")
        return self


class HarperDBConfig(BaseModel):
    """
    Complete configuration for the HarperDB client.

    Example usage:
        config = HarperDBConfig(
            url="https://harper.example.com:9925",
            username="HDB_ADMIN",
            password_secret_name="prod/harperdb/password",
            schema="production",
            cache=CacheConfig(enabled=True, ttl=10.0),
        )
        config.resolve_secrets()

        async with HarperDB(config) as db:
            ...
    """

    # Connection settings
    url: str = Field(
        description="HarperDB operations API URL"
    )

    api_path: str = Field(
        default="",
        description="Path prefix for the operations endpoint"
    )

    username: str = Field(
        description="Database username"
    )

    password: Optional[str] = Field(
        default=None,
        description="Database password (prefer password_secret_name)"
    )

    password_secret_name: Optional[str] = Field(
        default=None,
        description="Secret name for password (if using secrets manager)"
    )

    schema_name: str = Field(
        default="dev",
        alias="schema",
        description="Default logical schema (database) for table operations"
    )

    timeout: float = Field(
        default=30.0,
        gt=0.0,
        le=600.0,
        description="Per-request timeout in seconds"
    )

    # Resilience
    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Retry configuration"
    )

    # Caching
    cache: CacheConfig = Field(
        default_factory=CacheConfig,
        description="Response cache configuration"
    )

    # Performance
    pool: PoolConfig = Field(
        default_factory=PoolConfig,
        description="Connection pool configuration"
    )

    # Secrets management
    secrets_provider: SecretsProvider = Field(
        default=SecretsProvider.ENV,
        description="Secrets management provider"
    )

    model_config = ConfigDict(
        use_enum_values=True,
        validate_assignment=True,
        populate_by_name=True,
    )

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        """Validate endpoint URL."""
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"URL must be an absolute http(s) URL, got {v!r}")
        return v.rstrip('/')

    @field_validator('api_path')
    @classmethod
    def validate_api_path(cls, v):
        """Normalize the operations path prefix."""
        v = v.strip().rstrip('/')
        if v and not v.startswith('/'):
            v = '/' + v
        return v

    @field_validator('schema_name')
    @classmethod
    def validate_schema_name(cls, v):
        """Validate schema name."""
        if not v or not v.replace('_', '').isalnum():
            raise ValueError(
                "Schema must be alphanumeric with optional underscores"
            )
        return v

    @model_validator(mode='after')
    def validate_credentials(self):
        """Validate authentication configuration."""
        if not self.username:
            raise ValueError("Authentication requires username")
        if self.password is None and not self.password_secret_name:
            raise ValueError(
                "Authentication requires either 'password' or 'password_secret_name'"
            )
        return self

    @property
    def endpoint(self) -> str:
        """Path the operations endpoint is posted to."""
        return f"{self.api_path}/"

    def get_secrets_manager(self) -> SecretsManager:
        """Get configured secrets manager instance."""
        return SecretsManager(provider=self.secrets_provider)

    def resolve_secrets(self) -> None:
        """
        Resolve all secret references using the configured secrets manager.

        This should be called after loading config to replace secret references
        with actual values from the secrets provider.
        """
        if self.password_secret_name:
            secrets_manager = self.get_secrets_manager()
            self.password = secrets_manager.get_secret(self.password_secret_name)
            self.password_secret_name = None


def load_config_from_env(dotenv_path: Optional[str] = None) -> HarperDBConfig:
    """
    Load configuration from environment variables.

    Environment variables (a .env file is read first if present):
        HARPERDB_URL: Operations API URL
        HARPERDB_API_PATH: Path prefix for the operations endpoint
        HARPERDB_USERNAME: Database username
        HARPERDB_PASSWORD: Database password (not recommended - use secret)
        HARPERDB_PASSWORD_SECRET: Secret name for password
        HARPERDB_SCHEMA: Default schema (default: dev)
        HARPERDB_TIMEOUT: Request timeout in seconds (default: 30)
        HARPERDB_MAX_RETRIES: Retry budget (default: 3)
        HARPERDB_RETRY_DELAY: Base retry delay in seconds (default: 1)
        HARPERDB_POOL_SIZE: Fan-out width for batch operations (default: 10)
        HARPERDB_CACHE_ENABLED: Enable response caching (true/false)
        HARPERDB_CACHE_TTL: Cache TTL in seconds (default: 5)
        HARPERDB_CACHE_MAX_SIZE: Cache capacity (default: 1000)
        HARPERDB_KEEP_ALIVE: Reuse sockets (default: true)
        SECRETS_PROVIDER: Secrets provider (env, aws_secrets_manager)

    Returns:
        Validated configuration
    """
    load_dotenv(dotenv_path)

    config = HarperDBConfig(
        url=os.getenv("HARPERDB_URL", "http://localhost:9925"),
        api_path=os.getenv("HARPERDB_API_PATH", ""),
        username=os.getenv("HARPERDB_USERNAME", "HDB_ADMIN"),
        password=os.getenv("HARPERDB_PASSWORD"),
        password_secret_name=os.getenv("HARPERDB_PASSWORD_SECRET"),
        schema=os.getenv("HARPERDB_SCHEMA", "dev"),
        timeout=float(os.getenv("HARPERDB_TIMEOUT", "30")),
        retry=RetryConfig(
            max_retries=int(os.getenv("HARPERDB_MAX_RETRIES", "3")),
            retry_delay=float(os.getenv("HARPERDB_RETRY_DELAY", "1")),
        ),
        cache=CacheConfig(
            enabled=os.getenv("HARPERDB_CACHE_ENABLED", "false").lower() == "true",
            ttl=float(os.getenv("HARPERDB_CACHE_TTL", "5")),
            max_size=int(os.getenv("HARPERDB_CACHE_MAX_SIZE", "1000")),
        ),
        pool=PoolConfig(
            pool_size=int(os.getenv("HARPERDB_POOL_SIZE", "10")),
            keep_alive=os.getenv("HARPERDB_KEEP_ALIVE", "true").lower() == "true",
        ),
        secrets_provider=SecretsProvider(
            os.getenv("SECRETS_PROVIDER", "env")
        ),
    )

    config.resolve_secrets()

    return config
