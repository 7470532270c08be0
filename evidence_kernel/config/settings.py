"""
Evidence Kernel - Configuration Settings

This module provides centralized configuration management with:
- Environment-based configuration
- Secrets via environment variables only
- Validation of required settings
- A configuration hash recorded with every evaluation

Audit Note: Configuration is version-controlled and changes are logged.
Sensitive values are never stored in code - only environment variables.
"""

from __future__ import annotations

import os
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Optional, Dict, Any

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class Environment(Enum):
    """Deployment environments with different security profiles."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class StoreBackend(Enum):
    """Where tenant-scoped kernel state is persisted."""
    MEMORY = "memory"
    POSTGRES = "postgres"


@dataclass(frozen=True)
class PostgresConfig:
    """
    Postgres connection configuration for the kernel store.

    Holds drafts, sealed evidence, the audit ledger, the command ledger
    and readiness results. SSL-enforced in production.
    """
    host: str
    port: int
    database: str
    username: str
    password: str  # From environment variable only
    ssl_mode: str = "require"
    connection_timeout: int = 30

    @property
    def connection_string(self) -> str:
        """Connection string with the password masked (safe to log)."""
        return (
            f"postgresql://{self.username}:***@"
            f"{self.host}:{self.port}/{self.database}"
            f"?sslmode={self.ssl_mode}"
        )

    @property
    def connection_params(self) -> Dict[str, Any]:
        """Keyword arguments for psycopg2.connect (never log this)."""
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.username,
            "password": self.password,
            "sslmode": self.ssl_mode,
            "connect_timeout": self.connection_timeout,
        }


@dataclass(frozen=True)
class KernelConfig:
    """
    Behavioral knobs of the evidence kernel.
    """
    store_backend: StoreBackend = StoreBackend.MEMORY

    # Idempotency ledger
    command_ttl_hours: int = 24
    command_cache_size: int = 10000

    # Quarantine
    max_resolution_days: int = 90
    followup_window_days: int = 14


@dataclass
class Settings:
    """
    Central settings object containing all configuration.

    The version string is the build marker stamped on every kernel
    response so clients can tell which code produced a digest.
    """
    environment: Environment
    postgres: PostgresConfig
    kernel: KernelConfig

    # Metadata
    version: str = "1.0.0"
    service_name: str = "evidence-kernel"
    initialized_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def build_version(self) -> str:
        return f"{self.service_name}/{self.version}"

    @property
    def config_hash(self) -> str:
        """
        SHA-256 of behavior-affecting configuration for the audit trail.

        Secrets are excluded since they do not change behavior.
        """
        config_str = (
            f"{self.environment.value}|"
            f"{self.kernel.store_backend.value}|"
            f"{self.postgres.host}:{self.postgres.port}/{self.postgres.database}|"
            f"ttl={self.kernel.command_ttl_hours}|"
            f"resolution={self.kernel.max_resolution_days}|"
            f"{self.version}"
        )
        return hashlib.sha256(config_str.encode()).hexdigest()

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if self.kernel.store_backend == StoreBackend.POSTGRES and not self.postgres.host:
            errors.append("Postgres host is required for the postgres store backend")
        if self.kernel.command_ttl_hours <= 0:
            errors.append("Command TTL must be positive")
        if self.kernel.command_cache_size < 0:
            errors.append("Command cache size cannot be negative")
        if not 0 < self.kernel.max_resolution_days <= 90:
            errors.append("Quarantine resolution window must be between 1 and 90 days")

        if self.environment == Environment.PRODUCTION:
            if self.kernel.store_backend != StoreBackend.POSTGRES:
                errors.append("Production requires the postgres store backend")
            if self.postgres.ssl_mode != "require":
                errors.append("SSL must be required in production")

        return errors


def _get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    """Get environment variable with validation."""
    value = os.environ.get(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value or ""


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load and cache settings from environment variables.

    Called once at startup; settings are immutable afterwards.
    """
    env_name = _get_env("ENVIRONMENT", "development")
    environment = Environment(env_name.lower())

    logger.info(f"Loading configuration for environment: {environment.value}")

    settings = Settings(
        environment=environment,

        postgres=PostgresConfig(
            host=_get_env("POSTGRES_HOST", "localhost"),
            port=int(_get_env("POSTGRES_PORT", "5432")),
            database=_get_env("POSTGRES_DATABASE", "evidence"),
            username=_get_env("POSTGRES_USER", "evidence_app"),
            password=_get_env("POSTGRES_PASSWORD", required=environment == Environment.PRODUCTION),
            ssl_mode=_get_env("POSTGRES_SSL_MODE", "require" if environment == Environment.PRODUCTION else "prefer"),
        ),

        kernel=KernelConfig(
            store_backend=StoreBackend(_get_env("STORE_BACKEND", "memory").lower()),
            command_ttl_hours=int(_get_env("COMMAND_TTL_HOURS", "24")),
            command_cache_size=int(_get_env("COMMAND_CACHE_SIZE", "10000")),
            max_resolution_days=int(_get_env("MAX_RESOLUTION_DAYS", "90")),
            followup_window_days=int(_get_env("QUARANTINE_FOLLOWUP_WINDOW_DAYS", "14")),
        ),

        version=_get_env("BUILD_VERSION", "1.0.0"),
    )

    errors = settings.validate()
    if errors and environment == Environment.PRODUCTION:
        raise ValueError(f"Configuration errors in production: {errors}")
    elif errors:
        for error in errors:
            logger.warning(f"Configuration warning: {error}")

    logger.info(f"Configuration loaded. Hash: {settings.config_hash[:16]}...")

    return settings


# Convenience function for tests
def get_test_settings() -> Settings:
    """Get settings configured for testing."""
    return Settings(
        environment=Environment.DEVELOPMENT,
        postgres=PostgresConfig(
            host="localhost",
            port=5432,
            database="evidence_test",
            username="test_user",
            password="test_password",
            ssl_mode="disable",
        ),
        kernel=KernelConfig(
            store_backend=StoreBackend.MEMORY,
            command_cache_size=100,
        ),
        version="1.0.0-test",
    )
