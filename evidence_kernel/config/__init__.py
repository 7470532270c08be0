"""Configuration module."""

from .settings import (
    Environment,
    StoreBackend,
    PostgresConfig,
    KernelConfig,
    Settings,
    get_settings,
    get_test_settings,
)

__all__ = [
    "Environment",
    "StoreBackend",
    "PostgresConfig",
    "KernelConfig",
    "Settings",
    "get_settings",
    "get_test_settings",
]
