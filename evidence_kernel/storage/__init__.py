"""Kernel persistence: store interface and backends."""

import logging

from evidence_kernel.config.settings import Settings, StoreBackend
from .base import CommandRecord, KernelStore, StoreTransaction
from .memory import InMemoryStore
from .postgres import PostgresStore

logger = logging.getLogger(__name__)


def create_store(settings: Settings) -> KernelStore:
    """Build the store selected by `settings.kernel.store_backend`."""
    backend = settings.kernel.store_backend
    if backend == StoreBackend.POSTGRES:
        store = PostgresStore(settings.postgres)
        store.ensure_schema()
    else:
        store = InMemoryStore()
    logger.info(f"Kernel store backend: {backend.value}")
    return store


__all__ = [
    "CommandRecord",
    "KernelStore",
    "StoreTransaction",
    "InMemoryStore",
    "PostgresStore",
    "create_store",
]
