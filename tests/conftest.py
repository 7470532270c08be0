"""
Pytest Configuration and Shared Fixtures

Centralized fixtures for the kernel test suite: a controllable clock, an
in-memory store, a tenant-scoped entity registry and fully wired kernel
components.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict

import pytest

# Add the project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from evidence_kernel.audit_ledger import AuditLedger
from evidence_kernel.config import PostgresConfig, get_test_settings
from evidence_kernel.entities import Entity, StaticEntityResolver
from evidence_kernel.evidence_store import EvidenceStateMachine, ProfileRegistry
from evidence_kernel.kernel import EvidenceKernel
from evidence_kernel.observability import MetricsCollector, Tracer
from evidence_kernel.storage import InMemoryStore

# Configure test logging
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger("tests")

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"
SUPPLIER = "supplier-42"


# =============================================================================
# CLOCK
# =============================================================================

class FrozenClock:
    """Deterministic clock; advances only when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))


# =============================================================================
# KERNEL COMPONENTS
# =============================================================================

@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def resolver() -> StaticEntityResolver:
    """Both tenants know supplier-42; only tenant-a knows site-7."""
    registry = StaticEntityResolver()
    registry.register(Entity(TENANT_A, SUPPLIER, "SUPPLIER", "Acme Steel GmbH"))
    registry.register(Entity(TENANT_B, SUPPLIER, "SUPPLIER", "Acme Steel GmbH"))
    registry.register(Entity(TENANT_A, "site-7", "SITE", "Duisburg works"))
    return registry


@pytest.fixture
def ledger(store, clock) -> AuditLedger:
    return AuditLedger(store, clock=clock)


@pytest.fixture
def machine(store, ledger, resolver, clock) -> EvidenceStateMachine:
    return EvidenceStateMachine(store, ledger, resolver, clock=clock)


@pytest.fixture
def registry(store, ledger, resolver, clock) -> ProfileRegistry:
    return ProfileRegistry(store, ledger, resolver, clock=clock)


@pytest.fixture
def kernel(store, resolver, clock) -> EvidenceKernel:
    return EvidenceKernel(
        settings=get_test_settings(),
        store=store,
        entity_resolver=resolver,
        clock=clock,
        tracer=Tracer(export_logs=False),
        metrics=MetricsCollector(),
    )


# =============================================================================
# DECLARATIONS
# =============================================================================

@pytest.fixture
def make_declaration() -> Callable[..., Dict[str, Any]]:
    """
    Builder for a declaration that seals cleanly.

    Supplier master data for supplier-42 pushed over the ERP API, carrying
    every field the default CBAM-001 rule asks for. Keyword overrides
    replace fields; an override of None removes the field.
    """
    def build(**overrides) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "declared_scope": "LEGAL_ENTITY",
            "scope_target_id": SUPPLIER,
            "evidence_type": "SUPPLIER_MASTER",
            "justification": "Quarterly supplier master data for CBAM reporting",
            "purpose_tags": ["CBAM"],
            "contains_personal_data": False,
            "retention_policy": "7_YEARS",
            "ingestion_method": "ERP_API",
            "authority_type": "SUPPLIER",
            "structured_payload": {
                "supplier": {"name": "Acme Steel GmbH", "country": "DE"},
                "installation": {"id": "DE-INST-001"},
            },
        }
        for name, value in overrides.items():
            if value is None:
                fields.pop(name, None)
            else:
                fields[name] = value
        return fields

    return build


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture(scope="session")
def postgres_config() -> PostgresConfig:
    return PostgresConfig(
        host=os.getenv("TEST_DB_HOST", "localhost"),
        port=int(os.getenv("TEST_DB_PORT", "5432")),
        database=os.getenv("TEST_DB_NAME", "evidence_test"),
        username=os.getenv("TEST_DB_USER", "evidence_app"),
        password=os.getenv("TEST_DB_PASSWORD", ""),
        ssl_mode="disable",
        connection_timeout=3,
    )


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, no external deps)")
    config.addinivalue_line("markers", "integration: Integration tests (require database)")
    config.addinivalue_line("markers", "requires_db: Requires database connection")
