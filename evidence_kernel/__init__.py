"""
Evidence Kernel

Tenant-isolated evidence sealing and deterministic readiness evaluation
for supply-chain regulatory frameworks (CBAM, EUDR, CSRD).
"""

from .errors import (
    FieldViolation,
    KernelError,
    ValidationFailed,
    ConflictError,
    AlreadySealed,
    EvidenceImmutable,
    IdempotencyConflict,
    NotFound,
    InternalError,
)
from .entities import Entity, EntityResolver, StaticEntityResolver
from .kernel import EvidenceKernel, KernelResponse

__version__ = "1.0.0"

__all__ = [
    "FieldViolation",
    "KernelError",
    "ValidationFailed",
    "ConflictError",
    "AlreadySealed",
    "EvidenceImmutable",
    "IdempotencyConflict",
    "NotFound",
    "InternalError",
    "Entity",
    "EntityResolver",
    "StaticEntityResolver",
    "EvidenceKernel",
    "KernelResponse",
    "__version__",
]
