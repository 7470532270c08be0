"""
Error taxonomy for the Evidence Kernel.

Components raise these; only the kernel facade turns them into responses.

Audit Note:
- Validation errors always carry the complete list of violations
- Not-found is raised identically for "missing" and "owned by another tenant"
- Internal errors surface a correlation id for operator diagnosis
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class FieldViolation:
    """A single field-level validation failure."""
    field: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "error": self.error}


class KernelError(Exception):
    """Base class for all errors raised by the kernel."""

    error_code = "KERNEL_ERROR"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_body(self) -> Dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message}


class CanonicalizationError(KernelError):
    """A value has no deterministic serialized form."""

    error_code = "CANONICALIZATION_FAILED"


class ValidationFailed(KernelError):
    """One or more fields are missing or malformed."""

    error_code = "VALIDATION_FAILED"
    http_status = 422

    def __init__(self, violations: List[FieldViolation], message: Optional[str] = None):
        self.violations = list(violations)
        super().__init__(message or f"{len(self.violations)} validation error(s)")

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        body["errors"] = [v.to_dict() for v in self.violations]
        return body


class ConflictError(KernelError):
    """The request conflicts with the current state of a record."""

    error_code = "CONFLICT"
    http_status = 409


class AlreadySealed(ConflictError):
    error_code = "ALREADY_SEALED"


class EvidenceImmutable(ConflictError):
    error_code = "EVIDENCE_SEALED_IMMUTABLE"


class IdempotencyConflict(ConflictError):
    error_code = "IDEMPOTENCY_CONFLICT"


class NotFound(KernelError):
    """
    Record does not exist for the calling tenant.

    The message never names the record type owner so that cross-tenant
    lookups look exactly like lookups of ids that were never issued.
    """

    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str = "resource"):
        super().__init__(f"{resource} not found")


class InternalError(KernelError):
    error_code = "INTERNAL_ERROR"
    http_status = 500
