"""Append-only, hash-chained audit ledger."""

from .ledger import (
    GENESIS_HASH,
    AuditEventType,
    AuditEvent,
    ChainVerification,
    AuditLedger,
)

__all__ = [
    "GENESIS_HASH",
    "AuditEventType",
    "AuditEvent",
    "ChainVerification",
    "AuditLedger",
]
