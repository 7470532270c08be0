"""
Append-Only Audit Ledger

Every state transition in the kernel appends exactly one event here, inside
the same store transaction as the transition itself. Either both commit or
neither does.

Events are hash-chained per tenant: each event carries the hash of its
predecessor, so any edit or deletion in the stored history is detectable
by `verify_chain`.

Audit Note:
- Events are never updated or deleted (frozen dataclass, no store API for
  it, and a database trigger on the Postgres table)
- Every read carries the tenant id as a mandatory filter
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from evidence_kernel.canonical import canonical_json, digest_record

if TYPE_CHECKING:
    from evidence_kernel.storage.base import KernelStore, StoreTransaction

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


class AuditEventType(Enum):
    DRAFT_CREATED = "DRAFT_CREATED"
    DRAFT_UPDATED = "DRAFT_UPDATED"
    ATTACHMENT_ADDED = "ATTACHMENT_ADDED"
    EVIDENCE_SEALED = "EVIDENCE_SEALED"
    EVIDENCE_QUARANTINED = "EVIDENCE_QUARANTINED"
    PROFILE_REGISTERED = "PROFILE_REGISTERED"
    PROFILE_STATUS_CHANGED = "PROFILE_STATUS_CHANGED"
    READINESS_EVALUATED = "READINESS_EVALUATED"


@dataclass(frozen=True)
class AuditEvent:
    """A single immutable ledger entry."""
    event_id: str
    tenant_id: str
    sequence_number: int
    correlation_id: str
    event_type: AuditEventType
    actor_id: str
    occurred_at: datetime
    previous_event_hash: str
    event_hash: str
    detail: Dict[str, Any] = field(default_factory=dict)

    def hashed_content(self) -> Dict[str, Any]:
        """Everything the event hash covers (all fields except the hash)."""
        return {
            "event_id": self.event_id,
            "tenant_id": self.tenant_id,
            "sequence_number": self.sequence_number,
            "correlation_id": self.correlation_id,
            "event_type": self.event_type,
            "actor_id": self.actor_id,
            "occurred_at": self.occurred_at,
            "previous_event_hash": self.previous_event_hash,
            "detail": self.detail,
        }

    def compute_hash(self) -> str:
        return digest_record(self.hashed_content())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "sequence_number": self.sequence_number,
            "correlation_id": self.correlation_id,
            "event_type": self.event_type.value,
            "actor_id": self.actor_id,
            "occurred_at": self.occurred_at.isoformat(),
            "detail": self.detail,
            "previous_event_hash": self.previous_event_hash,
            "event_hash": self.event_hash,
        }


@dataclass(frozen=True)
class ChainVerification:
    tenant_id: str
    valid: bool
    event_count: int
    first_broken_sequence: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "valid": self.valid,
            "event_count": self.event_count,
            "first_broken_sequence": self.first_broken_sequence,
        }


class AuditLedger:
    """
    Tenant-scoped, hash-chained event log.

    `append` never opens its own transaction: it must be handed the
    transaction that carries the state change being recorded.
    """

    def __init__(self, store: KernelStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(f"{__name__}.AuditLedger")

    def append(
        self,
        tx: StoreTransaction,
        tenant_id: str,
        event_type: AuditEventType,
        actor_id: str,
        correlation_id: str,
        detail: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> AuditEvent:
        """Append one event within an open transaction."""
        previous = tx.last_audit_event(tenant_id)
        sequence_number = previous.sequence_number + 1 if previous else 1
        previous_hash = previous.event_hash if previous else GENESIS_HASH

        # Store the detail in the exact primitive form that was hashed
        normalized_detail = json.loads(canonical_json(detail or {}))

        unhashed = AuditEvent(
            event_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            sequence_number=sequence_number,
            correlation_id=correlation_id,
            event_type=event_type,
            actor_id=actor_id,
            occurred_at=occurred_at or self._clock(),
            previous_event_hash=previous_hash,
            event_hash="",
            detail=normalized_detail,
        )
        event = replace(unhashed, event_hash=unhashed.compute_hash())

        tx.insert_audit_event(event)

        self.logger.info(
            f"Audit event {event_type.value}: tenant={tenant_id}, seq={sequence_number}, "
            f"correlation_id={correlation_id}, hash={event.event_hash[:16]}"
        )
        return event

    def events(self, tenant_id: str, correlation_id: Optional[str] = None) -> List[AuditEvent]:
        """Events for one tenant in sequence order, optionally for one correlation id."""
        with self.store.transaction() as tx:
            return tx.list_audit_events(tenant_id, correlation_id)

    def verify_chain(self, tenant_id: str) -> ChainVerification:
        """Recompute every hash and link for a tenant's history."""
        events = self.events(tenant_id)
        expected_previous = GENESIS_HASH

        for expected_sequence, event in enumerate(events, start=1):
            broken = (
                event.sequence_number != expected_sequence
                or event.previous_event_hash != expected_previous
                or event.compute_hash() != event.event_hash
            )
            if broken:
                self.logger.warning(
                    f"Audit chain broken for tenant {tenant_id} at sequence {event.sequence_number}"
                )
                return ChainVerification(
                    tenant_id=tenant_id,
                    valid=False,
                    event_count=len(events),
                    first_broken_sequence=event.sequence_number,
                )
            expected_previous = event.event_hash

        return ChainVerification(tenant_id=tenant_id, valid=True, event_count=len(events))
