"""
Kernel store interface.

All kernel state lives behind `KernelStore`. Work happens inside
`transaction()`, which yields a `StoreTransaction`: either everything done
through it commits, or nothing does.

Every method on tenant-owned data takes `tenant_id` as a required
positional argument. There is no unscoped read path for drafts, evidence,
audit events, commands or readiness records. Rules are the only global
data.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from evidence_kernel.audit_ledger.ledger import AuditEvent
from evidence_kernel.evidence_store.models import (
    Attachment,
    EvidenceDraft,
    EvidenceState,
    IngestionProfile,
    SealedEvidence,
)
from evidence_kernel.readiness.models import ReadinessContext, ReadinessGap, ReadinessResult
from evidence_kernel.readiness.rules import ReadinessRule


@dataclass(frozen=True)
class CommandRecord:
    """Stored effect of an idempotent command."""
    tenant_id: str
    command_id: str
    command_type: str
    result: Dict[str, Any]
    created_at: datetime
    expires_at: datetime
    request_fingerprint: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class StoreTransaction(ABC):
    """Operations available inside one atomic unit of work."""

    # Drafts -------------------------------------------------------------

    @abstractmethod
    def insert_draft(self, draft: EvidenceDraft) -> None: ...

    @abstractmethod
    def get_draft(self, tenant_id: str, draft_id: str) -> Optional[EvidenceDraft]: ...

    @abstractmethod
    def update_draft_if_drafting(self, draft: EvidenceDraft) -> bool:
        """Overwrite the declaration only while the stored status is DRAFTING."""

    @abstractmethod
    def transition_draft(
        self,
        tenant_id: str,
        draft_id: str,
        from_status: EvidenceState,
        to_status: EvidenceState,
        updated_at: datetime,
    ) -> bool:
        """Conditional status change; False when the stored status is not `from_status`."""

    # Attachments --------------------------------------------------------

    @abstractmethod
    def insert_attachment(self, attachment: Attachment) -> None: ...

    @abstractmethod
    def list_attachments(self, tenant_id: str, draft_id: str) -> List[Attachment]: ...

    # Sealed evidence ----------------------------------------------------

    @abstractmethod
    def insert_sealed(self, evidence: SealedEvidence) -> None: ...

    @abstractmethod
    def get_sealed(self, tenant_id: str, evidence_id: str) -> Optional[SealedEvidence]: ...

    @abstractmethod
    def list_sealed_for_subject(self, tenant_id: str, subject_entity_id: str) -> List[SealedEvidence]: ...

    @abstractmethod
    def list_quarantined(self, tenant_id: str) -> List[SealedEvidence]: ...

    # Ingestion profiles -------------------------------------------------

    @abstractmethod
    def upsert_profile(self, profile: IngestionProfile) -> None: ...

    @abstractmethod
    def get_profile(self, tenant_id: str, profile_id: str) -> Optional[IngestionProfile]: ...

    @abstractmethod
    def list_profiles(self, tenant_id: str) -> List[IngestionProfile]: ...

    # Audit ledger -------------------------------------------------------

    @abstractmethod
    def last_audit_event(self, tenant_id: str) -> Optional[AuditEvent]:
        """Most recent event; implementations serialize concurrent appenders per tenant."""

    @abstractmethod
    def insert_audit_event(self, event: AuditEvent) -> None: ...

    @abstractmethod
    def list_audit_events(self, tenant_id: str, correlation_id: Optional[str] = None) -> List[AuditEvent]: ...

    # Command ledger -----------------------------------------------------

    @abstractmethod
    def get_command(self, tenant_id: str, command_id: str) -> Optional[CommandRecord]: ...

    @abstractmethod
    def insert_command(self, record: CommandRecord) -> bool:
        """Store a command result. False when a live record already holds the key."""

    @abstractmethod
    def delete_expired_commands(self, now: datetime) -> int: ...

    # Readiness ----------------------------------------------------------

    @abstractmethod
    def insert_readiness_context(self, context: ReadinessContext) -> None: ...

    @abstractmethod
    def get_readiness_context(self, tenant_id: str, context_id: str) -> Optional[ReadinessContext]: ...

    @abstractmethod
    def insert_readiness_result(self, result: ReadinessResult) -> None: ...

    @abstractmethod
    def get_readiness_result(self, tenant_id: str, result_id: str) -> Optional[ReadinessResult]: ...

    @abstractmethod
    def insert_readiness_gaps(self, gaps: List[ReadinessGap]) -> None: ...

    @abstractmethod
    def list_readiness_gaps(self, tenant_id: str, result_id: str) -> List[ReadinessGap]: ...

    # Rules (global) -----------------------------------------------------

    @abstractmethod
    def list_rules(self, framework: str) -> List[ReadinessRule]: ...

    @abstractmethod
    def upsert_rule(self, rule: ReadinessRule) -> None: ...


class KernelStore(ABC):
    """Persistent, tenant-scoped state of the kernel."""

    def __init__(self):
        self._local = threading.local()

    @contextmanager
    def transaction(self, existing: Optional[StoreTransaction] = None) -> Iterator[StoreTransaction]:
        """
        Open a transaction, or join the one already open.

        Joining (explicitly through `existing`, or implicitly when this
        thread already has a transaction open) lets a command and the
        idempotency record of that command commit together.
        """
        current = existing or getattr(self._local, "tx", None)
        if current is not None:
            yield current
            return
        with self._begin() as tx:
            self._local.tx = tx
            try:
                yield tx
            finally:
                self._local.tx = None

    @abstractmethod
    def _begin(self) -> Iterator[StoreTransaction]:
        """Context manager: commit on clean exit, roll back on exception."""

    def close(self) -> None:
        """Release any held resources."""
