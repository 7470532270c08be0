"""
In-process kernel store.

Used by the test suite and single-process deployments. Transactions are
serialized by a re-entrant lock; on exception the state captured at the
start of the transaction is restored, so a failed transition leaves no
trace.

Records are copied on the way in and out so callers never hold a
reference to stored state.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from evidence_kernel.audit_ledger.ledger import AuditEvent
from evidence_kernel.evidence_store.models import (
    Attachment,
    EvidenceDraft,
    EvidenceState,
    IngestionProfile,
    LedgerState,
    SealedEvidence,
)
from evidence_kernel.readiness.models import ReadinessContext, ReadinessGap, ReadinessResult
from evidence_kernel.readiness.rules import ReadinessRule
from .base import CommandRecord, KernelStore, StoreTransaction

logger = logging.getLogger(__name__)

TenantKey = Tuple[str, str]


@dataclass
class _State:
    drafts: Dict[TenantKey, EvidenceDraft] = field(default_factory=dict)
    attachments: Dict[TenantKey, Attachment] = field(default_factory=dict)
    sealed: Dict[TenantKey, SealedEvidence] = field(default_factory=dict)
    profiles: Dict[TenantKey, IngestionProfile] = field(default_factory=dict)
    audit_events: Dict[str, List[AuditEvent]] = field(default_factory=dict)
    commands: Dict[TenantKey, CommandRecord] = field(default_factory=dict)
    contexts: Dict[TenantKey, ReadinessContext] = field(default_factory=dict)
    results: Dict[TenantKey, ReadinessResult] = field(default_factory=dict)
    gaps: Dict[TenantKey, List[ReadinessGap]] = field(default_factory=dict)
    rules: Dict[Tuple[str, int], ReadinessRule] = field(default_factory=dict)


class InMemoryTransaction(StoreTransaction):
    """Direct access to the shared state while the store lock is held."""

    def __init__(self, state: _State):
        self._state = state

    # Drafts -------------------------------------------------------------

    def insert_draft(self, draft: EvidenceDraft) -> None:
        key = (draft.tenant_id, draft.draft_id)
        if key in self._state.drafts:
            raise ValueError(f"Duplicate draft id {draft.draft_id}")
        self._state.drafts[key] = copy.deepcopy(draft)

    def get_draft(self, tenant_id: str, draft_id: str) -> Optional[EvidenceDraft]:
        draft = self._state.drafts.get((tenant_id, draft_id))
        return copy.deepcopy(draft) if draft is not None else None

    def update_draft_if_drafting(self, draft: EvidenceDraft) -> bool:
        key = (draft.tenant_id, draft.draft_id)
        stored = self._state.drafts.get(key)
        if stored is None or stored.status != EvidenceState.DRAFTING:
            return False
        updated = copy.deepcopy(draft)
        updated.status = EvidenceState.DRAFTING
        self._state.drafts[key] = updated
        return True

    def transition_draft(
        self,
        tenant_id: str,
        draft_id: str,
        from_status: EvidenceState,
        to_status: EvidenceState,
        updated_at: datetime,
    ) -> bool:
        stored = self._state.drafts.get((tenant_id, draft_id))
        if stored is None or stored.status != from_status:
            return False
        stored.status = to_status
        stored.updated_at = updated_at
        return True

    # Attachments --------------------------------------------------------

    def insert_attachment(self, attachment: Attachment) -> None:
        self._state.attachments[(attachment.tenant_id, attachment.attachment_id)] = attachment

    def list_attachments(self, tenant_id: str, draft_id: str) -> List[Attachment]:
        return sorted(
            (a for (t, _), a in self._state.attachments.items() if t == tenant_id and a.draft_id == draft_id),
            key=lambda a: (a.created_at, a.attachment_id),
        )

    # Sealed evidence ----------------------------------------------------

    def insert_sealed(self, evidence: SealedEvidence) -> None:
        key = (evidence.tenant_id, evidence.evidence_id)
        if key in self._state.sealed:
            raise ValueError(f"Sealed evidence {evidence.evidence_id} already exists")
        if any(t == evidence.tenant_id and e.draft_id == evidence.draft_id
               for (t, _), e in self._state.sealed.items()):
            raise ValueError(f"Draft {evidence.draft_id} already has sealed evidence")
        self._state.sealed[key] = copy.deepcopy(evidence)

    def get_sealed(self, tenant_id: str, evidence_id: str) -> Optional[SealedEvidence]:
        evidence = self._state.sealed.get((tenant_id, evidence_id))
        return copy.deepcopy(evidence) if evidence is not None else None

    def list_sealed_for_subject(self, tenant_id: str, subject_entity_id: str) -> List[SealedEvidence]:
        return [
            copy.deepcopy(e) for (t, _), e in sorted(self._state.sealed.items())
            if t == tenant_id and e.scope_target_id == subject_entity_id
        ]

    def list_quarantined(self, tenant_id: str) -> List[SealedEvidence]:
        return [
            copy.deepcopy(e) for (t, _), e in sorted(self._state.sealed.items())
            if t == tenant_id and e.ledger_state == LedgerState.QUARANTINED
        ]

    # Ingestion profiles -------------------------------------------------

    def upsert_profile(self, profile: IngestionProfile) -> None:
        self._state.profiles[(profile.tenant_id, profile.profile_id)] = profile

    def get_profile(self, tenant_id: str, profile_id: str) -> Optional[IngestionProfile]:
        return self._state.profiles.get((tenant_id, profile_id))

    def list_profiles(self, tenant_id: str) -> List[IngestionProfile]:
        return [p for (t, _), p in sorted(self._state.profiles.items()) if t == tenant_id]

    # Audit ledger -------------------------------------------------------

    def last_audit_event(self, tenant_id: str) -> Optional[AuditEvent]:
        events = self._state.audit_events.get(tenant_id)
        return events[-1] if events else None

    def insert_audit_event(self, event: AuditEvent) -> None:
        events = self._state.audit_events.setdefault(event.tenant_id, [])
        if events and events[-1].sequence_number >= event.sequence_number:
            raise ValueError(f"Audit sequence {event.sequence_number} already used for tenant")
        events.append(copy.deepcopy(event))

    def list_audit_events(self, tenant_id: str, correlation_id: Optional[str] = None) -> List[AuditEvent]:
        return [
            copy.deepcopy(e) for e in self._state.audit_events.get(tenant_id, [])
            if correlation_id is None or e.correlation_id == correlation_id
        ]

    # Command ledger -----------------------------------------------------

    def get_command(self, tenant_id: str, command_id: str) -> Optional[CommandRecord]:
        record = self._state.commands.get((tenant_id, command_id))
        return copy.deepcopy(record) if record is not None else None

    def insert_command(self, record: CommandRecord) -> bool:
        key = (record.tenant_id, record.command_id)
        existing = self._state.commands.get(key)
        if existing is not None and not existing.is_expired(record.created_at):
            return False
        self._state.commands[key] = copy.deepcopy(record)
        return True

    def delete_expired_commands(self, now: datetime) -> int:
        expired = [k for k, r in self._state.commands.items() if r.is_expired(now)]
        for key in expired:
            del self._state.commands[key]
        return len(expired)

    # Readiness ----------------------------------------------------------

    def insert_readiness_context(self, context: ReadinessContext) -> None:
        self._state.contexts[(context.tenant_id, context.context_id)] = context

    def get_readiness_context(self, tenant_id: str, context_id: str) -> Optional[ReadinessContext]:
        return self._state.contexts.get((tenant_id, context_id))

    def insert_readiness_result(self, result: ReadinessResult) -> None:
        key = (result.tenant_id, result.result_id)
        if any(t == result.tenant_id and r.context_id == result.context_id
               for (t, _), r in self._state.results.items()):
            raise ValueError(f"Context {result.context_id} already has a result")
        self._state.results[key] = result

    def get_readiness_result(self, tenant_id: str, result_id: str) -> Optional[ReadinessResult]:
        return self._state.results.get((tenant_id, result_id))

    def insert_readiness_gaps(self, gaps: List[ReadinessGap]) -> None:
        for gap in gaps:
            self._state.gaps.setdefault((gap.tenant_id, gap.result_id), []).append(gap)

    def list_readiness_gaps(self, tenant_id: str, result_id: str) -> List[ReadinessGap]:
        return list(self._state.gaps.get((tenant_id, result_id), []))

    # Rules (global) -----------------------------------------------------

    def list_rules(self, framework: str) -> List[ReadinessRule]:
        return [r for key, r in sorted(self._state.rules.items()) if r.framework == framework]

    def upsert_rule(self, rule: ReadinessRule) -> None:
        self._state.rules[rule.key] = rule


class InMemoryStore(KernelStore):
    """Thread-safe in-process store with snapshot rollback."""

    def __init__(self):
        super().__init__()
        self._state = _State()
        self._lock = threading.RLock()

    @contextmanager
    def _begin(self) -> Iterator[StoreTransaction]:
        with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield InMemoryTransaction(self._state)
            except BaseException:
                self._state = snapshot
                logger.debug("In-memory transaction rolled back")
                raise
