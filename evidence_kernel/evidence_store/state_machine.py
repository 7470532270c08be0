"""
Evidence State Machine

Drives a piece of evidence through DRAFTING -> VALIDATING -> SEALED or
QUARANTINED. No transition leaves SEALED or QUARANTINED.

Sealing runs every check and reports every violation at once. A rejected
seal is a response, not a state: the draft stays DRAFTING and nothing is
written. An accepted seal writes the draft status change, the sealed
record and exactly one audit event in a single store transaction.

Audit Note:
- Concurrent seals of one draft serialize on a conditional write keyed on
  (tenant_id, draft_id, status = DRAFTING); at most one succeeds
- Seal time comes from the server clock only
- Retention end is computed once, at seal time, and never recomputed
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from evidence_kernel.audit_ledger import AuditEventType, AuditLedger
from evidence_kernel.canonical import digest_record, merkle_root
from evidence_kernel.entities import EntityResolver
from evidence_kernel.errors import (
    AlreadySealed,
    EvidenceImmutable,
    FieldViolation,
    NotFound,
    ValidationFailed,
)
from .models import (
    SCOPES_REQUIRING_TARGET,
    TERMINAL_STATES,
    Attachment,
    DeclaredScope,
    EvidenceDraft,
    EvidenceState,
    LedgerState,
    RetentionPolicy,
    SealedEvidence,
    parse_draft_fields,
    parse_timestamp,
)
from .policies import (
    FILE_BACKED_METHODS,
    accepts_files,
    compute_retention_end,
    is_method_allowed,
    review_status_for,
    trust_level_for,
)

if TYPE_CHECKING:
    from evidence_kernel.storage.base import KernelStore, StoreTransaction

logger = logging.getLogger(__name__)

MIN_JUSTIFICATION_LENGTH = 20
MIN_QUARANTINE_REASON_LENGTH = 30

# Allowed lifecycle transitions
TRANSITIONS = {
    EvidenceState.DRAFTING: frozenset({EvidenceState.VALIDATING}),
    EvidenceState.VALIDATING: frozenset({
        EvidenceState.DRAFTING,
        EvidenceState.SEALED,
        EvidenceState.QUARANTINED,
    }),
    EvidenceState.SEALED: frozenset(),
    EvidenceState.QUARANTINED: frozenset(),
}


def can_transition(current: EvidenceState, target: EvidenceState) -> bool:
    return target in TRANSITIONS[current]


@dataclass(frozen=True)
class QuarantineFollowup:
    """Quarantined evidence whose resolution deadline needs attention."""
    evidence_id: str
    draft_id: str
    resolution_due_date: Optional[datetime]
    days_remaining: Optional[int]
    overdue: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evidence_id": self.evidence_id,
            "draft_id": self.draft_id,
            "resolution_due_date": (
                self.resolution_due_date.isoformat() if self.resolution_due_date else None
            ),
            "days_remaining": self.days_remaining,
            "overdue": self.overdue,
        }


class EvidenceStateMachine:
    """
    Draft lifecycle and sealing.

    Usage:
        machine = EvidenceStateMachine(store, ledger, resolver)
        draft = machine.create_or_update_draft("tenant-a", {"evidence_type": "BOM"}, actor_id="u1")
        sealed = machine.seal("tenant-a", draft.draft_id, actor_id="u1", correlation_id="c1")
    """

    def __init__(
        self,
        store: KernelStore,
        ledger: AuditLedger,
        entity_resolver: EntityResolver,
        clock: Optional[Callable[[], datetime]] = None,
        max_resolution_days: int = 90,
    ):
        self.store = store
        self.ledger = ledger
        self.entity_resolver = entity_resolver
        self.max_resolution_days = max_resolution_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(f"{__name__}.EvidenceStateMachine")

    # =========================================================================
    # DRAFTS
    # =========================================================================

    def create_or_update_draft(
        self,
        tenant_id: str,
        fields: Dict[str, Any],
        draft_id: Optional[str] = None,
        actor_id: str = "system",
        correlation_id: Optional[str] = None,
        tx: Optional[StoreTransaction] = None,
    ) -> EvidenceDraft:
        """
        Create a draft, or update one that is still DRAFTING.

        Malformed values are all reported together. Completeness is not
        checked until seal.
        """
        _require_tenant(tenant_id)
        values, violations = parse_draft_fields(fields or {})
        if violations:
            raise ValidationFailed(violations)

        correlation_id = correlation_id or str(uuid.uuid4())

        with self.store.transaction(existing=tx) as t:
            now = self._clock()

            if draft_id is None:
                draft = EvidenceDraft(
                    draft_id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    created_by=actor_id,
                    created_at=now,
                    updated_at=now,
                )
                draft.apply(values)
                t.insert_draft(draft)
                event_type = AuditEventType.DRAFT_CREATED
            else:
                draft = self._load_mutable_draft(t, tenant_id, draft_id)
                draft.apply(values)
                draft.updated_at = now
                if not t.update_draft_if_drafting(draft):
                    raise EvidenceImmutable("Draft is sealed and can no longer be modified")
                event_type = AuditEventType.DRAFT_UPDATED

            self.ledger.append(
                t,
                tenant_id=tenant_id,
                event_type=event_type,
                actor_id=actor_id,
                correlation_id=correlation_id,
                detail={"draft_id": draft.draft_id, "fields": sorted(values)},
                occurred_at=now,
            )

        self.logger.info(f"{event_type.value}: draft={draft.draft_id}, tenant={tenant_id}")
        return draft

    def get_draft(self, tenant_id: str, draft_id: str) -> EvidenceDraft:
        with self.store.transaction() as tx:
            draft = tx.get_draft(tenant_id, draft_id)
        if draft is None:
            raise NotFound("draft")
        return draft

    def attach_file(
        self,
        tenant_id: str,
        draft_id: str,
        data: bytes,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
        actor_id: str = "system",
        correlation_id: Optional[str] = None,
        tx: Optional[StoreTransaction] = None,
    ) -> Attachment:
        """
        Bind a file to a draft by digest.

        The bytes are hashed and measured here; storing them is the file
        store's job.
        """
        _require_tenant(tenant_id)
        if not isinstance(data, (bytes, bytearray)):
            raise ValidationFailed([FieldViolation("file", "must be raw bytes")])
        if not data:
            raise ValidationFailed([FieldViolation("file", "file is empty")])

        correlation_id = correlation_id or str(uuid.uuid4())

        with self.store.transaction(existing=tx) as t:
            now = self._clock()
            draft = self._load_mutable_draft(t, tenant_id, draft_id)

            if not accepts_files(draft.ingestion_method):
                raise ValidationFailed([FieldViolation(
                    "file", f"ingestion method {draft.ingestion_method.value} does not accept files"
                )])

            attachment = Attachment(
                attachment_id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                draft_id=draft_id,
                byte_length=len(data),
                content_digest=hashlib.sha256(bytes(data)).hexdigest(),
                created_at=now,
                filename=filename,
                content_type=content_type,
            )
            t.insert_attachment(attachment)

            draft.attachment_ids = draft.attachment_ids + [attachment.attachment_id]
            draft.updated_at = now
            if not t.update_draft_if_drafting(draft):
                raise EvidenceImmutable("Draft is sealed and can no longer be modified")

            self.ledger.append(
                t,
                tenant_id=tenant_id,
                event_type=AuditEventType.ATTACHMENT_ADDED,
                actor_id=actor_id,
                correlation_id=correlation_id,
                detail={
                    "draft_id": draft_id,
                    "attachment_id": attachment.attachment_id,
                    "content_digest": attachment.content_digest,
                    "byte_length": attachment.byte_length,
                },
                occurred_at=now,
            )

        self.logger.info(
            f"Attachment {attachment.attachment_id} added to draft {draft_id}: "
            f"{attachment.byte_length} bytes, sha256={attachment.content_digest[:16]}"
        )
        return attachment

    # =========================================================================
    # SEALING
    # =========================================================================

    def seal(
        self,
        tenant_id: str,
        draft_id: str,
        actor_id: str = "system",
        correlation_id: Optional[str] = None,
        tx: Optional[StoreTransaction] = None,
    ) -> SealedEvidence:
        """
        Validate and seal a draft.

        Raises:
            NotFound: draft does not exist for this tenant
            AlreadySealed: draft already left DRAFTING
            ValidationFailed: one or more checks failed; draft unchanged
        """
        _require_tenant(tenant_id)
        correlation_id = correlation_id or str(uuid.uuid4())

        with self.store.transaction(existing=tx) as t:
            draft = t.get_draft(tenant_id, draft_id)
            if draft is None:
                raise NotFound("draft")
            if draft.status in TERMINAL_STATES:
                raise AlreadySealed(f"Draft is already {draft.status.value}")

            now = self._clock()
            self._log_transition(draft_id, EvidenceState.DRAFTING, EvidenceState.VALIDATING)

            attachments = t.list_attachments(tenant_id, draft_id)
            violations = self.validate_for_seal(t, draft, attachments, now)
            if violations:
                self._log_transition(draft_id, EvidenceState.VALIDATING, EvidenceState.DRAFTING)
                raise ValidationFailed(violations)

            ledger_state = (
                LedgerState.QUARANTINED
                if draft.declared_scope == DeclaredScope.UNKNOWN
                else LedgerState.SEALED
            )
            trust_level = trust_level_for(draft.ingestion_method)

            evidence = SealedEvidence(
                evidence_id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                draft_id=draft_id,
                ledger_state=ledger_state,
                payload_digest=merkle_root(a.content_digest for a in attachments),
                metadata_digest=digest_record(draft.declaration()),
                sealed_at=now,
                retention_end=compute_retention_end(
                    now, draft.retention_policy, draft.retention_custom_days
                ),
                trust_level=trust_level,
                review_status=review_status_for(trust_level),
                sealed_by=actor_id,
                evidence_type=draft.evidence_type,
                declared_scope=draft.declared_scope,
                ingestion_method=draft.ingestion_method,
                retention_policy=draft.retention_policy,
                scope_target_id=draft.scope_target_id,
                authority_type=draft.authority_type,
                profile_id=draft.profile_id,
                structured_payload=draft.structured_payload,
                origin=draft.origin,
                attachment_ids=tuple(sorted(a.attachment_id for a in attachments)),
                quarantine_reason=draft.quarantine_reason,
                resolution_due_date=draft.resolution_due_date,
            )

            target_state = EvidenceState(ledger_state.value)
            if not t.transition_draft(tenant_id, draft_id, EvidenceState.DRAFTING, target_state, now):
                raise AlreadySealed("Draft was sealed concurrently")
            t.insert_sealed(evidence)

            self.ledger.append(
                t,
                tenant_id=tenant_id,
                event_type=(
                    AuditEventType.EVIDENCE_QUARANTINED
                    if ledger_state == LedgerState.QUARANTINED
                    else AuditEventType.EVIDENCE_SEALED
                ),
                actor_id=actor_id,
                correlation_id=correlation_id,
                detail={
                    "draft_id": draft_id,
                    "evidence_id": evidence.evidence_id,
                    "ledger_state": ledger_state.value,
                    "payload_digest": evidence.payload_digest,
                    "metadata_digest": evidence.metadata_digest,
                    "retention_end": evidence.retention_end,
                    "trust_level": trust_level.value,
                },
                occurred_at=now,
            )
            self._log_transition(draft_id, EvidenceState.VALIDATING, target_state)

        self.logger.info(
            f"Sealed draft {draft_id} as {evidence.evidence_id} ({ledger_state.value}), "
            f"metadata={evidence.metadata_digest[:16]}, retention_end={evidence.retention_end.isoformat()}"
        )
        return evidence

    def validate_for_seal(
        self,
        tx: StoreTransaction,
        draft: EvidenceDraft,
        attachments: List[Attachment],
        now: datetime,
    ) -> List[FieldViolation]:
        """Every seal check, in a fixed order, without short-circuiting."""
        violations: List[FieldViolation] = []

        for name in ("evidence_type", "declared_scope", "ingestion_method", "retention_policy"):
            if getattr(draft, name) is None:
                violations.append(FieldViolation(name, "required"))

        if not draft.justification or len(draft.justification.strip()) < MIN_JUSTIFICATION_LENGTH:
            violations.append(FieldViolation(
                "justification", f"must be at least {MIN_JUSTIFICATION_LENGTH} characters"
            ))

        if not draft.purpose_tags:
            violations.append(FieldViolation("purpose_tags", "at least one purpose tag is required"))

        violations.extend(self._scope_violations(draft))
        violations.extend(self._quarantine_violations(draft, now))

        if draft.contains_personal_data and draft.gdpr_legal_basis is None:
            violations.append(FieldViolation(
                "gdpr_legal_basis", "required when contains_personal_data is true"
            ))

        method = draft.ingestion_method
        if method in FILE_BACKED_METHODS and not any(a.content_digest for a in attachments):
            violations.append(FieldViolation(
                "attachments", f"ingestion method {method.value} requires at least one attachment"
            ))
        if attachments and not accepts_files(method):
            violations.append(FieldViolation(
                "attachments", f"ingestion method {method.value} does not accept files"
            ))

        if draft.evidence_type is not None and method is not None:
            if not is_method_allowed(draft.evidence_type, method):
                violations.append(FieldViolation(
                    "ingestion_method",
                    f"{method.value} is not allowed for evidence type {draft.evidence_type.value}",
                ))

        if draft.retention_policy == RetentionPolicy.CUSTOM and not draft.retention_custom_days:
            violations.append(FieldViolation("retention_custom_days", "required for CUSTOM retention"))

        if draft.profile_id is not None and tx.get_profile(draft.tenant_id, draft.profile_id) is None:
            violations.append(FieldViolation("profile_id", "does not resolve in this tenant"))

        return violations

    # =========================================================================
    # SEALED EVIDENCE
    # =========================================================================

    def get_sealed(self, tenant_id: str, evidence_id: str) -> SealedEvidence:
        """Sealed record for this tenant; cross-tenant ids are NotFound."""
        with self.store.transaction() as tx:
            evidence = tx.get_sealed(tenant_id, evidence_id)
        if evidence is None:
            raise NotFound("evidence")
        return evidence

    def quarantine_followups(
        self,
        tenant_id: str,
        as_of: datetime,
        window_days: int = 14,
    ) -> List[QuarantineFollowup]:
        """
        Quarantined evidence overdue or due within `window_days` of `as_of`.

        The reference time is an explicit argument so reminder runs are
        reproducible; readiness evaluation never calls this.
        """
        _require_tenant(tenant_id)
        as_of = reference_time(as_of)
        horizon = as_of + timedelta(days=window_days)

        with self.store.transaction() as tx:
            quarantined = tx.list_quarantined(tenant_id)

        followups = []
        for evidence in quarantined:
            due = evidence.resolution_due_date
            if due is not None and due > horizon:
                continue
            followups.append(QuarantineFollowup(
                evidence_id=evidence.evidence_id,
                draft_id=evidence.draft_id,
                resolution_due_date=due,
                days_remaining=(due - as_of).days if due is not None else None,
                overdue=due is None or due <= as_of,
            ))

        followups.sort(key=lambda f: (f.resolution_due_date is not None, f.resolution_due_date or as_of, f.evidence_id))
        self.logger.info(
            f"Quarantine follow-ups for tenant {tenant_id} as of {as_of.isoformat()}: "
            f"{len(followups)} ({sum(1 for f in followups if f.overdue)} overdue)"
        )
        return followups

    # =========================================================================
    # INTERNAL METHODS
    # =========================================================================

    def _load_mutable_draft(self, tx: StoreTransaction, tenant_id: str, draft_id: str) -> EvidenceDraft:
        draft = tx.get_draft(tenant_id, draft_id)
        if draft is None:
            raise NotFound("draft")
        if not draft.is_mutable:
            raise EvidenceImmutable(f"Draft is {draft.status.value} and can no longer be modified")
        return draft

    def _scope_violations(self, draft: EvidenceDraft) -> List[FieldViolation]:
        scope = draft.declared_scope
        if scope in SCOPES_REQUIRING_TARGET:
            if not draft.scope_target_id:
                return [FieldViolation("scope_target_id", f"required for scope {scope.value}")]
            if self.entity_resolver.resolve(draft.tenant_id, draft.scope_target_id) is None:
                return [FieldViolation("scope_target_id", "does not resolve to an entity in this tenant")]
        if scope == DeclaredScope.ENTIRE_ORGANIZATION and draft.scope_target_id:
            return [FieldViolation("scope_target_id", "must be empty for scope ENTIRE_ORGANIZATION")]
        return []

    def _quarantine_violations(self, draft: EvidenceDraft, now: datetime) -> List[FieldViolation]:
        if draft.declared_scope != DeclaredScope.UNKNOWN:
            return []

        violations = []
        reason = (draft.quarantine_reason or "").strip()
        if not reason:
            violations.append(FieldViolation("quarantine_reason", "required when scope is UNKNOWN"))
        elif len(reason) < MIN_QUARANTINE_REASON_LENGTH:
            violations.append(FieldViolation(
                "quarantine_reason", f"must be at least {MIN_QUARANTINE_REASON_LENGTH} characters"
            ))

        due = draft.resolution_due_date
        if due is None:
            violations.append(FieldViolation("resolution_due_date", "required when scope is UNKNOWN"))
        elif due <= now:
            violations.append(FieldViolation("resolution_due_date", "must be in the future"))
        elif due > now + timedelta(days=self.max_resolution_days):
            violations.append(FieldViolation(
                "resolution_due_date", f"must be within {self.max_resolution_days} days"
            ))
        return violations

    def _log_transition(self, draft_id: str, current: EvidenceState, target: EvidenceState) -> None:
        if not can_transition(current, target):
            raise AlreadySealed(f"Transition {current.value} -> {target.value} is not allowed")
        self.logger.debug(f"Draft {draft_id}: {current.value} -> {target.value}")


def _require_tenant(tenant_id: str) -> None:
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise ValidationFailed([FieldViolation("tenant_id", "required")])


def reference_time(as_of: Any) -> datetime:
    """Normalize a reference time to aware UTC; naive values are read as UTC."""
    try:
        return parse_timestamp(as_of)
    except ValueError as e:
        raise ValidationFailed([FieldViolation("as_of", str(e))])
