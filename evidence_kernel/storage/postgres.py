"""
PostgreSQL kernel store.

Shared, durable backing store for multi-instance deployments.

Schema guarantees:
- Sealed evidence, attachments, audit events and readiness records are
  append-only: a trigger rejects UPDATE and DELETE on those tables
- Seals serialize on `UPDATE evidence_drafts ... WHERE status = 'DRAFTING'`
- Audit appends for one tenant serialize on a transaction-scoped advisory
  lock, and (tenant_id, sequence_number) is unique
- Every tenant-owned table is keyed by (tenant_id, <id>)
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from evidence_kernel.audit_ledger.ledger import AuditEvent, AuditEventType
from evidence_kernel.canonical import canonical_json
from evidence_kernel.config.settings import PostgresConfig
from evidence_kernel.errors import InternalError
from evidence_kernel.evidence_store.models import (
    Attachment,
    DeclaredScope,
    EvidenceDraft,
    EvidenceOrigin,
    EvidenceState,
    EvidenceType,
    IngestionMethod,
    IngestionProfile,
    LedgerState,
    ProfileStatus,
    RetentionPolicy,
    ReviewStatus,
    SealedEvidence,
    TrustLevel,
    parse_draft_fields,
)
from evidence_kernel.readiness.models import (
    ExecutionMode,
    GapReason,
    GapSeverity,
    ReadinessContext,
    ReadinessGap,
    ReadinessResult,
    ReadinessStatus,
    RuleEvaluation,
    RuleOutcome,
)
from evidence_kernel.readiness.rules import ReadinessRule, RuleStatus
from .base import CommandRecord, KernelStore, StoreTransaction

logger = logging.getLogger(__name__)


SCHEMA_DDL = [
    """
    CREATE TABLE IF NOT EXISTS evidence_drafts (
        tenant_id VARCHAR(100) NOT NULL,
        draft_id VARCHAR(64) NOT NULL,
        status VARCHAR(20) NOT NULL,
        declaration JSONB NOT NULL,
        attachment_ids JSONB NOT NULL DEFAULT '[]',
        created_by VARCHAR(200) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (tenant_id, draft_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS evidence_attachments (
        tenant_id VARCHAR(100) NOT NULL,
        attachment_id VARCHAR(64) NOT NULL,
        draft_id VARCHAR(64) NOT NULL,
        byte_length BIGINT NOT NULL,
        content_digest CHAR(64) NOT NULL,
        filename VARCHAR(500),
        content_type VARCHAR(200),
        created_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (tenant_id, attachment_id),
        FOREIGN KEY (tenant_id, draft_id) REFERENCES evidence_drafts (tenant_id, draft_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sealed_evidence (
        tenant_id VARCHAR(100) NOT NULL,
        evidence_id VARCHAR(64) NOT NULL,
        draft_id VARCHAR(64) NOT NULL,
        ledger_state VARCHAR(20) NOT NULL,
        payload_digest CHAR(64),
        metadata_digest CHAR(64) NOT NULL,
        sealed_at TIMESTAMPTZ NOT NULL,
        retention_end TIMESTAMPTZ NOT NULL,
        trust_level VARCHAR(10) NOT NULL,
        review_status VARCHAR(20) NOT NULL,
        sealed_by VARCHAR(200) NOT NULL,
        evidence_type VARCHAR(50) NOT NULL,
        declared_scope VARCHAR(50) NOT NULL,
        ingestion_method VARCHAR(50) NOT NULL,
        retention_policy VARCHAR(50) NOT NULL,
        scope_target_id VARCHAR(200),
        authority_type VARCHAR(100),
        profile_id VARCHAR(64),
        structured_payload JSONB,
        origin VARCHAR(20) NOT NULL,
        attachment_ids JSONB NOT NULL DEFAULT '[]',
        quarantine_reason TEXT,
        resolution_due_date TIMESTAMPTZ,
        PRIMARY KEY (tenant_id, evidence_id),
        UNIQUE (tenant_id, draft_id),
        FOREIGN KEY (tenant_id, draft_id) REFERENCES evidence_drafts (tenant_id, draft_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_sealed_evidence_subject
        ON sealed_evidence (tenant_id, scope_target_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS ingestion_profiles (
        tenant_id VARCHAR(100) NOT NULL,
        profile_id VARCHAR(64) NOT NULL,
        entity_id VARCHAR(200) NOT NULL,
        data_domain VARCHAR(100) NOT NULL,
        ingestion_path VARCHAR(50) NOT NULL,
        authority_type VARCHAR(100) NOT NULL,
        status VARCHAR(20) NOT NULL,
        created_at TIMESTAMPTZ,
        PRIMARY KEY (tenant_id, profile_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        tenant_id VARCHAR(100) NOT NULL,
        event_id VARCHAR(64) NOT NULL,
        sequence_number BIGINT NOT NULL,
        correlation_id VARCHAR(100) NOT NULL,
        event_type VARCHAR(50) NOT NULL,
        actor_id VARCHAR(200) NOT NULL,
        occurred_at TIMESTAMPTZ NOT NULL,
        detail JSONB NOT NULL,
        previous_event_hash CHAR(64) NOT NULL,
        event_hash CHAR(64) NOT NULL,
        PRIMARY KEY (tenant_id, event_id),
        UNIQUE (tenant_id, sequence_number)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_audit_events_correlation
        ON audit_events (tenant_id, correlation_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS command_ledger (
        tenant_id VARCHAR(100) NOT NULL,
        command_id VARCHAR(200) NOT NULL,
        command_type VARCHAR(50) NOT NULL,
        request_fingerprint CHAR(64),
        result JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (tenant_id, command_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS readiness_contexts (
        tenant_id VARCHAR(100) NOT NULL,
        context_id VARCHAR(64) NOT NULL,
        subject_entity_id VARCHAR(200) NOT NULL,
        framework VARCHAR(50) NOT NULL,
        intended_use VARCHAR(100) NOT NULL,
        command_id VARCHAR(200) NOT NULL,
        execution_mode VARCHAR(20) NOT NULL,
        requested_by VARCHAR(200) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (tenant_id, context_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS readiness_results (
        tenant_id VARCHAR(100) NOT NULL,
        result_id VARCHAR(64) NOT NULL,
        context_id VARCHAR(64) NOT NULL,
        status VARCHAR(20) NOT NULL,
        rule_evaluations JSONB NOT NULL,
        evaluation_digest CHAR(64) NOT NULL,
        rule_set_hash CHAR(64) NOT NULL,
        evidence_digests JSONB NOT NULL,
        build_version VARCHAR(100) NOT NULL,
        evaluated_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (tenant_id, result_id),
        UNIQUE (tenant_id, context_id),
        FOREIGN KEY (tenant_id, context_id) REFERENCES readiness_contexts (tenant_id, context_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS readiness_gaps (
        tenant_id VARCHAR(100) NOT NULL,
        gap_id VARCHAR(64) NOT NULL,
        result_id VARCHAR(64) NOT NULL,
        rule_code VARCHAR(50) NOT NULL,
        rule_version INTEGER NOT NULL,
        severity VARCHAR(20) NOT NULL,
        reason VARCHAR(50) NOT NULL,
        missing_fields JSONB NOT NULL,
        remediation TEXT NOT NULL,
        legal_reference TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (tenant_id, gap_id),
        FOREIGN KEY (tenant_id, result_id) REFERENCES readiness_results (tenant_id, result_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS readiness_rules (
        rule_code VARCHAR(50) NOT NULL,
        version INTEGER NOT NULL,
        framework VARCHAR(50) NOT NULL,
        description TEXT NOT NULL,
        intended_use VARCHAR(100) NOT NULL,
        required_evidence_types JSONB NOT NULL,
        required_authority_types JSONB NOT NULL,
        required_fields JSONB NOT NULL,
        mandatory BOOLEAN NOT NULL,
        blocking BOOLEAN NOT NULL,
        legal_reference TEXT,
        remediation TEXT NOT NULL,
        status VARCHAR(20) NOT NULL,
        PRIMARY KEY (rule_code, version)
    )
    """,
    """
    CREATE OR REPLACE FUNCTION reject_append_only_mutation() RETURNS trigger AS $$
    BEGIN
        RAISE EXCEPTION '% is append-only', TG_TABLE_NAME;
    END;
    $$ LANGUAGE plpgsql
    """,
]

APPEND_ONLY_TABLES = [
    "evidence_attachments",
    "sealed_evidence",
    "audit_events",
    "readiness_contexts",
    "readiness_results",
    "readiness_gaps",
]


def _append_only_trigger_ddl(table: str) -> List[str]:
    return [
        f"DROP TRIGGER IF EXISTS {table}_append_only ON {table}",
        f"""
        CREATE TRIGGER {table}_append_only
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW EXECUTE FUNCTION reject_append_only_mutation()
        """,
    ]


def _json(value: Any) -> str:
    return canonical_json(value)


# =============================================================================
# ROW MAPPERS
# =============================================================================

def _row_to_draft(row: Dict[str, Any]) -> EvidenceDraft:
    values, violations = parse_draft_fields(row["declaration"])
    if violations:
        raise InternalError(f"Stored draft {row['draft_id']} has an unreadable declaration")
    draft = EvidenceDraft(
        draft_id=row["draft_id"],
        tenant_id=row["tenant_id"],
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        status=EvidenceState(row["status"]),
        attachment_ids=list(row["attachment_ids"] or []),
    )
    draft.apply(values)
    return draft


def _row_to_attachment(row: Dict[str, Any]) -> Attachment:
    return Attachment(
        attachment_id=row["attachment_id"],
        tenant_id=row["tenant_id"],
        draft_id=row["draft_id"],
        byte_length=row["byte_length"],
        content_digest=row["content_digest"],
        created_at=row["created_at"],
        filename=row["filename"],
        content_type=row["content_type"],
    )


def _row_to_sealed(row: Dict[str, Any]) -> SealedEvidence:
    return SealedEvidence(
        evidence_id=row["evidence_id"],
        tenant_id=row["tenant_id"],
        draft_id=row["draft_id"],
        ledger_state=LedgerState(row["ledger_state"]),
        payload_digest=row["payload_digest"],
        metadata_digest=row["metadata_digest"],
        sealed_at=row["sealed_at"],
        retention_end=row["retention_end"],
        trust_level=TrustLevel(row["trust_level"]),
        review_status=ReviewStatus(row["review_status"]),
        sealed_by=row["sealed_by"],
        evidence_type=EvidenceType(row["evidence_type"]),
        declared_scope=DeclaredScope(row["declared_scope"]),
        ingestion_method=IngestionMethod(row["ingestion_method"]),
        retention_policy=RetentionPolicy(row["retention_policy"]),
        scope_target_id=row["scope_target_id"],
        authority_type=row["authority_type"],
        profile_id=row["profile_id"],
        structured_payload=row["structured_payload"],
        origin=EvidenceOrigin(row["origin"]),
        attachment_ids=tuple(row["attachment_ids"] or []),
        quarantine_reason=row["quarantine_reason"],
        resolution_due_date=row["resolution_due_date"],
    )


def _row_to_profile(row: Dict[str, Any]) -> IngestionProfile:
    return IngestionProfile(
        profile_id=row["profile_id"],
        tenant_id=row["tenant_id"],
        entity_id=row["entity_id"],
        data_domain=row["data_domain"],
        ingestion_path=IngestionMethod(row["ingestion_path"]),
        authority_type=row["authority_type"],
        status=ProfileStatus(row["status"]),
        created_at=row["created_at"],
    )


def _row_to_audit_event(row: Dict[str, Any]) -> AuditEvent:
    return AuditEvent(
        event_id=row["event_id"],
        tenant_id=row["tenant_id"],
        sequence_number=row["sequence_number"],
        correlation_id=row["correlation_id"],
        event_type=AuditEventType(row["event_type"]),
        actor_id=row["actor_id"],
        occurred_at=row["occurred_at"],
        previous_event_hash=row["previous_event_hash"],
        event_hash=row["event_hash"],
        detail=row["detail"],
    )


def _row_to_command(row: Dict[str, Any]) -> CommandRecord:
    return CommandRecord(
        tenant_id=row["tenant_id"],
        command_id=row["command_id"],
        command_type=row["command_type"],
        result=row["result"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        request_fingerprint=row["request_fingerprint"],
    )


def _row_to_context(row: Dict[str, Any]) -> ReadinessContext:
    return ReadinessContext(
        context_id=row["context_id"],
        tenant_id=row["tenant_id"],
        subject_entity_id=row["subject_entity_id"],
        framework=row["framework"],
        intended_use=row["intended_use"],
        command_id=row["command_id"],
        execution_mode=ExecutionMode(row["execution_mode"]),
        requested_by=row["requested_by"],
        created_at=row["created_at"],
    )


def _row_to_rule_evaluation(item: Dict[str, Any]) -> RuleEvaluation:
    return RuleEvaluation(
        rule_code=item["rule_code"],
        rule_version=item["rule_version"],
        outcome=RuleOutcome(item["outcome"]),
        mandatory=item["mandatory"],
        blocking=item["blocking"],
        reason=GapReason(item["reason"]) if item.get("reason") else None,
        missing_fields=tuple(item.get("missing_fields") or ()),
        matched_evidence_ids=tuple(item.get("matched_evidence_ids") or ()),
    )


def _row_to_result(row: Dict[str, Any]) -> ReadinessResult:
    return ReadinessResult(
        result_id=row["result_id"],
        context_id=row["context_id"],
        tenant_id=row["tenant_id"],
        status=ReadinessStatus(row["status"]),
        rule_evaluations=tuple(_row_to_rule_evaluation(i) for i in row["rule_evaluations"]),
        evaluation_digest=row["evaluation_digest"],
        rule_set_hash=row["rule_set_hash"],
        evidence_digests=tuple(row["evidence_digests"]),
        build_version=row["build_version"],
        evaluated_at=row["evaluated_at"],
    )


def _row_to_gap(row: Dict[str, Any]) -> ReadinessGap:
    return ReadinessGap(
        gap_id=row["gap_id"],
        result_id=row["result_id"],
        tenant_id=row["tenant_id"],
        rule_code=row["rule_code"],
        rule_version=row["rule_version"],
        severity=GapSeverity(row["severity"]),
        reason=GapReason(row["reason"]),
        remediation=row["remediation"],
        created_at=row["created_at"],
        legal_reference=row["legal_reference"],
        missing_fields=tuple(row["missing_fields"] or ()),
    )


def _row_to_rule(row: Dict[str, Any]) -> ReadinessRule:
    return ReadinessRule(
        rule_code=row["rule_code"],
        version=row["version"],
        framework=row["framework"],
        description=row["description"],
        intended_use=row["intended_use"],
        required_evidence_types=tuple(EvidenceType(t) for t in row["required_evidence_types"]),
        required_authority_types=tuple(row["required_authority_types"]),
        required_fields=tuple(row["required_fields"]),
        mandatory=row["mandatory"],
        blocking=row["blocking"],
        legal_reference=row["legal_reference"],
        remediation=row["remediation"],
        status=RuleStatus(row["status"]),
    )


# =============================================================================
# TRANSACTION
# =============================================================================

class PostgresTransaction(StoreTransaction):
    """Statements executed on one connection inside one database transaction."""

    def __init__(self, connection: Any):
        self.connection = connection

    # Drafts -------------------------------------------------------------

    def insert_draft(self, draft: EvidenceDraft) -> None:
        self._execute(
            """
            INSERT INTO evidence_drafts (
                tenant_id, draft_id, status, declaration, attachment_ids,
                created_by, created_at, updated_at
            ) VALUES (
                %(tenant_id)s, %(draft_id)s, %(status)s, %(declaration)s::jsonb,
                %(attachment_ids)s::jsonb, %(created_by)s, %(created_at)s, %(updated_at)s
            )
            """,
            {
                "tenant_id": draft.tenant_id,
                "draft_id": draft.draft_id,
                "status": draft.status.value,
                "declaration": _json(draft.declaration()),
                "attachment_ids": _json(draft.attachment_ids),
                "created_by": draft.created_by,
                "created_at": draft.created_at,
                "updated_at": draft.updated_at,
            },
        )

    def get_draft(self, tenant_id: str, draft_id: str) -> Optional[EvidenceDraft]:
        rows = self._execute(
            """
            SELECT * FROM evidence_drafts
            WHERE tenant_id = %(tenant_id)s AND draft_id = %(draft_id)s
            FOR UPDATE
            """,
            {"tenant_id": tenant_id, "draft_id": draft_id},
        )
        return _row_to_draft(rows[0]) if rows else None

    def update_draft_if_drafting(self, draft: EvidenceDraft) -> bool:
        return self._execute_rowcount(
            """
            UPDATE evidence_drafts
            SET declaration = %(declaration)s::jsonb,
                attachment_ids = %(attachment_ids)s::jsonb,
                updated_at = %(updated_at)s
            WHERE tenant_id = %(tenant_id)s
              AND draft_id = %(draft_id)s
              AND status = 'DRAFTING'
            """,
            {
                "tenant_id": draft.tenant_id,
                "draft_id": draft.draft_id,
                "declaration": _json(draft.declaration()),
                "attachment_ids": _json(draft.attachment_ids),
                "updated_at": draft.updated_at,
            },
        ) == 1

    def transition_draft(
        self,
        tenant_id: str,
        draft_id: str,
        from_status: EvidenceState,
        to_status: EvidenceState,
        updated_at: datetime,
    ) -> bool:
        return self._execute_rowcount(
            """
            UPDATE evidence_drafts
            SET status = %(to_status)s, updated_at = %(updated_at)s
            WHERE tenant_id = %(tenant_id)s
              AND draft_id = %(draft_id)s
              AND status = %(from_status)s
            """,
            {
                "tenant_id": tenant_id,
                "draft_id": draft_id,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "updated_at": updated_at,
            },
        ) == 1

    # Attachments --------------------------------------------------------

    def insert_attachment(self, attachment: Attachment) -> None:
        self._execute(
            """
            INSERT INTO evidence_attachments (
                tenant_id, attachment_id, draft_id, byte_length, content_digest,
                filename, content_type, created_at
            ) VALUES (
                %(tenant_id)s, %(attachment_id)s, %(draft_id)s, %(byte_length)s,
                %(content_digest)s, %(filename)s, %(content_type)s, %(created_at)s
            )
            """,
            {
                "tenant_id": attachment.tenant_id,
                "attachment_id": attachment.attachment_id,
                "draft_id": attachment.draft_id,
                "byte_length": attachment.byte_length,
                "content_digest": attachment.content_digest,
                "filename": attachment.filename,
                "content_type": attachment.content_type,
                "created_at": attachment.created_at,
            },
        )

    def list_attachments(self, tenant_id: str, draft_id: str) -> List[Attachment]:
        rows = self._execute(
            """
            SELECT * FROM evidence_attachments
            WHERE tenant_id = %(tenant_id)s AND draft_id = %(draft_id)s
            ORDER BY created_at, attachment_id
            """,
            {"tenant_id": tenant_id, "draft_id": draft_id},
        )
        return [_row_to_attachment(r) for r in rows]

    # Sealed evidence ----------------------------------------------------

    def insert_sealed(self, evidence: SealedEvidence) -> None:
        self._execute(
            """
            INSERT INTO sealed_evidence (
                tenant_id, evidence_id, draft_id, ledger_state, payload_digest,
                metadata_digest, sealed_at, retention_end, trust_level, review_status,
                sealed_by, evidence_type, declared_scope, ingestion_method,
                retention_policy, scope_target_id, authority_type, profile_id,
                structured_payload, origin, attachment_ids, quarantine_reason,
                resolution_due_date
            ) VALUES (
                %(tenant_id)s, %(evidence_id)s, %(draft_id)s, %(ledger_state)s, %(payload_digest)s,
                %(metadata_digest)s, %(sealed_at)s, %(retention_end)s, %(trust_level)s, %(review_status)s,
                %(sealed_by)s, %(evidence_type)s, %(declared_scope)s, %(ingestion_method)s,
                %(retention_policy)s, %(scope_target_id)s, %(authority_type)s, %(profile_id)s,
                %(structured_payload)s::jsonb, %(origin)s, %(attachment_ids)s::jsonb, %(quarantine_reason)s,
                %(resolution_due_date)s
            )
            """,
            {
                "tenant_id": evidence.tenant_id,
                "evidence_id": evidence.evidence_id,
                "draft_id": evidence.draft_id,
                "ledger_state": evidence.ledger_state.value,
                "payload_digest": evidence.payload_digest,
                "metadata_digest": evidence.metadata_digest,
                "sealed_at": evidence.sealed_at,
                "retention_end": evidence.retention_end,
                "trust_level": evidence.trust_level.value,
                "review_status": evidence.review_status.value,
                "sealed_by": evidence.sealed_by,
                "evidence_type": evidence.evidence_type.value,
                "declared_scope": evidence.declared_scope.value,
                "ingestion_method": evidence.ingestion_method.value,
                "retention_policy": evidence.retention_policy.value,
                "scope_target_id": evidence.scope_target_id,
                "authority_type": evidence.authority_type,
                "profile_id": evidence.profile_id,
                "structured_payload": (
                    _json(evidence.structured_payload)
                    if evidence.structured_payload is not None else None
                ),
                "origin": evidence.origin.value,
                "attachment_ids": _json(list(evidence.attachment_ids)),
                "quarantine_reason": evidence.quarantine_reason,
                "resolution_due_date": evidence.resolution_due_date,
            },
        )

    def get_sealed(self, tenant_id: str, evidence_id: str) -> Optional[SealedEvidence]:
        rows = self._execute(
            """
            SELECT * FROM sealed_evidence
            WHERE tenant_id = %(tenant_id)s AND evidence_id = %(evidence_id)s
            """,
            {"tenant_id": tenant_id, "evidence_id": evidence_id},
        )
        return _row_to_sealed(rows[0]) if rows else None

    def list_sealed_for_subject(self, tenant_id: str, subject_entity_id: str) -> List[SealedEvidence]:
        rows = self._execute(
            """
            SELECT * FROM sealed_evidence
            WHERE tenant_id = %(tenant_id)s AND scope_target_id = %(subject_entity_id)s
            ORDER BY evidence_id
            """,
            {"tenant_id": tenant_id, "subject_entity_id": subject_entity_id},
        )
        return [_row_to_sealed(r) for r in rows]

    def list_quarantined(self, tenant_id: str) -> List[SealedEvidence]:
        rows = self._execute(
            """
            SELECT * FROM sealed_evidence
            WHERE tenant_id = %(tenant_id)s AND ledger_state = 'QUARANTINED'
            ORDER BY resolution_due_date NULLS FIRST, evidence_id
            """,
            {"tenant_id": tenant_id},
        )
        return [_row_to_sealed(r) for r in rows]

    # Ingestion profiles -------------------------------------------------

    def upsert_profile(self, profile: IngestionProfile) -> None:
        self._execute(
            """
            INSERT INTO ingestion_profiles (
                tenant_id, profile_id, entity_id, data_domain, ingestion_path,
                authority_type, status, created_at
            ) VALUES (
                %(tenant_id)s, %(profile_id)s, %(entity_id)s, %(data_domain)s,
                %(ingestion_path)s, %(authority_type)s, %(status)s, %(created_at)s
            )
            ON CONFLICT (tenant_id, profile_id) DO UPDATE SET status = EXCLUDED.status
            """,
            {
                "tenant_id": profile.tenant_id,
                "profile_id": profile.profile_id,
                "entity_id": profile.entity_id,
                "data_domain": profile.data_domain,
                "ingestion_path": profile.ingestion_path.value,
                "authority_type": profile.authority_type,
                "status": profile.status.value,
                "created_at": profile.created_at,
            },
        )

    def get_profile(self, tenant_id: str, profile_id: str) -> Optional[IngestionProfile]:
        rows = self._execute(
            """
            SELECT * FROM ingestion_profiles
            WHERE tenant_id = %(tenant_id)s AND profile_id = %(profile_id)s
            """,
            {"tenant_id": tenant_id, "profile_id": profile_id},
        )
        return _row_to_profile(rows[0]) if rows else None

    def list_profiles(self, tenant_id: str) -> List[IngestionProfile]:
        rows = self._execute(
            """
            SELECT * FROM ingestion_profiles
            WHERE tenant_id = %(tenant_id)s
            ORDER BY profile_id
            """,
            {"tenant_id": tenant_id},
        )
        return [_row_to_profile(r) for r in rows]

    # Audit ledger -------------------------------------------------------

    def last_audit_event(self, tenant_id: str) -> Optional[AuditEvent]:
        # Serialize appenders for this tenant until the transaction ends
        self._execute("SELECT pg_advisory_xact_lock(hashtext(%(tenant_id)s))", {"tenant_id": tenant_id})
        rows = self._execute(
            """
            SELECT * FROM audit_events
            WHERE tenant_id = %(tenant_id)s
            ORDER BY sequence_number DESC
            LIMIT 1
            """,
            {"tenant_id": tenant_id},
        )
        return _row_to_audit_event(rows[0]) if rows else None

    def insert_audit_event(self, event: AuditEvent) -> None:
        self._execute(
            """
            INSERT INTO audit_events (
                tenant_id, event_id, sequence_number, correlation_id, event_type,
                actor_id, occurred_at, detail, previous_event_hash, event_hash
            ) VALUES (
                %(tenant_id)s, %(event_id)s, %(sequence_number)s, %(correlation_id)s,
                %(event_type)s, %(actor_id)s, %(occurred_at)s, %(detail)s::jsonb,
                %(previous_event_hash)s, %(event_hash)s
            )
            """,
            {
                "tenant_id": event.tenant_id,
                "event_id": event.event_id,
                "sequence_number": event.sequence_number,
                "correlation_id": event.correlation_id,
                "event_type": event.event_type.value,
                "actor_id": event.actor_id,
                "occurred_at": event.occurred_at,
                "detail": _json(event.detail),
                "previous_event_hash": event.previous_event_hash,
                "event_hash": event.event_hash,
            },
        )

    def list_audit_events(self, tenant_id: str, correlation_id: Optional[str] = None) -> List[AuditEvent]:
        query = "SELECT * FROM audit_events WHERE tenant_id = %(tenant_id)s"
        params: Dict[str, Any] = {"tenant_id": tenant_id}
        if correlation_id is not None:
            query += " AND correlation_id = %(correlation_id)s"
            params["correlation_id"] = correlation_id
        query += " ORDER BY sequence_number"
        return [_row_to_audit_event(r) for r in self._execute(query, params)]

    # Command ledger -----------------------------------------------------

    def get_command(self, tenant_id: str, command_id: str) -> Optional[CommandRecord]:
        rows = self._execute(
            """
            SELECT * FROM command_ledger
            WHERE tenant_id = %(tenant_id)s AND command_id = %(command_id)s
            """,
            {"tenant_id": tenant_id, "command_id": command_id},
        )
        return _row_to_command(rows[0]) if rows else None

    def insert_command(self, record: CommandRecord) -> bool:
        # An expired record may be replaced; a live one wins
        return self._execute_rowcount(
            """
            INSERT INTO command_ledger (
                tenant_id, command_id, command_type, request_fingerprint,
                result, created_at, expires_at
            ) VALUES (
                %(tenant_id)s, %(command_id)s, %(command_type)s, %(request_fingerprint)s,
                %(result)s::jsonb, %(created_at)s, %(expires_at)s
            )
            ON CONFLICT (tenant_id, command_id) DO UPDATE SET
                command_type = EXCLUDED.command_type,
                request_fingerprint = EXCLUDED.request_fingerprint,
                result = EXCLUDED.result,
                created_at = EXCLUDED.created_at,
                expires_at = EXCLUDED.expires_at
            WHERE command_ledger.expires_at <= EXCLUDED.created_at
            """,
            {
                "tenant_id": record.tenant_id,
                "command_id": record.command_id,
                "command_type": record.command_type,
                "request_fingerprint": record.request_fingerprint,
                "result": _json(record.result),
                "created_at": record.created_at,
                "expires_at": record.expires_at,
            },
        ) == 1

    def delete_expired_commands(self, now: datetime) -> int:
        return self._execute_rowcount(
            "DELETE FROM command_ledger WHERE expires_at <= %(now)s",
            {"now": now},
        )

    # Readiness ----------------------------------------------------------

    def insert_readiness_context(self, context: ReadinessContext) -> None:
        self._execute(
            """
            INSERT INTO readiness_contexts (
                tenant_id, context_id, subject_entity_id, framework, intended_use,
                command_id, execution_mode, requested_by, created_at
            ) VALUES (
                %(tenant_id)s, %(context_id)s, %(subject_entity_id)s, %(framework)s,
                %(intended_use)s, %(command_id)s, %(execution_mode)s, %(requested_by)s,
                %(created_at)s
            )
            """,
            {
                "tenant_id": context.tenant_id,
                "context_id": context.context_id,
                "subject_entity_id": context.subject_entity_id,
                "framework": context.framework,
                "intended_use": context.intended_use,
                "command_id": context.command_id,
                "execution_mode": context.execution_mode.value,
                "requested_by": context.requested_by,
                "created_at": context.created_at,
            },
        )

    def get_readiness_context(self, tenant_id: str, context_id: str) -> Optional[ReadinessContext]:
        rows = self._execute(
            """
            SELECT * FROM readiness_contexts
            WHERE tenant_id = %(tenant_id)s AND context_id = %(context_id)s
            """,
            {"tenant_id": tenant_id, "context_id": context_id},
        )
        return _row_to_context(rows[0]) if rows else None

    def insert_readiness_result(self, result: ReadinessResult) -> None:
        self._execute(
            """
            INSERT INTO readiness_results (
                tenant_id, result_id, context_id, status, rule_evaluations,
                evaluation_digest, rule_set_hash, evidence_digests, build_version,
                evaluated_at
            ) VALUES (
                %(tenant_id)s, %(result_id)s, %(context_id)s, %(status)s,
                %(rule_evaluations)s::jsonb, %(evaluation_digest)s, %(rule_set_hash)s,
                %(evidence_digests)s::jsonb, %(build_version)s, %(evaluated_at)s
            )
            """,
            {
                "tenant_id": result.tenant_id,
                "result_id": result.result_id,
                "context_id": result.context_id,
                "status": result.status.value,
                "rule_evaluations": _json([e.to_dict() for e in result.rule_evaluations]),
                "evaluation_digest": result.evaluation_digest,
                "rule_set_hash": result.rule_set_hash,
                "evidence_digests": _json(list(result.evidence_digests)),
                "build_version": result.build_version,
                "evaluated_at": result.evaluated_at,
            },
        )

    def get_readiness_result(self, tenant_id: str, result_id: str) -> Optional[ReadinessResult]:
        rows = self._execute(
            """
            SELECT * FROM readiness_results
            WHERE tenant_id = %(tenant_id)s AND result_id = %(result_id)s
            """,
            {"tenant_id": tenant_id, "result_id": result_id},
        )
        return _row_to_result(rows[0]) if rows else None

    def insert_readiness_gaps(self, gaps: List[ReadinessGap]) -> None:
        for gap in gaps:
            self._execute(
                """
                INSERT INTO readiness_gaps (
                    tenant_id, gap_id, result_id, rule_code, rule_version, severity,
                    reason, missing_fields, remediation, legal_reference, created_at
                ) VALUES (
                    %(tenant_id)s, %(gap_id)s, %(result_id)s, %(rule_code)s, %(rule_version)s,
                    %(severity)s, %(reason)s, %(missing_fields)s::jsonb, %(remediation)s,
                    %(legal_reference)s, %(created_at)s
                )
                """,
                {
                    "tenant_id": gap.tenant_id,
                    "gap_id": gap.gap_id,
                    "result_id": gap.result_id,
                    "rule_code": gap.rule_code,
                    "rule_version": gap.rule_version,
                    "severity": gap.severity.value,
                    "reason": gap.reason.value,
                    "missing_fields": _json(list(gap.missing_fields)),
                    "remediation": gap.remediation,
                    "legal_reference": gap.legal_reference,
                    "created_at": gap.created_at,
                },
            )

    def list_readiness_gaps(self, tenant_id: str, result_id: str) -> List[ReadinessGap]:
        rows = self._execute(
            """
            SELECT * FROM readiness_gaps
            WHERE tenant_id = %(tenant_id)s AND result_id = %(result_id)s
            ORDER BY rule_code, rule_version
            """,
            {"tenant_id": tenant_id, "result_id": result_id},
        )
        return [_row_to_gap(r) for r in rows]

    # Rules (global) -----------------------------------------------------

    def list_rules(self, framework: str) -> List[ReadinessRule]:
        rows = self._execute(
            """
            SELECT * FROM readiness_rules
            WHERE framework = %(framework)s
            ORDER BY rule_code, version
            """,
            {"framework": framework},
        )
        return [_row_to_rule(r) for r in rows]

    def upsert_rule(self, rule: ReadinessRule) -> None:
        self._execute(
            """
            INSERT INTO readiness_rules (
                rule_code, version, framework, description, intended_use,
                required_evidence_types, required_authority_types, required_fields,
                mandatory, blocking, legal_reference, remediation, status
            ) VALUES (
                %(rule_code)s, %(version)s, %(framework)s, %(description)s, %(intended_use)s,
                %(required_evidence_types)s::jsonb, %(required_authority_types)s::jsonb,
                %(required_fields)s::jsonb, %(mandatory)s, %(blocking)s,
                %(legal_reference)s, %(remediation)s, %(status)s
            )
            ON CONFLICT (rule_code, version) DO UPDATE SET status = EXCLUDED.status
            """,
            {
                "rule_code": rule.rule_code,
                "version": rule.version,
                "framework": rule.framework,
                "description": rule.description,
                "intended_use": rule.intended_use,
                "required_evidence_types": _json([t.value for t in rule.required_evidence_types]),
                "required_authority_types": _json(list(rule.required_authority_types)),
                "required_fields": _json(list(rule.required_fields)),
                "mandatory": rule.mandatory,
                "blocking": rule.blocking,
                "legal_reference": rule.legal_reference,
                "remediation": rule.remediation,
                "status": rule.status.value,
            },
        )

    # =========================================================================
    # INTERNAL METHODS
    # =========================================================================

    def _execute(self, query: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        cursor = self.connection.cursor()
        try:
            cursor.execute(query, params)
            if cursor.description:
                columns = [desc[0] for desc in cursor.description]
                rows = cursor.fetchall()
                return [dict(zip(columns, row)) for row in rows]
            return []
        finally:
            cursor.close()

    def _execute_rowcount(self, query: str, params: Dict[str, Any]) -> int:
        cursor = self.connection.cursor()
        try:
            cursor.execute(query, params)
            return cursor.rowcount
        finally:
            cursor.close()


# =============================================================================
# STORE
# =============================================================================

class PostgresStore(KernelStore):
    """
    Kernel store on PostgreSQL via psycopg2.

    One connection per store instance; transactions on it are serialized
    by a lock. Run one store per worker for parallelism.
    """

    def __init__(self, config: PostgresConfig, connection: Optional[Any] = None):
        super().__init__()
        self.config = config
        self._connection = connection
        self._lock = threading.RLock()

    @property
    def connection(self):
        """Lazy connection initialization."""
        if self._connection is None:
            try:
                import psycopg2
            except ImportError:
                raise ImportError("psycopg2 not installed. Run: pip install psycopg2-binary")
            self._connection = psycopg2.connect(**self.config.connection_params)
            self._connection.autocommit = False
            logger.info(f"Connected to PostgreSQL: {self.config.connection_string}")
        return self._connection

    def ensure_schema(self) -> None:
        """Create tables, indexes and append-only triggers (idempotent)."""
        statements = list(SCHEMA_DDL)
        for table in APPEND_ONLY_TABLES:
            statements.extend(_append_only_trigger_ddl(table))

        with self._lock:
            cursor = self.connection.cursor()
            try:
                for statement in statements:
                    cursor.execute(statement)
                self.connection.commit()
            except Exception:
                self.connection.rollback()
                raise
            finally:
                cursor.close()
        logger.info(f"Kernel schema ensured ({len(APPEND_ONLY_TABLES)} append-only tables)")

    @contextmanager
    def _begin(self) -> Iterator[StoreTransaction]:
        with self._lock:
            connection = self.connection
            try:
                yield PostgresTransaction(connection)
                connection.commit()
            except BaseException:
                connection.rollback()
                raise

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            logger.info("PostgreSQL connection closed")
