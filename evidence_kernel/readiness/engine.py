"""
Deterministic Readiness Evaluation Engine

Decides whether a subject entity is ready for a regulatory framework and
intended use, from sealed structured evidence and active rules only.

The outcome is a pure function of (tenant, subject, framework, intended use,
eligible evidence, rule set). The engine never branches on wall-clock time
or randomness; timestamps and ids are recorded but not hashed.

Audit Note:
- Drafts, quarantined evidence and evidence bound to inactive ingestion
  profiles never influence a result
- Every rule is evaluated; earlier failures do not short-circuit later rules
- Context, result, gaps and the audit event commit in one transaction
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from evidence_kernel.audit_ledger import AuditEventType, AuditLedger
from evidence_kernel.canonical import digest_record
from evidence_kernel.entities import EntityResolver
from evidence_kernel.errors import FieldViolation, NotFound, ValidationFailed
from evidence_kernel.evidence_store.models import (
    EvidenceOrigin,
    IngestionProfile,
    LedgerState,
    SealedEvidence,
)
from .gaps import derive_status, project_gaps
from .models import (
    ExecutionMode,
    GapReason,
    ReadinessContext,
    ReadinessEvaluation,
    ReadinessResult,
    RuleEvaluation,
    RuleOutcome,
)
from .rules import ReadinessRule, RuleRepository, rule_set_hash
from .structured import StructuredNode, missing_paths

if TYPE_CHECKING:
    from evidence_kernel.storage.base import KernelStore, StoreTransaction

logger = logging.getLogger(__name__)


def parse_execution_mode(value: Any) -> ExecutionMode:
    """Explicit execution mode; absence is an error, never a default."""
    if isinstance(value, ExecutionMode):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return ExecutionMode(value.strip().upper())
        except ValueError:
            pass
    allowed = ", ".join(m.value for m in ExecutionMode)
    raise ValidationFailed([FieldViolation("execution_mode", f"required; must be one of: {allowed}")])


def evaluate_rule(rule: ReadinessRule, evidence: List[SealedEvidence]) -> RuleEvaluation:
    """
    Evaluate one rule against the eligible evidence set.

    Field presence is only checked once type and authority matching has
    found at least one record.
    """
    matched = [
        e for e in evidence
        if rule.accepts_evidence_type(e.evidence_type) and rule.accepts_authority(e.authority_type)
    ]
    matched_ids = tuple(e.evidence_id for e in matched)

    if not matched:
        return RuleEvaluation(
            rule_code=rule.rule_code,
            rule_version=rule.version,
            outcome=RuleOutcome.GAP,
            mandatory=rule.mandatory,
            blocking=rule.blocking,
            reason=GapReason.NO_MATCHING_EVIDENCE,
        )

    trees = [StructuredNode.from_json(e.structured_payload) for e in matched]
    missing = tuple(missing_paths(trees, rule.required_fields))

    if missing:
        return RuleEvaluation(
            rule_code=rule.rule_code,
            rule_version=rule.version,
            outcome=RuleOutcome.GAP,
            mandatory=rule.mandatory,
            blocking=rule.blocking,
            reason=GapReason.MISSING_FIELDS,
            missing_fields=missing,
            matched_evidence_ids=matched_ids,
        )

    return RuleEvaluation(
        rule_code=rule.rule_code,
        rule_version=rule.version,
        outcome=RuleOutcome.PASS,
        mandatory=rule.mandatory,
        blocking=rule.blocking,
        matched_evidence_ids=matched_ids,
    )


def compute_evaluation_digest(
    context: ReadinessContext,
    ruleset_hash: str,
    evaluations: List[RuleEvaluation],
    evidence_digests: List[str],
) -> str:
    """
    Digest a third party can recompute to verify a result.

    Covers the context key, the rule set fingerprint, the ordered rule
    outcomes and the sorted digests of the evidence that was considered.
    """
    return digest_record({
        "context": context.context_key,
        "rule_set_hash": ruleset_hash,
        "rule_outcomes": [e.digest_view() for e in evaluations],
        "evidence_digests": sorted(evidence_digests),
    })


class ReadinessEngine:
    """
    Evaluates readiness for one subject entity per request.

    Usage:
        engine = ReadinessEngine(store, rules, resolver, ledger, "evidence-kernel/1.0.0")
        evaluation = engine.evaluate(
            tenant_id="tenant-a",
            subject_entity_id="supplier-42",
            framework="CBAM",
            intended_use="TRANSITIONAL_REPORT",
            command_id="cmd-123",
            execution_mode="PRODUCTION",
        )
    """

    def __init__(
        self,
        store: KernelStore,
        rules: RuleRepository,
        entity_resolver: EntityResolver,
        ledger: AuditLedger,
        build_version: str,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.rules = rules
        self.entity_resolver = entity_resolver
        self.ledger = ledger
        self.build_version = build_version
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(f"{__name__}.ReadinessEngine")

    def evaluate(
        self,
        tenant_id: str,
        subject_entity_id: str,
        framework: str,
        intended_use: str,
        command_id: str,
        execution_mode: Any,
        actor_id: str = "system",
        correlation_id: Optional[str] = None,
        tx: Optional[StoreTransaction] = None,
    ) -> ReadinessEvaluation:
        """Run one evaluation and persist its context, result and gaps."""
        mode = self.validate_request(
            tenant_id, subject_entity_id, framework, intended_use, command_id, execution_mode
        )
        correlation_id = correlation_id or str(uuid.uuid4())

        if self.entity_resolver.resolve(tenant_id, subject_entity_id) is None:
            raise NotFound("entity")

        # Rules are global and read per evaluation
        rules = self.rules.active_rules(framework)
        applicable = [r for r in rules if r.applies_to(intended_use)]
        rules_by_key = {r.key: r for r in applicable}
        ruleset_hash = rule_set_hash(applicable)

        with self.store.transaction(existing=tx) as t:
            now = self._clock()
            context = ReadinessContext(
                context_id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                subject_entity_id=subject_entity_id,
                framework=framework,
                intended_use=intended_use,
                command_id=command_id,
                execution_mode=mode,
                requested_by=actor_id,
                created_at=now,
            )

            evidence = self._eligible_evidence(t, tenant_id, subject_entity_id, mode)
            evaluations = [evaluate_rule(rule, evidence) for rule in applicable]
            evidence_digests = sorted(e.content_fingerprint for e in evidence)

            result = ReadinessResult(
                result_id=str(uuid.uuid4()),
                context_id=context.context_id,
                tenant_id=tenant_id,
                status=derive_status(evaluations),
                rule_evaluations=tuple(evaluations),
                evaluation_digest=compute_evaluation_digest(
                    context, ruleset_hash, evaluations, evidence_digests
                ),
                rule_set_hash=ruleset_hash,
                evidence_digests=tuple(evidence_digests),
                build_version=self.build_version,
                evaluated_at=now,
            )
            gaps = project_gaps(result, rules_by_key, created_at=now)

            t.insert_readiness_context(context)
            t.insert_readiness_result(result)
            t.insert_readiness_gaps(gaps)

            self.ledger.append(
                t,
                tenant_id=tenant_id,
                event_type=AuditEventType.READINESS_EVALUATED,
                actor_id=actor_id,
                correlation_id=correlation_id,
                detail={
                    "context_id": context.context_id,
                    "result_id": result.result_id,
                    "subject_entity_id": subject_entity_id,
                    "framework": framework,
                    "intended_use": intended_use,
                    "execution_mode": mode.value,
                    "status": result.status.value,
                    "evaluation_digest": result.evaluation_digest,
                    "gap_count": len(gaps),
                },
                occurred_at=now,
            )

        self.logger.info(
            f"Readiness {result.status.value} for {subject_entity_id} "
            f"({framework}/{intended_use}, mode={mode.value}): "
            f"{result.rules_passed} passed, {result.rules_failed} gaps, "
            f"{len(evidence)} evidence records, digest={result.evaluation_digest[:16]}"
        )

        return ReadinessEvaluation(context=context, result=result, gaps=tuple(gaps))

    def get_result(self, tenant_id: str, result_id: str) -> ReadinessEvaluation:
        """Stored evaluation for this tenant; NotFound otherwise."""
        with self.store.transaction() as tx:
            result = tx.get_readiness_result(tenant_id, result_id)
            if result is None:
                raise NotFound("readiness result")
            context = tx.get_readiness_context(tenant_id, result.context_id)
            gaps = tx.list_readiness_gaps(tenant_id, result_id)
        if context is None:
            raise NotFound("readiness result")
        return ReadinessEvaluation(context=context, result=result, gaps=tuple(gaps))

    # =========================================================================
    # REQUEST VALIDATION
    # =========================================================================

    def validate_request(
        self,
        tenant_id: str,
        subject_entity_id: str,
        framework: str,
        intended_use: str,
        command_id: str,
        execution_mode: Any,
    ) -> ExecutionMode:
        """Check every request field at once; returns the parsed execution mode."""
        violations = []
        for name, value in (
            ("tenant_id", tenant_id),
            ("subject_entity_id", subject_entity_id),
            ("framework", framework),
            ("intended_use", intended_use),
            ("command_id", command_id),
        ):
            if not isinstance(value, str) or not value.strip():
                violations.append(FieldViolation(name, "required"))

        mode = None
        try:
            mode = parse_execution_mode(execution_mode)
        except ValidationFailed as e:
            violations.extend(e.violations)

        if violations:
            raise ValidationFailed(violations)
        return mode

    # =========================================================================
    # INTERNAL METHODS
    # =========================================================================

    def _eligible_evidence(
        self,
        tx: StoreTransaction,
        tenant_id: str,
        subject_entity_id: str,
        mode: ExecutionMode,
    ) -> List[SealedEvidence]:
        """Sealed, structured, in-scope evidence from active profiles only."""
        active_profiles: Dict[str, IngestionProfile] = {
            p.profile_id: p for p in tx.list_profiles(tenant_id) if p.is_active
        }

        eligible = []
        for evidence in tx.list_sealed_for_subject(tenant_id, subject_entity_id):
            if evidence.tenant_id != tenant_id:
                continue
            if evidence.ledger_state != LedgerState.SEALED:
                continue
            if evidence.structured_payload is None:
                continue
            if evidence.scope_target_id != subject_entity_id:
                continue
            if evidence.profile_id is not None and evidence.profile_id not in active_profiles:
                continue
            if mode == ExecutionMode.PRODUCTION and evidence.origin == EvidenceOrigin.TEST_FIXTURE:
                continue
            eligible.append(evidence)

        eligible.sort(key=lambda e: e.evidence_id)
        return eligible
