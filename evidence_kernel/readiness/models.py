"""
Readiness evaluation records.

One context per evaluation request, one result per context and zero or
more gaps per result. All three are immutable after creation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ExecutionMode(Enum):
    """
    Declared execution context of an evaluation.

    Required on every request; there is no default.
    """
    PRODUCTION = "PRODUCTION"
    TEST = "TEST"
    HOSTILE = "HOSTILE"


class RuleOutcome(Enum):
    PASS = "PASS"
    GAP = "GAP"


class GapReason(Enum):
    NO_MATCHING_EVIDENCE = "NO_MATCHING_EVIDENCE"
    MISSING_FIELDS = "MISSING_FIELDS"


class GapSeverity(Enum):
    BLOCKING = "BLOCKING"
    LIMITING = "LIMITING"


class ReadinessStatus(Enum):
    READY = "READY"
    PROVISIONAL = "PROVISIONAL"
    BLOCKED = "BLOCKED"


@dataclass(frozen=True)
class ReadinessContext:
    context_id: str
    tenant_id: str
    subject_entity_id: str
    framework: str
    intended_use: str
    command_id: str
    execution_mode: ExecutionMode
    requested_by: str
    created_at: datetime

    @property
    def context_key(self) -> Dict[str, str]:
        """
        The inputs that define what is being evaluated.

        Request identity (context id, command id, execution mode, timestamps)
        is excluded so re-running the same inputs reproduces the digest.
        """
        return {
            "tenant_id": self.tenant_id,
            "subject_entity_id": self.subject_entity_id,
            "framework": self.framework,
            "intended_use": self.intended_use,
        }


@dataclass(frozen=True)
class RuleEvaluation:
    """Outcome of one rule against the eligible evidence set."""
    rule_code: str
    rule_version: int
    outcome: RuleOutcome
    mandatory: bool
    blocking: bool
    reason: Optional[GapReason] = None
    missing_fields: Tuple[str, ...] = ()
    matched_evidence_ids: Tuple[str, ...] = ()

    @property
    def is_gap(self) -> bool:
        return self.outcome == RuleOutcome.GAP

    def digest_view(self) -> Dict[str, Any]:
        """Fields covered by the evaluation digest."""
        return {
            "rule_code": self.rule_code,
            "rule_version": self.rule_version,
            "outcome": self.outcome.value,
            "reason": self.reason.value if self.reason else None,
            "missing_fields": list(self.missing_fields),
        }

    def to_dict(self) -> Dict[str, Any]:
        view = self.digest_view()
        view.update({
            "mandatory": self.mandatory,
            "blocking": self.blocking,
            "matched_evidence_ids": list(self.matched_evidence_ids),
        })
        return view


@dataclass(frozen=True)
class ReadinessResult:
    result_id: str
    context_id: str
    tenant_id: str
    status: ReadinessStatus
    rule_evaluations: Tuple[RuleEvaluation, ...]
    evaluation_digest: str
    rule_set_hash: str
    evidence_digests: Tuple[str, ...]
    build_version: str
    evaluated_at: datetime

    @property
    def rules_passed(self) -> int:
        return sum(1 for e in self.rule_evaluations if e.outcome == RuleOutcome.PASS)

    @property
    def rules_failed(self) -> int:
        return sum(1 for e in self.rule_evaluations if e.outcome == RuleOutcome.GAP)

    def to_summary(self) -> str:
        return (
            f"Readiness {self.status.value}: {self.rules_passed} passed, "
            f"{self.rules_failed} with gaps (digest {self.evaluation_digest[:16]})"
        )


@dataclass(frozen=True)
class ReadinessGap:
    """A mandatory rule the subject does not yet satisfy."""
    gap_id: str
    result_id: str
    tenant_id: str
    rule_code: str
    rule_version: int
    severity: GapSeverity
    reason: GapReason
    remediation: str
    created_at: datetime
    legal_reference: Optional[str] = None
    missing_fields: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gap_id": self.gap_id,
            "rule_code": self.rule_code,
            "rule_version": self.rule_version,
            "severity": self.severity.value,
            "reason": self.reason.value,
            "missing_fields": list(self.missing_fields),
            "remediation": self.remediation,
            "legal_reference": self.legal_reference,
        }

    def to_citation(self) -> str:
        reference = self.legal_reference or "no legal reference"
        return f"[Gap: {self.rule_code} v{self.rule_version} | {self.severity.value} | {reference}]"

    def to_summary(self) -> str:
        if self.reason == GapReason.MISSING_FIELDS:
            detail = f"missing fields {', '.join(self.missing_fields)}"
        else:
            detail = "no matching sealed evidence"
        return f"{self.rule_code} ({self.severity.value}): {detail}. {self.remediation}"


@dataclass(frozen=True)
class ReadinessEvaluation:
    """Everything produced by one evaluation request."""
    context: ReadinessContext
    result: ReadinessResult
    gaps: Tuple[ReadinessGap, ...]

    def to_response(self) -> Dict[str, Any]:
        return {
            "result_id": self.result.result_id,
            "context_id": self.context.context_id,
            "status": self.result.status.value,
            "rules_passed": self.result.rules_passed,
            "rules_failed": self.result.rules_failed,
            "evaluation_digest": self.result.evaluation_digest,
            "rule_set_hash": self.result.rule_set_hash,
            "rule_outcomes": [e.to_dict() for e in self.result.rule_evaluations],
            "gaps": [g.to_dict() for g in self.gaps],
        }
