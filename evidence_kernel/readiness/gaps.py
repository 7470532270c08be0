"""
Gap/Result Projection

Turns rule outcomes into gap records and derives the overall readiness
status. Only GAP outcomes on mandatory rules become gap records; every gap
references the result it belongs to.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Tuple

from .models import (
    GapReason,
    GapSeverity,
    ReadinessGap,
    ReadinessResult,
    ReadinessStatus,
    RuleEvaluation,
)
from .rules import ReadinessRule


def gap_severity(evaluation: RuleEvaluation) -> GapSeverity:
    return GapSeverity.BLOCKING if evaluation.blocking else GapSeverity.LIMITING


def gap_producing(evaluations: Iterable[RuleEvaluation]) -> List[RuleEvaluation]:
    """Evaluations that materialize as gap records."""
    return [e for e in evaluations if e.is_gap and e.mandatory]


def derive_status(evaluations: Iterable[RuleEvaluation]) -> ReadinessStatus:
    """
    BLOCKED if any blocking gap, PROVISIONAL if any limiting gap, else READY.

    Zero applicable rules is READY.
    """
    severities = {gap_severity(e) for e in gap_producing(evaluations)}
    if GapSeverity.BLOCKING in severities:
        return ReadinessStatus.BLOCKED
    if GapSeverity.LIMITING in severities:
        return ReadinessStatus.PROVISIONAL
    return ReadinessStatus.READY


def project_gaps(
    result: ReadinessResult,
    rules_by_key: Dict[Tuple[str, int], ReadinessRule],
    created_at: datetime,
) -> List[ReadinessGap]:
    """Materialize one gap per mandatory GAP outcome, in rule order."""
    gaps = []
    for evaluation in gap_producing(result.rule_evaluations):
        rule = rules_by_key[(evaluation.rule_code, evaluation.rule_version)]
        gaps.append(ReadinessGap(
            gap_id=str(uuid.uuid4()),
            result_id=result.result_id,
            tenant_id=result.tenant_id,
            rule_code=rule.rule_code,
            rule_version=rule.version,
            severity=gap_severity(evaluation),
            reason=evaluation.reason or GapReason.NO_MATCHING_EVIDENCE,
            remediation=rule.remediation,
            legal_reference=rule.legal_reference,
            missing_fields=evaluation.missing_fields,
            created_at=created_at,
        ))
    return gaps
