"""Deterministic readiness evaluation."""

from .models import (
    ExecutionMode,
    RuleOutcome,
    GapReason,
    GapSeverity,
    ReadinessStatus,
    ReadinessContext,
    RuleEvaluation,
    ReadinessResult,
    ReadinessGap,
    ReadinessEvaluation,
)
from .rules import (
    ALL_INTENDED_USES,
    RuleStatus,
    ReadinessRule,
    RuleRepository,
    StaticRuleRepository,
    StoreRuleRepository,
    get_default_rules,
    rule_set_hash,
)
from .structured import NodeKind, StructuredNode, resolve_path
from .engine import ReadinessEngine, evaluate_rule, compute_evaluation_digest

__all__ = [
    "ExecutionMode",
    "RuleOutcome",
    "GapReason",
    "GapSeverity",
    "ReadinessStatus",
    "ReadinessContext",
    "RuleEvaluation",
    "ReadinessResult",
    "ReadinessGap",
    "ReadinessEvaluation",
    "ALL_INTENDED_USES",
    "RuleStatus",
    "ReadinessRule",
    "RuleRepository",
    "StaticRuleRepository",
    "StoreRuleRepository",
    "get_default_rules",
    "rule_set_hash",
    "NodeKind",
    "StructuredNode",
    "resolve_path",
    "ReadinessEngine",
    "evaluate_rule",
    "compute_evaluation_digest",
]
