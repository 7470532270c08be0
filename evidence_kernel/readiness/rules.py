"""
Readiness Rule Definitions

Declarative, versioned rules that say which sealed evidence an entity must
hold for a regulatory framework and intended use. Rules are global (not
tenant-scoped) and read-only at evaluation time.

Each rule is:
- Deterministic: outcome depends only on the evidence set it is given
- Versioned: (rule_code, version) identifies a rule forever
- Traceable: carries its legal reference and remediation text

Audit Note: The rule set used for an evaluation is fingerprinted by
`rule_set_hash` and stored on the readiness result.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Tuple

from evidence_kernel.canonical import digest_record
from evidence_kernel.evidence_store.models import EvidenceType
from .structured import split_path

if TYPE_CHECKING:
    from evidence_kernel.storage.base import KernelStore

logger = logging.getLogger(__name__)

ALL_INTENDED_USES = "ALL"


class RuleStatus(Enum):
    ACTIVE = "ACTIVE"
    RETIRED = "RETIRED"


@dataclass(frozen=True)
class ReadinessRule:
    """
    Immutable definition of one readiness requirement.

    Empty `required_evidence_types` or `required_authority_types` mean the
    rule accepts any type / authority, but at least one sealed structured
    record must still match.
    """
    rule_code: str
    version: int
    framework: str
    description: str
    intended_use: str = ALL_INTENDED_USES
    required_evidence_types: Tuple[EvidenceType, ...] = ()
    required_authority_types: Tuple[str, ...] = ()
    required_fields: Tuple[str, ...] = ()
    mandatory: bool = True
    blocking: bool = True
    legal_reference: Optional[str] = None
    remediation: str = ""
    status: RuleStatus = RuleStatus.ACTIVE

    def __post_init__(self):
        for path in self.required_fields:
            split_path(path)
        object.__setattr__(
            self,
            "required_authority_types",
            tuple(a.upper() for a in self.required_authority_types),
        )

    @property
    def key(self) -> Tuple[str, int]:
        return (self.rule_code, self.version)

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE

    def applies_to(self, intended_use: str) -> bool:
        return self.intended_use == ALL_INTENDED_USES or self.intended_use == intended_use

    def accepts_evidence_type(self, evidence_type: EvidenceType) -> bool:
        return not self.required_evidence_types or evidence_type in self.required_evidence_types

    def accepts_authority(self, authority_type: Optional[str]) -> bool:
        if not self.required_authority_types:
            return True
        return authority_type is not None and authority_type.upper() in self.required_authority_types

    @property
    def definition_hash(self) -> str:
        """SHA-256 over every behavior-affecting field."""
        return digest_record({
            "rule_code": self.rule_code,
            "version": self.version,
            "framework": self.framework,
            "intended_use": self.intended_use,
            "required_evidence_types": sorted(t.value for t in self.required_evidence_types),
            "required_authority_types": sorted(self.required_authority_types),
            "required_fields": list(self.required_fields),
            "mandatory": self.mandatory,
            "blocking": self.blocking,
        })


def rule_set_hash(rules: List[ReadinessRule]) -> str:
    """
    Fingerprint of a rule set for the audit trail.

    Changes whenever any rule is added, removed or modified.
    """
    return digest_record([
        {"rule_code": r.rule_code, "version": r.version, "definition": r.definition_hash}
        for r in sorted(rules, key=lambda r: r.key)
    ])


# =============================================================================
# DEFAULT RULE CATALOG
# =============================================================================

CBAM_RULES = [
    ReadinessRule(
        rule_code="CBAM-001",
        version=1,
        framework="CBAM",
        description="Supplier master data identifies the installation operator",
        required_evidence_types=(EvidenceType.SUPPLIER_MASTER,),
        required_fields=("supplier.name", "supplier.country", "installation.id"),
        mandatory=True,
        blocking=True,
        legal_reference="Regulation (EU) 2023/956, Art. 10",
        remediation="Seal supplier master data naming the operator, country and installation id.",
    ),
    ReadinessRule(
        rule_code="CBAM-002",
        version=1,
        framework="CBAM",
        description="Product master data carries CN codes for imported goods",
        required_evidence_types=(EvidenceType.PRODUCT_MASTER, EvidenceType.BOM),
        required_fields=("product.cn_code",),
        mandatory=True,
        blocking=True,
        legal_reference="Regulation (EU) 2023/956, Annex I",
        remediation="Provide product master data or a bill of materials with the 8-digit CN code.",
    ),
    ReadinessRule(
        rule_code="CBAM-003",
        version=1,
        framework="CBAM",
        description="Embedded emissions reported by the installation",
        required_evidence_types=(EvidenceType.TEST_REPORT, EvidenceType.CERTIFICATE),
        required_authority_types=("SUPPLIER", "THIRD_PARTY_VERIFIER"),
        required_fields=("emissions.direct", "emissions.reporting_period"),
        mandatory=True,
        blocking=False,
        legal_reference="Implementing Regulation (EU) 2023/1773, Art. 4",
        remediation="Request an emissions report from the operator; default values apply until then.",
    ),
    ReadinessRule(
        rule_code="CBAM-004",
        version=1,
        framework="CBAM",
        intended_use="DEFINITIVE_DECLARATION",
        description="Emissions verified by an accredited verifier",
        required_evidence_types=(EvidenceType.CERTIFICATE,),
        required_authority_types=("THIRD_PARTY_VERIFIER",),
        required_fields=("verification.accreditation_id",),
        mandatory=True,
        blocking=True,
        legal_reference="Regulation (EU) 2023/956, Art. 8",
        remediation="Obtain a verification report from an accredited CBAM verifier.",
    ),
]

EUDR_RULES = [
    ReadinessRule(
        rule_code="EUDR-001",
        version=1,
        framework="EUDR",
        description="Plot geolocation for every sourcing location",
        required_evidence_types=(EvidenceType.SUPPLIER_MASTER, EvidenceType.CERTIFICATE),
        required_fields=("geolocation.latitude", "geolocation.longitude"),
        mandatory=True,
        blocking=True,
        legal_reference="Regulation (EU) 2023/1115, Art. 9(1)(d)",
        remediation="Collect plot coordinates from the supplier for each production plot.",
    ),
    ReadinessRule(
        rule_code="EUDR-002",
        version=1,
        framework="EUDR",
        description="Deforestation-free declaration after the cut-off date",
        required_evidence_types=(EvidenceType.CERTIFICATE,),
        required_fields=("deforestation_free", "cutoff_date"),
        mandatory=True,
        blocking=True,
        legal_reference="Regulation (EU) 2023/1115, Art. 3",
        remediation="Seal a certificate stating deforestation-free production since 2020-12-31.",
    ),
    ReadinessRule(
        rule_code="EUDR-003",
        version=1,
        framework="EUDR",
        description="Supply chain transaction trail",
        required_evidence_types=(EvidenceType.TRANSACTION_LOG,),
        required_fields=("transactions",),
        mandatory=False,
        blocking=False,
        legal_reference="Regulation (EU) 2023/1115, Art. 9(1)(e)",
        remediation="Provide transaction logs linking purchases to plots.",
    ),
]

CSRD_RULES = [
    ReadinessRule(
        rule_code="CSRD-001",
        version=1,
        framework="CSRD",
        description="Own-operations emissions baseline",
        required_evidence_types=(EvidenceType.TRANSACTION_LOG, EvidenceType.TEST_REPORT),
        required_authority_types=("INTERNAL", "THIRD_PARTY_VERIFIER"),
        required_fields=("emissions.scope1", "emissions.scope2"),
        mandatory=True,
        blocking=False,
        legal_reference="ESRS E1-6",
        remediation="Seal scope 1 and scope 2 emissions for the reporting year.",
    ),
]


def get_default_rules() -> List[ReadinessRule]:
    """The built-in rule catalog."""
    return CBAM_RULES + EUDR_RULES + CSRD_RULES


# =============================================================================
# RULE REPOSITORIES
# =============================================================================

class RuleRepository(ABC):
    """
    Read-only source of readiness rules.

    Queried once per evaluation; implementations must not keep mutable
    per-process copies that could drift between instances.
    """

    @abstractmethod
    def active_rules(self, framework: str) -> List[ReadinessRule]:
        """Active rules for a framework ordered by (rule_code, version)."""


class StaticRuleRepository(RuleRepository):
    """Rules fixed at construction time."""

    def __init__(self, rules: Optional[List[ReadinessRule]] = None):
        self._rules: Tuple[ReadinessRule, ...] = tuple(
            get_default_rules() if rules is None else rules
        )

    def active_rules(self, framework: str) -> List[ReadinessRule]:
        return sorted(
            (r for r in self._rules if r.framework == framework and r.is_active),
            key=lambda r: r.key,
        )


class StoreRuleRepository(RuleRepository):
    """Rules read from the global rule table of the kernel store."""

    def __init__(self, store: KernelStore):
        self.store = store

    def active_rules(self, framework: str) -> List[ReadinessRule]:
        with self.store.transaction() as tx:
            rules = tx.list_rules(framework)
        active = sorted((r for r in rules if r.is_active), key=lambda r: r.key)
        logger.debug(f"Loaded {len(active)} active rules for framework {framework}")
        return active

    def publish(self, rules: List[ReadinessRule]) -> int:
        """Install or replace rule definitions. Returns the count written."""
        with self.store.transaction() as tx:
            for rule in rules:
                tx.upsert_rule(rule)
        logger.info(f"Published {len(rules)} readiness rules")
        return len(rules)
