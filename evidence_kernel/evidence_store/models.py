"""
Evidence Data Model

Drafts, attachments and sealed evidence records, plus the enumerations
that constrain a declaration.

Audit Note:
- Attachments and sealed evidence are frozen once created
- Drafts are mutable only while DRAFTING and only by their tenant
- The metadata digest is computed over `EvidenceDraft.declaration()`
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from evidence_kernel.canonical import canonical_json, digest_record
from evidence_kernel.errors import CanonicalizationError, FieldViolation


# =============================================================================
# ENUMERATIONS
# =============================================================================

class DeclaredScope(Enum):
    """What part of the organization a piece of evidence speaks for."""
    ENTIRE_ORGANIZATION = "ENTIRE_ORGANIZATION"
    LEGAL_ENTITY = "LEGAL_ENTITY"
    SITE = "SITE"
    PRODUCT_FAMILY = "PRODUCT_FAMILY"
    UNKNOWN = "UNKNOWN"


SCOPES_REQUIRING_TARGET = frozenset({
    DeclaredScope.LEGAL_ENTITY,
    DeclaredScope.SITE,
    DeclaredScope.PRODUCT_FAMILY,
})


class EvidenceType(Enum):
    """Dataset type of the declared evidence."""
    SUPPLIER_MASTER = "SUPPLIER_MASTER"
    PRODUCT_MASTER = "PRODUCT_MASTER"
    BOM = "BOM"
    CERTIFICATE = "CERTIFICATE"
    TEST_REPORT = "TEST_REPORT"
    TRANSACTION_LOG = "TRANSACTION_LOG"


class IngestionMethod(Enum):
    """How the evidence entered the platform."""
    MANUAL_ENTRY = "MANUAL_ENTRY"
    FILE_UPLOAD = "FILE_UPLOAD"
    ERP_EXPORT = "ERP_EXPORT"
    ERP_API = "ERP_API"
    SUPPLIER_PORTAL = "SUPPLIER_PORTAL"
    API_PUSH = "API_PUSH"


class RetentionPolicy(Enum):
    STANDARD_1_YEAR = "STANDARD_1_YEAR"
    THREE_YEARS = "3_YEARS"
    SEVEN_YEARS = "7_YEARS"
    TEN_YEARS = "10_YEARS"
    CUSTOM = "CUSTOM"


class LegalBasis(Enum):
    """GDPR Article 6(1) lawful bases for processing personal data."""
    CONSENT = "CONSENT"
    CONTRACT = "CONTRACT"
    LEGAL_OBLIGATION = "LEGAL_OBLIGATION"
    VITAL_INTERESTS = "VITAL_INTERESTS"
    PUBLIC_TASK = "PUBLIC_TASK"
    LEGITIMATE_INTERESTS = "LEGITIMATE_INTERESTS"


class EvidenceState(Enum):
    """
    Lifecycle of a piece of evidence.

    VALIDATING is transient and never persisted; a failed validation
    leaves the draft in DRAFTING.
    """
    DRAFTING = "DRAFTING"
    VALIDATING = "VALIDATING"
    SEALED = "SEALED"
    QUARANTINED = "QUARANTINED"


TERMINAL_STATES = frozenset({EvidenceState.SEALED, EvidenceState.QUARANTINED})


class LedgerState(Enum):
    SEALED = "SEALED"
    QUARANTINED = "QUARANTINED"


class TrustLevel(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ReviewStatus(Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"


class EvidenceOrigin(Enum):
    """Whether evidence came from a real submission or a test fixture."""
    USER_SUBMITTED = "USER_SUBMITTED"
    TEST_FIXTURE = "TEST_FIXTURE"


class ProfileStatus(Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    RETIRED = "RETIRED"


# =============================================================================
# FIELD PARSING
# =============================================================================

# One century; keeps every retention end representable
MAX_RETENTION_CUSTOM_DAYS = 36600

# Nesting limit for structured payloads, counted in objects and arrays
MAX_PAYLOAD_DEPTH = 32


def enum_parser(enum_cls: type) -> Callable[[Any], Enum]:
    allowed = ", ".join(member.value for member in enum_cls)

    def parse(value: Any) -> Enum:
        if isinstance(value, enum_cls):
            return value
        if isinstance(value, str):
            try:
                return enum_cls(value.strip().upper())
            except ValueError:
                pass
        raise ValueError(f"must be one of: {allowed}")

    return parse


def _parse_text(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("must be a string")
    return value


def _parse_identifier(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("must be a non-empty string")
    return value.strip()


def _parse_authority(value: Any) -> str:
    return _parse_identifier(value).upper()


def _parse_tags(value: Any) -> List[str]:
    if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
        raise ValueError("must be a list of strings")
    tags = set()
    for tag in value:
        if not isinstance(tag, str) or not tag.strip():
            raise ValueError("must be a list of non-empty strings")
        tags.add(tag.strip())
    return sorted(tags)


def _parse_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError("must be a boolean")
    return value


def _parse_positive_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError("must be a positive integer")
    return value


def _parse_retention_days(value: Any) -> int:
    days = _parse_positive_int(value)
    if days > MAX_RETENTION_CUSTOM_DAYS:
        raise ValueError(f"must be at most {MAX_RETENTION_CUSTOM_DAYS} days")
    return days


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str):
        try:
            moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("must be an ISO-8601 timestamp")
    else:
        raise ValueError("must be an ISO-8601 timestamp")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _nesting_exceeds(value: Any, limit: int) -> bool:
    # Iterative walk; a cyclic structure also trips the limit
    stack = [(value, 1)]
    while stack:
        node, depth = stack.pop()
        if isinstance(node, dict):
            children = node.values()
        elif isinstance(node, (list, tuple)):
            children = node
        else:
            continue
        if depth > limit:
            return True
        stack.extend((child, depth + 1) for child in children)
    return False


def _parse_payload(value: Any) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError("must be a JSON object")
    if _nesting_exceeds(value, MAX_PAYLOAD_DEPTH):
        raise ValueError(f"must not nest deeper than {MAX_PAYLOAD_DEPTH} levels")
    try:
        # Normalize through the canonical encoder so only JSON primitives remain
        return json.loads(canonical_json(value))
    except CanonicalizationError:
        raise ValueError("must contain only JSON-compatible values")


DRAFT_FIELD_PARSERS: Dict[str, Callable[[Any], Any]] = {
    "declared_scope": enum_parser(DeclaredScope),
    "scope_target_id": _parse_identifier,
    "evidence_type": enum_parser(EvidenceType),
    "justification": _parse_text,
    "purpose_tags": _parse_tags,
    "contains_personal_data": _parse_bool,
    "gdpr_legal_basis": enum_parser(LegalBasis),
    "retention_policy": enum_parser(RetentionPolicy),
    "retention_custom_days": _parse_retention_days,
    "ingestion_method": enum_parser(IngestionMethod),
    "authority_type": _parse_authority,
    "profile_id": _parse_identifier,
    "structured_payload": _parse_payload,
    "quarantine_reason": _parse_text,
    "resolution_due_date": parse_timestamp,
    "origin": enum_parser(EvidenceOrigin),
}

# Accepted alternative spellings for declaration fields
FIELD_ALIASES = {
    "dataset_type": "evidence_type",
    "legal_basis": "gdpr_legal_basis",
    "personal_data": "contains_personal_data",
}

_FIELD_DEFAULTS: Dict[str, Any] = {
    "purpose_tags": [],
    "contains_personal_data": False,
    "origin": EvidenceOrigin.USER_SUBMITTED,
}

READ_ONLY_FIELDS = frozenset({
    "tenant_id", "draft_id", "status", "attachment_ids",
    "created_by", "created_at", "updated_at",
})


def parse_draft_fields(fields: Dict[str, Any]) -> Tuple[Dict[str, Any], List[FieldViolation]]:
    """
    Parse caller-supplied declaration fields.

    Returns the typed values plus every malformed field; nothing stops at
    the first error. A None value clears the field back to its default.
    """
    values: Dict[str, Any] = {}
    violations: List[FieldViolation] = []

    for raw_name in sorted(fields):
        name = FIELD_ALIASES.get(raw_name, raw_name)
        value = fields[raw_name]

        if name in READ_ONLY_FIELDS:
            violations.append(FieldViolation(raw_name, "field is not writable"))
            continue
        parser = DRAFT_FIELD_PARSERS.get(name)
        if parser is None:
            violations.append(FieldViolation(raw_name, "unknown field"))
            continue
        if value is None:
            values[name] = _FIELD_DEFAULTS.get(name)
            continue
        try:
            values[name] = parser(value)
        except ValueError as e:
            violations.append(FieldViolation(raw_name, str(e)))

    return values, violations


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class EvidenceDraft:
    """
    Mutable staging object for a piece of evidence.

    Completeness is only enforced at seal time.
    """
    draft_id: str
    tenant_id: str
    created_by: str
    created_at: datetime
    updated_at: datetime
    status: EvidenceState = EvidenceState.DRAFTING

    declared_scope: Optional[DeclaredScope] = None
    scope_target_id: Optional[str] = None
    evidence_type: Optional[EvidenceType] = None
    justification: Optional[str] = None
    purpose_tags: List[str] = field(default_factory=list)
    contains_personal_data: bool = False
    gdpr_legal_basis: Optional[LegalBasis] = None
    retention_policy: Optional[RetentionPolicy] = None
    retention_custom_days: Optional[int] = None
    ingestion_method: Optional[IngestionMethod] = None
    authority_type: Optional[str] = None
    profile_id: Optional[str] = None
    structured_payload: Optional[Dict[str, Any]] = None
    quarantine_reason: Optional[str] = None
    resolution_due_date: Optional[datetime] = None
    origin: EvidenceOrigin = EvidenceOrigin.USER_SUBMITTED

    attachment_ids: List[str] = field(default_factory=list)

    @property
    def is_mutable(self) -> bool:
        return self.status == EvidenceState.DRAFTING

    def apply(self, values: Dict[str, Any]) -> None:
        """Apply already-parsed declaration values."""
        for name, value in values.items():
            setattr(self, name, value)

    def declaration(self) -> Dict[str, Any]:
        """
        The declaration as a plain mapping.

        This is what the metadata digest covers; tenant and draft ids are
        left out so identical declarations yield identical digests.
        """
        return {name: getattr(self, name) for name in DRAFT_FIELD_PARSERS}

    def to_response(self) -> Dict[str, Any]:
        response = json.loads(canonical_json(self.declaration()))
        response.update({
            "draft_id": self.draft_id,
            "status": self.status.value,
            "attachment_ids": list(self.attachment_ids),
            "updated_at": self.updated_at.isoformat(),
        })
        return response


@dataclass(frozen=True)
class Attachment:
    """A file bound to a draft. Only its digest and length are kept."""
    attachment_id: str
    tenant_id: str
    draft_id: str
    byte_length: int
    content_digest: str
    created_at: datetime
    filename: Optional[str] = None
    content_type: Optional[str] = None


@dataclass(frozen=True)
class SealedEvidence:
    """
    Immutable, fingerprinted evidence record.

    No field changes after creation; the Postgres table carries a trigger
    that rejects UPDATE and DELETE.
    """
    evidence_id: str
    tenant_id: str
    draft_id: str
    ledger_state: LedgerState
    payload_digest: Optional[str]
    metadata_digest: str
    sealed_at: datetime
    retention_end: datetime
    trust_level: TrustLevel
    review_status: ReviewStatus
    sealed_by: str

    evidence_type: EvidenceType
    declared_scope: DeclaredScope
    ingestion_method: IngestionMethod
    retention_policy: RetentionPolicy
    scope_target_id: Optional[str] = None
    authority_type: Optional[str] = None
    profile_id: Optional[str] = None
    structured_payload: Optional[Dict[str, Any]] = None
    origin: EvidenceOrigin = EvidenceOrigin.USER_SUBMITTED
    attachment_ids: Tuple[str, ...] = ()
    quarantine_reason: Optional[str] = None
    resolution_due_date: Optional[datetime] = None

    @property
    def is_quarantined(self) -> bool:
        return self.ledger_state == LedgerState.QUARANTINED

    @property
    def content_fingerprint(self) -> str:
        """Single digest over both payload and metadata digests."""
        return digest_record([self.metadata_digest, self.payload_digest])

    def to_response(self) -> Dict[str, Any]:
        return {
            "evidence_id": self.evidence_id,
            "draft_id": self.draft_id,
            "ledger_state": self.ledger_state.value,
            "payload_digest": self.payload_digest,
            "metadata_digest": self.metadata_digest,
            "sealed_at": self.sealed_at.isoformat(),
            "retention_end": self.retention_end.isoformat(),
            "trust_level": self.trust_level.value,
            "review_status": self.review_status.value,
        }

    def to_citation(self) -> str:
        return (
            f"[Evidence: {self.evidence_type.value} | {self.ledger_state.value} | "
            f"Sealed: {self.sealed_at.isoformat()} | Digest: {self.metadata_digest[:16]}]"
        )


@dataclass(frozen=True)
class IngestionProfile:
    """
    Authorization for a tenant to feed one data domain for one entity.

    Evidence bound to a profile only counts while the profile is ACTIVE.
    """
    profile_id: str
    tenant_id: str
    entity_id: str
    data_domain: str
    ingestion_path: IngestionMethod
    authority_type: str
    status: ProfileStatus = ProfileStatus.ACTIVE
    created_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == ProfileStatus.ACTIVE

    def to_response(self) -> Dict[str, Any]:
        return {
            "profile_id": self.profile_id,
            "entity_id": self.entity_id,
            "data_domain": self.data_domain,
            "ingestion_path": self.ingestion_path.value,
            "authority_type": self.authority_type,
            "status": self.status.value,
        }
