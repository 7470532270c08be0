"""Evidence Store - drafts, sealing and immutable evidence records."""

from .models import (
    DeclaredScope,
    EvidenceType,
    IngestionMethod,
    RetentionPolicy,
    LegalBasis,
    EvidenceState,
    LedgerState,
    TrustLevel,
    ReviewStatus,
    EvidenceOrigin,
    ProfileStatus,
    EvidenceDraft,
    Attachment,
    SealedEvidence,
    IngestionProfile,
)
from .policies import compute_retention_end, trust_level_for, review_status_for
from .state_machine import EvidenceStateMachine, QuarantineFollowup, reference_time
from .profiles import ProfileRegistry

__all__ = [
    "DeclaredScope",
    "EvidenceType",
    "IngestionMethod",
    "RetentionPolicy",
    "LegalBasis",
    "EvidenceState",
    "LedgerState",
    "TrustLevel",
    "ReviewStatus",
    "EvidenceOrigin",
    "ProfileStatus",
    "EvidenceDraft",
    "Attachment",
    "SealedEvidence",
    "IngestionProfile",
    "compute_retention_end",
    "trust_level_for",
    "review_status_for",
    "EvidenceStateMachine",
    "QuarantineFollowup",
    "reference_time",
    "ProfileRegistry",
]
