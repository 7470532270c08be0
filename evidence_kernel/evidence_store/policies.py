"""
Seal-time policy tables.

Retention durations, trust derivation and the ingestion method x dataset
compatibility matrix. All of these are evaluated exactly once, when a draft
is sealed, and the outcome is stored on the sealed record.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Optional

from .models import (
    MAX_RETENTION_CUSTOM_DAYS,
    EvidenceType,
    IngestionMethod,
    RetentionPolicy,
    ReviewStatus,
    TrustLevel,
)


# =============================================================================
# RETENTION
# =============================================================================

RETENTION_YEARS: Dict[RetentionPolicy, int] = {
    RetentionPolicy.STANDARD_1_YEAR: 1,
    RetentionPolicy.THREE_YEARS: 3,
    RetentionPolicy.SEVEN_YEARS: 7,
    RetentionPolicy.TEN_YEARS: 10,
}


def add_calendar_years(moment: datetime, years: int) -> datetime:
    """
    Same month, day and time-of-day `years` later.

    A Feb 29 start rolls over to Mar 1 when the target year is not a leap year.
    """
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, month=3, day=1)


def compute_retention_end(
    sealed_at: datetime,
    policy: RetentionPolicy,
    custom_days: Optional[int] = None,
) -> datetime:
    """
    Retention end for a record sealed at `sealed_at`.

    Pure function of its arguments; never consults the current time.
    """
    if policy == RetentionPolicy.CUSTOM:
        if custom_days is None or not 0 < custom_days <= MAX_RETENTION_CUSTOM_DAYS:
            raise ValueError(f"CUSTOM retention requires 1 to {MAX_RETENTION_CUSTOM_DAYS} days")
        return sealed_at + timedelta(days=custom_days)
    return add_calendar_years(sealed_at, RETENTION_YEARS[policy])


# =============================================================================
# TRUST
# =============================================================================

HIGH_TRUST_METHODS: FrozenSet[IngestionMethod] = frozenset({
    IngestionMethod.ERP_API,
    IngestionMethod.SUPPLIER_PORTAL,
})


def trust_level_for(method: IngestionMethod) -> TrustLevel:
    if method == IngestionMethod.MANUAL_ENTRY:
        return TrustLevel.LOW
    if method in HIGH_TRUST_METHODS:
        return TrustLevel.HIGH
    return TrustLevel.MEDIUM


def review_status_for(trust_level: TrustLevel) -> ReviewStatus:
    """Low-trust evidence waits for a human reviewer."""
    if trust_level == TrustLevel.LOW:
        return ReviewStatus.PENDING_REVIEW
    return ReviewStatus.APPROVED


# =============================================================================
# METHOD x DATASET COMPATIBILITY
# =============================================================================

FILE_BACKED_METHODS: FrozenSet[IngestionMethod] = frozenset({
    IngestionMethod.FILE_UPLOAD,
    IngestionMethod.ERP_EXPORT,
    IngestionMethod.SUPPLIER_PORTAL,
})

_MASTER_DATA_METHODS = frozenset({
    IngestionMethod.MANUAL_ENTRY,
    IngestionMethod.FILE_UPLOAD,
    IngestionMethod.ERP_EXPORT,
    IngestionMethod.ERP_API,
    IngestionMethod.API_PUSH,
})

_DOCUMENT_METHODS = frozenset({
    IngestionMethod.FILE_UPLOAD,
    IngestionMethod.SUPPLIER_PORTAL,
})

METHOD_DATASET_ALLOWED: Dict[EvidenceType, FrozenSet[IngestionMethod]] = {
    EvidenceType.SUPPLIER_MASTER: _MASTER_DATA_METHODS,
    EvidenceType.PRODUCT_MASTER: _MASTER_DATA_METHODS,
    EvidenceType.BOM: _MASTER_DATA_METHODS,
    EvidenceType.CERTIFICATE: _DOCUMENT_METHODS,
    EvidenceType.TEST_REPORT: _DOCUMENT_METHODS,
    EvidenceType.TRANSACTION_LOG: frozenset({
        IngestionMethod.API_PUSH,
        IngestionMethod.FILE_UPLOAD,
        IngestionMethod.ERP_EXPORT,
        IngestionMethod.ERP_API,
    }),
}


def is_method_allowed(evidence_type: EvidenceType, method: IngestionMethod) -> bool:
    return method in METHOD_DATASET_ALLOWED.get(evidence_type, frozenset())


def accepts_files(method: Optional[IngestionMethod]) -> bool:
    return method != IngestionMethod.MANUAL_ENTRY
