"""
Ingestion profiles.

A profile authorizes one ingestion path for one entity and data domain
within a tenant. Readiness evaluation only counts profile-bound evidence
while its profile is ACTIVE.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, List, Optional

from evidence_kernel.audit_ledger import AuditEventType, AuditLedger
from evidence_kernel.entities import EntityResolver
from evidence_kernel.errors import FieldViolation, NotFound, ValidationFailed
from .models import IngestionMethod, IngestionProfile, ProfileStatus, enum_parser

if TYPE_CHECKING:
    from evidence_kernel.storage.base import KernelStore

logger = logging.getLogger(__name__)

_parse_method = enum_parser(IngestionMethod)
_parse_status = enum_parser(ProfileStatus)


class ProfileRegistry:
    """Tenant-scoped registration and lifecycle of ingestion profiles."""

    def __init__(
        self,
        store: KernelStore,
        ledger: AuditLedger,
        entity_resolver: EntityResolver,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.entity_resolver = entity_resolver
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(f"{__name__}.ProfileRegistry")

    def register(
        self,
        tenant_id: str,
        entity_id: str,
        data_domain: str,
        ingestion_path: Any,
        authority_type: str,
        actor_id: str = "system",
        correlation_id: Optional[str] = None,
    ) -> IngestionProfile:
        violations = []
        for name, value in (
            ("tenant_id", tenant_id),
            ("entity_id", entity_id),
            ("data_domain", data_domain),
            ("authority_type", authority_type),
        ):
            if not isinstance(value, str) or not value.strip():
                violations.append(FieldViolation(name, "required"))

        method = None
        try:
            method = _parse_method(ingestion_path)
        except ValueError as e:
            violations.append(FieldViolation("ingestion_path", str(e)))

        if not violations and self.entity_resolver.resolve(tenant_id, entity_id) is None:
            violations.append(FieldViolation("entity_id", "does not resolve to an entity in this tenant"))
        if violations:
            raise ValidationFailed(violations)

        with self.store.transaction() as tx:
            now = self._clock()
            profile = IngestionProfile(
                profile_id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                entity_id=entity_id,
                data_domain=data_domain.strip().upper(),
                ingestion_path=method,
                authority_type=authority_type.strip().upper(),
                status=ProfileStatus.ACTIVE,
                created_at=now,
            )
            tx.upsert_profile(profile)
            self.ledger.append(
                tx,
                tenant_id=tenant_id,
                event_type=AuditEventType.PROFILE_REGISTERED,
                actor_id=actor_id,
                correlation_id=correlation_id or str(uuid.uuid4()),
                detail={
                    "profile_id": profile.profile_id,
                    "entity_id": entity_id,
                    "data_domain": profile.data_domain,
                    "ingestion_path": method.value,
                },
                occurred_at=now,
            )

        self.logger.info(f"Registered ingestion profile {profile.profile_id} for {entity_id}")
        return profile

    def set_status(
        self,
        tenant_id: str,
        profile_id: str,
        status: Any,
        actor_id: str = "system",
        correlation_id: Optional[str] = None,
    ) -> IngestionProfile:
        try:
            new_status = _parse_status(status)
        except ValueError as e:
            raise ValidationFailed([FieldViolation("status", str(e))])

        with self.store.transaction() as tx:
            profile = tx.get_profile(tenant_id, profile_id)
            if profile is None:
                raise NotFound("profile")
            updated = replace(profile, status=new_status)
            tx.upsert_profile(updated)
            self.ledger.append(
                tx,
                tenant_id=tenant_id,
                event_type=AuditEventType.PROFILE_STATUS_CHANGED,
                actor_id=actor_id,
                correlation_id=correlation_id or str(uuid.uuid4()),
                detail={
                    "profile_id": profile_id,
                    "from": profile.status.value,
                    "to": new_status.value,
                },
            )

        self.logger.info(f"Profile {profile_id}: {profile.status.value} -> {new_status.value}")
        return updated

    def active_profiles(self, tenant_id: str) -> List[IngestionProfile]:
        with self.store.transaction() as tx:
            return [p for p in tx.list_profiles(tenant_id) if p.is_active]
