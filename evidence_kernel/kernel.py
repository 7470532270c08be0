"""
Evidence Kernel facade.

The only place where kernel errors become responses. Every call returns a
`KernelResponse` carrying an HTTP-style status code, a JSON-compatible
body, the correlation id and the build version, so any transport (HTTP
handler, queue consumer, CLI) can relay it unchanged.

Audit Note:
- Mutating commands that carry a command id run through the command
  store and replay their first result
- Sealing and readiness evaluation always require a command id
- Unexpected failures are logged with the correlation id and answered
  with a generic 500 body
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from evidence_kernel.audit_ledger import AuditLedger
from evidence_kernel.canonical import digest_record
from evidence_kernel.command_store import CommandStore
from evidence_kernel.config.settings import Settings, StoreBackend, get_settings
from evidence_kernel.entities import EntityResolver, StaticEntityResolver
from evidence_kernel.errors import FieldViolation, InternalError, KernelError, ValidationFailed
from evidence_kernel.evidence_store import EvidenceStateMachine, ProfileRegistry, reference_time
from evidence_kernel.observability import (
    MetricsCollector,
    SpanKind,
    Tracer,
    get_metrics,
    get_tracer,
    log_request,
    trace_operation,
)
from evidence_kernel.readiness import (
    ReadinessEngine,
    RuleRepository,
    StaticRuleRepository,
    StoreRuleRepository,
)
from evidence_kernel.storage import KernelStore, create_store

logger = logging.getLogger(__name__)

# (body, replayed)
Handler = Callable[[str], Tuple[Dict[str, Any], bool]]


@dataclass(frozen=True)
class KernelResponse:
    """Envelope returned by every kernel operation."""
    status_code: int
    body: Dict[str, Any]
    correlation_id: str
    build_version: str
    replayed: bool = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status_code": self.status_code,
            "body": self.body,
            "correlation_id": self.correlation_id,
            "build_version": self.build_version,
            "replayed": self.replayed,
        }


class EvidenceKernel:
    """
    Evidence Kernel entry point.

    Usage:
        kernel = EvidenceKernel(settings=get_test_settings(), entity_resolver=resolver)
        draft = kernel.ingest_draft("tenant-a", {"evidence_type": "BOM", ...}, actor_id="u1")
        sealed = kernel.seal("tenant-a", draft.body["draft_id"], "c-1", actor_id="u1")
        result = kernel.evaluate_readiness(
            "tenant-a", "supplier-42", "CBAM", "TRANSITIONAL_REPORT",
            command_id="c-2", execution_mode="PRODUCTION",
        )
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[KernelStore] = None,
        entity_resolver: Optional[EntityResolver] = None,
        rules: Optional[RuleRepository] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tracer: Optional[Tracer] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or create_store(self.settings)
        self.entity_resolver = entity_resolver or StaticEntityResolver()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.tracer = tracer or get_tracer()
        self.metrics = metrics or get_metrics()
        self.logger = logging.getLogger(f"{__name__}.EvidenceKernel")

        if rules is None:
            if self.settings.kernel.store_backend == StoreBackend.POSTGRES:
                rules = StoreRuleRepository(self.store)
            else:
                rules = StaticRuleRepository()

        kernel_config = self.settings.kernel
        self.ledger = AuditLedger(self.store, clock=self._clock)
        self.evidence = EvidenceStateMachine(
            self.store,
            self.ledger,
            self.entity_resolver,
            clock=self._clock,
            max_resolution_days=kernel_config.max_resolution_days,
        )
        self.profiles = ProfileRegistry(self.store, self.ledger, self.entity_resolver, clock=self._clock)
        self.readiness = ReadinessEngine(
            self.store,
            rules,
            self.entity_resolver,
            self.ledger,
            build_version=self.settings.build_version,
            clock=self._clock,
        )
        self.commands = CommandStore(
            self.store,
            ttl_hours=kernel_config.command_ttl_hours,
            cache_size=kernel_config.command_cache_size,
            clock=self._clock,
        )

        self.logger.info(
            f"Evidence kernel ready: build={self.settings.build_version}, "
            f"backend={kernel_config.store_backend.value}, config={self.settings.config_hash}"
        )

    # =========================================================================
    # EVIDENCE
    # =========================================================================

    def ingest_draft(
        self,
        tenant_id: str,
        fields: Dict[str, Any],
        actor_id: str = "system",
        command_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> KernelResponse:
        """Create a draft. 201 with the draft body."""
        def handler(cid: str):
            return self._maybe_command(
                tenant_id, command_id, "INGEST_DRAFT",
                lambda tx: self.evidence.create_or_update_draft(
                    tenant_id, fields, actor_id=actor_id, correlation_id=cid, tx=tx
                ).to_response(),
            )

        return self._respond("ingest_draft", tenant_id, correlation_id, 201, handler, SpanKind.COMMAND)

    def update_draft(
        self,
        tenant_id: str,
        draft_id: str,
        fields: Dict[str, Any],
        actor_id: str = "system",
        command_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> KernelResponse:
        """Update a DRAFTING draft. 200, or 409 once sealed."""
        def handler(cid: str):
            return self._maybe_command(
                tenant_id, command_id, "UPDATE_DRAFT",
                lambda tx: self.evidence.create_or_update_draft(
                    tenant_id, fields, draft_id=draft_id, actor_id=actor_id, correlation_id=cid, tx=tx
                ).to_response(),
            )

        return self._respond("update_draft", tenant_id, correlation_id, 200, handler, SpanKind.COMMAND)

    def get_draft(self, tenant_id: str, draft_id: str, correlation_id: Optional[str] = None) -> KernelResponse:
        def handler(cid: str):
            return self.evidence.get_draft(tenant_id, draft_id).to_response(), False

        return self._respond("get_draft", tenant_id, correlation_id, 200, handler, SpanKind.QUERY)

    def attach_file(
        self,
        tenant_id: str,
        draft_id: str,
        data: bytes,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
        actor_id: str = "system",
        command_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> KernelResponse:
        """Bind a file to a draft. 201 with attachment id, digest and length."""
        def operation(tx, cid):
            attachment = self.evidence.attach_file(
                tenant_id, draft_id, data,
                filename=filename, content_type=content_type,
                actor_id=actor_id, correlation_id=cid, tx=tx,
            )
            return {
                "attachment_id": attachment.attachment_id,
                "draft_id": draft_id,
                "content_digest": attachment.content_digest,
                "byte_length": attachment.byte_length,
            }

        def handler(cid: str):
            data_digest = (
                hashlib.sha256(bytes(data)).hexdigest()
                if isinstance(data, (bytes, bytearray)) else None
            )
            return self._maybe_command(
                tenant_id, command_id, "ATTACH_FILE",
                lambda tx: operation(tx, cid),
                fingerprint=digest_record({"draft_id": draft_id, "content_digest": data_digest}),
            )

        return self._respond("attach_file", tenant_id, correlation_id, 201, handler, SpanKind.COMMAND)

    def seal(
        self,
        tenant_id: str,
        draft_id: str,
        command_id: str,
        actor_id: str = "system",
        correlation_id: Optional[str] = None,
    ) -> KernelResponse:
        """
        Validate and seal a draft through the command store.

        201 with the sealed record, 422 listing every violation (a missing
        command id included), 409 when the draft already left DRAFTING,
        404 for unknown drafts.
        """
        def handler(cid: str):
            if not isinstance(command_id, str) or not command_id.strip():
                raise ValidationFailed([FieldViolation("command_id", "required")])
            outcome = self.commands.execute(
                tenant_id,
                command_id,
                lambda tx: self.evidence.seal(
                    tenant_id, draft_id, actor_id=actor_id, correlation_id=cid, tx=tx
                ).to_response(),
                command_type="SEAL",
                request_fingerprint=digest_record({"draft_id": draft_id}),
            )
            return outcome.result, outcome.replayed

        return self._respond("seal", tenant_id, correlation_id, 201, handler, SpanKind.STATE_TRANSITION)

    def get_evidence(self, tenant_id: str, evidence_id: str, correlation_id: Optional[str] = None) -> KernelResponse:
        """Sealed record by id. 404 for missing and cross-tenant ids alike."""
        def handler(cid: str):
            return self.evidence.get_sealed(tenant_id, evidence_id).to_response(), False

        return self._respond("get_evidence", tenant_id, correlation_id, 200, handler, SpanKind.QUERY)

    def quarantine_followups(
        self,
        tenant_id: str,
        as_of: datetime,
        window_days: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> KernelResponse:
        def handler(cid: str):
            reference = reference_time(as_of)
            followups = self.evidence.quarantine_followups(
                tenant_id,
                reference,
                window_days=window_days if window_days is not None else self.settings.kernel.followup_window_days,
            )
            return {"as_of": reference.isoformat(), "followups": [f.to_dict() for f in followups]}, False

        return self._respond("quarantine_followups", tenant_id, correlation_id, 200, handler, SpanKind.QUERY)

    # =========================================================================
    # INGESTION PROFILES
    # =========================================================================

    def register_profile(
        self,
        tenant_id: str,
        entity_id: str,
        data_domain: str,
        ingestion_path: Any,
        authority_type: str,
        actor_id: str = "system",
        correlation_id: Optional[str] = None,
    ) -> KernelResponse:
        def handler(cid: str):
            profile = self.profiles.register(
                tenant_id, entity_id, data_domain, ingestion_path, authority_type,
                actor_id=actor_id, correlation_id=cid,
            )
            return profile.to_response(), False

        return self._respond("register_profile", tenant_id, correlation_id, 201, handler, SpanKind.COMMAND)

    def set_profile_status(
        self,
        tenant_id: str,
        profile_id: str,
        status: Any,
        actor_id: str = "system",
        correlation_id: Optional[str] = None,
    ) -> KernelResponse:
        def handler(cid: str):
            profile = self.profiles.set_status(
                tenant_id, profile_id, status, actor_id=actor_id, correlation_id=cid
            )
            return profile.to_response(), False

        return self._respond("set_profile_status", tenant_id, correlation_id, 200, handler, SpanKind.COMMAND)

    # =========================================================================
    # READINESS
    # =========================================================================

    def evaluate_readiness(
        self,
        tenant_id: str,
        subject_entity_id: str,
        framework: str,
        intended_use: str,
        command_id: str,
        execution_mode: Any,
        actor_id: str = "system",
        correlation_id: Optional[str] = None,
    ) -> KernelResponse:
        """
        Evaluate readiness for one subject.

        201 with status, counts, evaluation digest and gaps; 422 when any
        input (execution mode included) is missing; 404 for unknown subjects.
        """
        def handler(cid: str):
            mode = self.readiness.validate_request(
                tenant_id, subject_entity_id, framework, intended_use, command_id, execution_mode
            )
            outcome = self.commands.execute(
                tenant_id,
                command_id,
                lambda tx: self.readiness.evaluate(
                    tenant_id, subject_entity_id, framework, intended_use,
                    command_id=command_id, execution_mode=mode,
                    actor_id=actor_id, correlation_id=cid, tx=tx,
                ).to_response(),
                command_type="EVALUATE_READINESS",
                request_fingerprint=digest_record({
                    "subject_entity_id": subject_entity_id,
                    "framework": framework,
                    "intended_use": intended_use,
                    "execution_mode": mode.value,
                }),
            )
            return outcome.result, outcome.replayed

        return self._respond("evaluate_readiness", tenant_id, correlation_id, 201, handler, SpanKind.EVALUATION)

    def get_readiness_result(self, tenant_id: str, result_id: str, correlation_id: Optional[str] = None) -> KernelResponse:
        def handler(cid: str):
            return self.readiness.get_result(tenant_id, result_id).to_response(), False

        return self._respond("get_readiness_result", tenant_id, correlation_id, 200, handler, SpanKind.QUERY)

    # =========================================================================
    # AUDIT
    # =========================================================================

    def audit_trail(
        self,
        tenant_id: str,
        for_correlation_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> KernelResponse:
        """Tenant audit events in sequence order, optionally for one correlation id."""
        def handler(cid: str):
            events = self.ledger.events(tenant_id, for_correlation_id)
            return {"events": [e.to_dict() for e in events]}, False

        return self._respond("audit_trail", tenant_id, correlation_id, 200, handler, SpanKind.AUDIT)

    def verify_audit_chain(self, tenant_id: str, correlation_id: Optional[str] = None) -> KernelResponse:
        def handler(cid: str):
            return self.ledger.verify_chain(tenant_id).to_dict(), False

        return self._respond("verify_audit_chain", tenant_id, correlation_id, 200, handler, SpanKind.AUDIT)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def purge_expired_commands(self, now: Optional[datetime] = None) -> int:
        return self.commands.purge_expired(now)

    def close(self) -> None:
        self.store.close()

    # =========================================================================
    # INTERNAL METHODS
    # =========================================================================

    def _maybe_command(
        self,
        tenant_id: str,
        command_id: Optional[str],
        command_type: str,
        operation: Callable[[Any], Dict[str, Any]],
        fingerprint: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        if command_id is None:
            return operation(None), False
        outcome = self.commands.execute(
            tenant_id, command_id, operation, command_type=command_type, request_fingerprint=fingerprint
        )
        return outcome.result, outcome.replayed

    def _respond(
        self,
        operation: str,
        tenant_id: str,
        correlation_id: Optional[str],
        success_status: int,
        handler: Handler,
        kind: SpanKind,
    ) -> KernelResponse:
        correlation_id = correlation_id or str(uuid.uuid4())
        start = time.perf_counter()
        replayed = False

        with self.tracer.start_trace(operation, trace_id=correlation_id):
            with trace_operation(operation, kind, {"tenant_id": tenant_id}, tracer=self.tracer) as span:
                try:
                    body, replayed = handler(correlation_id)
                    status_code = success_status
                except KernelError as e:
                    status_code, body = e.http_status, e.to_body()
                    span.add_event("rejected", {"error_code": e.error_code})
                    if status_code >= 500:
                        span.set_error(e)
                        self.logger.exception(
                            f"{operation} failed with {e.error_code} [correlation_id={correlation_id}]"
                        )
                        body = self._internal_error_body(correlation_id)
                except Exception as e:
                    span.set_error(e)
                    self.logger.exception(f"{operation} failed unexpectedly [correlation_id={correlation_id}]")
                    status_code, body = 500, self._internal_error_body(correlation_id)

                span.set_attribute("status_code", status_code)
                span.set_attribute("replayed", replayed)

        latency_ms = (time.perf_counter() - start) * 1000
        log_request(
            operation, status_code, latency_ms, tenant_id, correlation_id,
            replayed=replayed, metrics=self.metrics,
        )

        return KernelResponse(
            status_code=status_code,
            body=body,
            correlation_id=correlation_id,
            build_version=self.settings.build_version,
            replayed=replayed,
        )

    @staticmethod
    def _internal_error_body(correlation_id: str) -> Dict[str, Any]:
        return {"error_code": InternalError.error_code, "correlation_id": correlation_id}
