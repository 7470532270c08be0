"""
Unit tests for the kernel facade.

Exercise the end-to-end flows through `EvidenceKernel`: response codes and
bodies, idempotent replay, tenant isolation and error mapping.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import patch

import pytest

pytestmark = [pytest.mark.unit]

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"
SUPPLIER = "supplier-42"
BUILD = "evidence-kernel/1.0.0-test"

QUARANTINE_REASON = "Legal entity behind this installation is still being confirmed"


def _ingest(kernel, fields, tenant_id=TENANT_A, **kwargs):
    response = kernel.ingest_draft(tenant_id, fields, actor_id="u1", **kwargs)
    assert response.status_code == 201, response.body
    return response.body["draft_id"]


def _evaluate(kernel, command_id="eval-1", tenant_id=TENANT_A, **kwargs):
    return kernel.evaluate_readiness(
        tenant_id,
        kwargs.pop("subject", SUPPLIER),
        kwargs.pop("framework", "CBAM"),
        kwargs.pop("intended_use", "TRANSITIONAL_REPORT"),
        command_id=command_id,
        execution_mode=kwargs.pop("execution_mode", "PRODUCTION"),
        **kwargs,
    )


class TestEnvelope:
    """Tests for the response envelope."""

    def test_ingest_returns_draft(self, kernel, make_declaration):
        response = kernel.ingest_draft(TENANT_A, make_declaration(), actor_id="u1", correlation_id="corr-1")

        assert response.status_code == 201
        assert response.ok
        assert response.body["status"] == "DRAFTING"
        assert response.correlation_id == "corr-1"
        assert response.build_version == BUILD
        assert response.replayed is False

    def test_correlation_id_generated_when_absent(self, kernel, make_declaration):
        response = kernel.ingest_draft(TENANT_A, make_declaration())
        assert response.correlation_id

    def test_to_dict(self, kernel, make_declaration):
        data = kernel.ingest_draft(TENANT_A, make_declaration(), correlation_id="corr-1").to_dict()

        assert set(data) == {"status_code", "body", "correlation_id", "build_version", "replayed"}

    def test_malformed_fields_are_422(self, kernel):
        response = kernel.ingest_draft(TENANT_A, {"evidence_type": "SPREADSHEET"})

        assert response.status_code == 422
        assert response.body["error_code"] == "VALIDATION_FAILED"
        assert response.body["errors"][0]["field"] == "evidence_type"

    def test_unexpected_failure_is_500(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration())
        evidence_id = kernel.seal(TENANT_A, draft_id, "seal-1").body["evidence_id"]

        with patch.object(kernel.evidence, "get_sealed", side_effect=RuntimeError("connection reset")):
            response = kernel.get_evidence(TENANT_A, evidence_id, correlation_id="corr-500")

        assert response.status_code == 500
        assert response.body == {"error_code": "INTERNAL_ERROR", "correlation_id": "corr-500"}

    def test_metrics_and_traces_recorded(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration())
        kernel.seal(TENANT_A, draft_id, "seal-1", correlation_id="corr-seal")
        kernel.seal(TENANT_A, draft_id, "seal-2", correlation_id="corr-reseal")

        metrics = kernel.metrics.get_metrics()
        assert metrics['kernel_request{operation="seal",status="201"}']["count"] == 1
        assert metrics['kernel_request{operation="seal",status="409"}']["count"] == 1

        traces = {t.trace_id: t for t in kernel.tracer.get_recent_traces()}
        span = traces["corr-seal"].spans[0]
        assert span.name == "seal"
        assert span.attributes["status_code"] == 201
        rejected = traces["corr-reseal"].spans[0]
        assert rejected.events[0]["attributes"] == {"error_code": "ALREADY_SEALED"}


class TestSealFlow:
    """Tests for drafting and sealing through the facade."""

    def test_seal_response_body(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration())

        response = kernel.seal(TENANT_A, draft_id, "seal-1", actor_id="u1")

        assert response.status_code == 201
        assert set(response.body) == {
            "evidence_id", "draft_id", "ledger_state", "payload_digest", "metadata_digest",
            "sealed_at", "retention_end", "trust_level", "review_status",
        }
        assert response.body["ledger_state"] == "SEALED"
        assert response.body["retention_end"].startswith("2032-03-01")

    def test_unknown_scope_without_quarantine_fields(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration(declared_scope="UNKNOWN", scope_target_id=None))

        response = kernel.seal(TENANT_A, draft_id, "seal-1")

        assert response.status_code == 422
        fields = {e["field"] for e in response.body["errors"]}
        assert {"quarantine_reason", "resolution_due_date"} <= fields

    def test_personal_data_without_basis(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration(contains_personal_data=True))

        response = kernel.seal(TENANT_A, draft_id, "seal-1")

        assert response.status_code == 422
        assert [e["field"] for e in response.body["errors"]] == ["gdpr_legal_basis"]

    def test_oversized_custom_retention_is_422(self, kernel, make_declaration):
        response = kernel.ingest_draft(
            TENANT_A, make_declaration(retention_policy="CUSTOM", retention_custom_days=10**12)
        )

        assert response.status_code == 422
        assert response.body["errors"] == [
            {"field": "retention_custom_days", "error": "must be at most 36600 days"}
        ]

    def test_longest_custom_retention_seals(self, kernel, clock, make_declaration):
        draft_id = _ingest(kernel, make_declaration(retention_policy="CUSTOM", retention_custom_days=36600))

        response = kernel.seal(TENANT_A, draft_id, "seal-1")

        assert response.status_code == 201
        assert response.body["retention_end"] == (clock.now + timedelta(days=36600)).isoformat()

    def test_quarantine_path(self, kernel, clock, make_declaration):
        draft_id = _ingest(kernel, make_declaration(
            declared_scope="UNKNOWN",
            scope_target_id=None,
            quarantine_reason=QUARANTINE_REASON,
            resolution_due_date=(clock.now + timedelta(days=5)).isoformat(),
        ))

        sealed = kernel.seal(TENANT_A, draft_id, "seal-1")
        followups = kernel.quarantine_followups(TENANT_A, as_of=clock.now)

        assert sealed.body["ledger_state"] == "QUARANTINED"
        assert followups.status_code == 200
        assert [f["evidence_id"] for f in followups.body["followups"]] == [sealed.body["evidence_id"]]
        assert followups.body["followups"][0]["days_remaining"] == 5

    def test_naive_followup_time_read_as_utc(self, kernel, clock, make_declaration):
        draft_id = _ingest(kernel, make_declaration(
            declared_scope="UNKNOWN",
            scope_target_id=None,
            quarantine_reason=QUARANTINE_REASON,
            resolution_due_date=(clock.now + timedelta(days=5)).isoformat(),
        ))
        kernel.seal(TENANT_A, draft_id, "seal-1")

        aware = kernel.quarantine_followups(TENANT_A, as_of=clock.now)
        naive = kernel.quarantine_followups(TENANT_A, as_of=clock.now.replace(tzinfo=None))

        assert naive.status_code == 200
        assert naive.body == aware.body
        assert naive.body["as_of"] == clock.now.isoformat()

    @pytest.mark.parametrize("as_of", ["next tuesday", 1700000000, None])
    def test_invalid_followup_time_is_422(self, kernel, as_of):
        response = kernel.quarantine_followups(TENANT_A, as_of=as_of)

        assert response.status_code == 422
        assert response.body["errors"] == [{"field": "as_of", "error": "must be an ISO-8601 timestamp"}]

    def test_deeply_nested_payload_is_422(self, kernel, make_declaration):
        payload = {"value": 1}
        for _ in range(5000):
            payload = {"child": payload}

        response = kernel.ingest_draft(TENANT_A, make_declaration(structured_payload=payload))

        assert response.status_code == 422
        assert [e["field"] for e in response.body["errors"]] == ["structured_payload"]

    def test_double_seal_conflicts(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration())
        first = kernel.seal(TENANT_A, draft_id, "seal-1")

        second = kernel.seal(TENANT_A, draft_id, "seal-2")

        assert second.status_code == 409
        assert second.body["error_code"] == "ALREADY_SEALED"
        stored = kernel.get_evidence(TENANT_A, first.body["evidence_id"])
        assert stored.body == first.body

    def test_concurrent_seals_serialize(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration())
        workers = 8
        barrier = threading.Barrier(workers)

        def attempt(i):
            barrier.wait()
            return kernel.seal(TENANT_A, draft_id, f"seal-{i}").status_code

        with ThreadPoolExecutor(max_workers=workers) as executor:
            codes = sorted(executor.map(attempt, range(workers)))

        assert codes == [201] + [409] * (workers - 1)
        sealed_events = [
            e for e in kernel.audit_trail(TENANT_A).body["events"] if e["event_type"] == "EVIDENCE_SEALED"
        ]
        assert len(sealed_events) == 1

    def test_update_after_seal_conflicts(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration())
        kernel.seal(TENANT_A, draft_id, "seal-1")

        response = kernel.update_draft(TENANT_A, draft_id, {"purpose_tags": ["EUDR"]})

        assert response.status_code == 409
        assert response.body["error_code"] == "EVIDENCE_SEALED_IMMUTABLE"

    def test_update_then_get_draft(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration())

        updated = kernel.update_draft(TENANT_A, draft_id, {"purpose_tags": ["EUDR", "CBAM", "EUDR"]})
        fetched = kernel.get_draft(TENANT_A, draft_id)

        assert updated.status_code == 200
        assert fetched.body["purpose_tags"] == ["CBAM", "EUDR"]

    def test_attach_file(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration(ingestion_method="FILE_UPLOAD"))

        response = kernel.attach_file(TENANT_A, draft_id, b"supplier,country\n", filename="s.csv", command_id="att-1")
        replay = kernel.attach_file(TENANT_A, draft_id, b"supplier,country\n", filename="s.csv", command_id="att-1")

        assert response.status_code == 201
        assert response.body["byte_length"] == len(b"supplier,country\n")
        assert replay.replayed
        assert replay.body == response.body
        assert len(kernel.get_draft(TENANT_A, draft_id).body["attachment_ids"]) == 1

    def test_attach_different_file_with_same_command_conflicts(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration(ingestion_method="FILE_UPLOAD"))
        kernel.attach_file(TENANT_A, draft_id, b"first", command_id="att-1")

        response = kernel.attach_file(TENANT_A, draft_id, b"second", command_id="att-1")

        assert response.status_code == 409
        assert response.body["error_code"] == "IDEMPOTENCY_CONFLICT"


class TestIdempotency:
    """Tests for command replay through the facade."""

    def test_seal_replay_returns_first_result(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration())

        first = kernel.seal(TENANT_A, draft_id, command_id="seal-1", correlation_id="corr-1")
        second = kernel.seal(TENANT_A, draft_id, command_id="seal-1", correlation_id="corr-2")

        assert second.status_code == 201
        assert second.replayed
        assert second.body == first.body
        sealed_events = [
            e for e in kernel.audit_trail(TENANT_A).body["events"] if e["event_type"] == "EVIDENCE_SEALED"
        ]
        assert len(sealed_events) == 1

    def test_seal_records_command(self, kernel, store, make_declaration):
        draft_id = _ingest(kernel, make_declaration())

        kernel.seal(TENANT_A, draft_id, "seal-1")

        record = store._state.commands[(TENANT_A, "seal-1")]
        assert record.command_type == "SEAL"

    @pytest.mark.parametrize("command_id", [None, "", "   "])
    def test_seal_requires_command_id(self, kernel, store, make_declaration, command_id):
        draft_id = _ingest(kernel, make_declaration())

        response = kernel.seal(TENANT_A, draft_id, command_id)

        assert response.status_code == 422
        assert response.body["errors"] == [{"field": "command_id", "error": "required"}]
        assert kernel.get_draft(TENANT_A, draft_id).body["status"] == "DRAFTING"
        assert store._state.commands == {}

    def test_ingest_replay_creates_one_draft(self, kernel, store, make_declaration):
        first = kernel.ingest_draft(TENANT_A, make_declaration(), command_id="ingest-1")
        second = kernel.ingest_draft(TENANT_A, make_declaration(), command_id="ingest-1")

        assert second.replayed
        assert second.body["draft_id"] == first.body["draft_id"]
        assert len(store._state.drafts) == 1

    def test_command_id_reused_for_other_draft(self, kernel, make_declaration):
        first = _ingest(kernel, make_declaration())
        other = _ingest(kernel, make_declaration())
        kernel.seal(TENANT_A, first, command_id="seal-1")

        response = kernel.seal(TENANT_A, other, command_id="seal-1")

        assert response.status_code == 409
        assert response.body["error_code"] == "IDEMPOTENCY_CONFLICT"

    def test_failed_seal_can_be_retried(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration(justification="short"))

        rejected = kernel.seal(TENANT_A, draft_id, command_id="seal-1")
        kernel.update_draft(TENANT_A, draft_id, {"justification": "Annual supplier master data refresh"})
        accepted = kernel.seal(TENANT_A, draft_id, command_id="seal-1")

        assert rejected.status_code == 422
        assert accepted.status_code == 201
        assert not accepted.replayed

    def test_purge_expired_commands(self, kernel, clock, make_declaration):
        kernel.ingest_draft(TENANT_A, make_declaration(), command_id="ingest-1")
        clock.advance(hours=25)

        assert kernel.purge_expired_commands() == 1


class TestTenantIsolation:
    """Tests for cross-tenant behaviour."""

    def test_identical_declarations_in_two_tenants(self, kernel, make_declaration):
        a = kernel.seal(TENANT_A, _ingest(kernel, make_declaration(), tenant_id=TENANT_A), "seal-a")
        b = kernel.seal(TENANT_B, _ingest(kernel, make_declaration(), tenant_id=TENANT_B), "seal-b")

        assert a.body["evidence_id"] != b.body["evidence_id"]
        assert kernel.get_evidence(TENANT_A, a.body["evidence_id"]).status_code == 200

        cross = kernel.get_evidence(TENANT_B, a.body["evidence_id"])
        missing = kernel.get_evidence(TENANT_B, "never-issued")
        assert cross.status_code == 404
        assert cross.body == missing.body

    def test_same_command_id_in_two_tenants(self, kernel, make_declaration):
        a = kernel.ingest_draft(TENANT_A, make_declaration(), command_id="cmd-1")
        b = kernel.ingest_draft(TENANT_B, make_declaration(), command_id="cmd-1")

        assert not b.replayed
        assert a.body["draft_id"] != b.body["draft_id"]

    def test_audit_trails_are_separate(self, kernel, make_declaration):
        _ingest(kernel, make_declaration(), tenant_id=TENANT_A)

        assert kernel.audit_trail(TENANT_B).body["events"] == []
        assert len(kernel.audit_trail(TENANT_A).body["events"]) == 1


class TestReadiness:
    """Tests for readiness evaluation through the facade."""

    def test_execution_mode_required(self, kernel):
        response = _evaluate(kernel, execution_mode=None)

        assert response.status_code == 422
        assert [e["field"] for e in response.body["errors"]] == ["execution_mode"]

    def test_command_id_required(self, kernel):
        response = _evaluate(kernel, command_id=None)

        assert response.status_code == 422
        assert [e["field"] for e in response.body["errors"]] == ["command_id"]

    def test_zero_rules_ready(self, kernel):
        response = _evaluate(kernel, framework="NO_RULES")

        assert response.status_code == 201
        assert response.body["status"] == "READY"
        assert response.body["gaps"] == []
        assert response.body["evaluation_digest"]

    def test_blocked_without_evidence(self, kernel):
        response = _evaluate(kernel)

        assert response.body["status"] == "BLOCKED"
        assert response.body["rules_passed"] == 0
        assert response.body["rules_failed"] == 3
        gap = response.body["gaps"][0]
        assert {"rule_code", "severity", "remediation", "legal_reference"} <= set(gap)

    def test_unknown_subject_404(self, kernel):
        response = _evaluate(kernel, subject="nobody")
        assert response.status_code == 404

    def test_evaluation_replay(self, kernel, store):
        first = _evaluate(kernel)
        second = _evaluate(kernel)

        assert second.replayed
        assert second.body == first.body
        assert len(store._state.results) == 1

    def test_evaluation_command_reused_with_other_inputs(self, kernel):
        _evaluate(kernel)

        response = _evaluate(kernel, framework="EUDR")

        assert response.status_code == 409
        assert response.body["error_code"] == "IDEMPOTENCY_CONFLICT"

    def test_sealed_evidence_changes_result(self, kernel, make_declaration):
        before = _evaluate(kernel, command_id="eval-1")
        kernel.seal(TENANT_A, _ingest(kernel, make_declaration()), "seal-1")
        after = _evaluate(kernel, command_id="eval-2")

        outcomes = {o["rule_code"]: o["outcome"] for o in after.body["rule_outcomes"]}
        assert outcomes["CBAM-001"] == "PASS"
        assert before.body["evaluation_digest"] != after.body["evaluation_digest"]

    def test_get_readiness_result(self, kernel):
        evaluation = _evaluate(kernel)
        result_id = evaluation.body["result_id"]

        fetched = kernel.get_readiness_result(TENANT_A, result_id)
        cross = kernel.get_readiness_result(TENANT_B, result_id)

        assert fetched.status_code == 200
        assert fetched.body == evaluation.body
        assert cross.status_code == 404


class TestProfilesAndAudit:
    """Tests for profile management and audit endpoints."""

    def test_register_and_suspend_profile(self, kernel):
        registered = kernel.register_profile(TENANT_A, SUPPLIER, "supplier_master", "erp_api", "supplier")

        assert registered.status_code == 201
        assert registered.body["data_domain"] == "SUPPLIER_MASTER"
        assert registered.body["status"] == "ACTIVE"

        suspended = kernel.set_profile_status(TENANT_A, registered.body["profile_id"], "SUSPENDED")
        assert suspended.body["status"] == "SUSPENDED"

    def test_profile_validation(self, kernel):
        response = kernel.register_profile(TENANT_A, "nobody", "supplier_master", "CARRIER_PIGEON", "")

        assert response.status_code == 422
        assert {e["field"] for e in response.body["errors"]} == {"authority_type", "ingestion_path"}

    def test_unknown_profile_404(self, kernel):
        assert kernel.set_profile_status(TENANT_A, "missing", "RETIRED").status_code == 404

    def test_audit_trail_by_correlation(self, kernel, make_declaration):
        draft_id = _ingest(kernel, make_declaration(), correlation_id="corr-ingest")
        kernel.seal(TENANT_A, draft_id, "seal-1", correlation_id="corr-seal")

        trail = kernel.audit_trail(TENANT_A, for_correlation_id="corr-seal")

        assert [e["event_type"] for e in trail.body["events"]] == ["EVIDENCE_SEALED"]

    def test_verify_audit_chain(self, kernel, make_declaration):
        kernel.seal(TENANT_A, _ingest(kernel, make_declaration()), "seal-1")
        _evaluate(kernel)

        response = kernel.verify_audit_chain(TENANT_A)

        assert response.status_code == 200
        assert response.body["valid"] is True
        assert response.body["event_count"] == 3
