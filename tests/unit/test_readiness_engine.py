"""
Unit tests for the readiness engine.

Audit Note: Evaluation digests must be reproducible from stored inputs;
several tests recompute them independently.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from evidence_kernel.audit_ledger import AuditEventType
from evidence_kernel.errors import NotFound, ValidationFailed
from evidence_kernel.readiness import (
    GapReason,
    GapSeverity,
    ReadinessEngine,
    ReadinessRule,
    ReadinessStatus,
    RuleOutcome,
    StaticRuleRepository,
    compute_evaluation_digest,
)

pytestmark = [pytest.mark.unit]

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"
SUPPLIER = "supplier-42"
BUILD = "evidence-kernel/1.0.0-test"

QUARANTINE_REASON = "Operator entity for this installation is still being confirmed"


@pytest.fixture
def engine(store, ledger, resolver, clock):
    return ReadinessEngine(store, StaticRuleRepository(), resolver, ledger, BUILD, clock=clock)


@pytest.fixture
def seal(machine):
    """Create, optionally attach to, and seal a draft in one step."""
    def run(fields, tenant_id=TENANT_A, attachment=None):
        draft = machine.create_or_update_draft(tenant_id, fields)
        if attachment is not None:
            machine.attach_file(tenant_id, draft.draft_id, attachment)
        return machine.seal(tenant_id, draft.draft_id)
    return run


def _cbam(engine, tenant_id=TENANT_A, command_id="cmd-1", mode="PRODUCTION", **kwargs):
    return engine.evaluate(
        tenant_id=tenant_id,
        subject_entity_id=kwargs.pop("subject", SUPPLIER),
        framework=kwargs.pop("framework", "CBAM"),
        intended_use=kwargs.pop("intended_use", "TRANSITIONAL_REPORT"),
        command_id=command_id,
        execution_mode=mode,
        **kwargs,
    )


def _outcomes(evaluation):
    return {e.rule_code: e for e in evaluation.result.rule_evaluations}


def _seal_bom(seal, make_declaration):
    return seal(make_declaration(
        evidence_type="BOM",
        structured_payload={"product": {"cn_code": "72081000"}},
    ))


def _seal_emissions_report(seal, make_declaration):
    return seal(
        make_declaration(
            evidence_type="TEST_REPORT",
            ingestion_method="FILE_UPLOAD",
            structured_payload={"emissions": {"direct": 1.92, "reporting_period": "2024-Q4"}},
        ),
        attachment=b"%PDF-1.7 emissions report",
    )


class TestRequestValidation:
    """Tests for request checks that run before any evaluation."""

    @pytest.mark.parametrize("mode", [None, "", "staging", 3])
    def test_execution_mode_required(self, engine, mode):
        with pytest.raises(ValidationFailed) as exc:
            _cbam(engine, mode=mode)

        assert [v.field for v in exc.value.violations] == ["execution_mode"]

    def test_all_violations_reported_together(self, engine):
        with pytest.raises(ValidationFailed) as exc:
            _cbam(engine, command_id="", framework=" ", mode=None)

        assert {v.field for v in exc.value.violations} == {"framework", "command_id", "execution_mode"}

    def test_mode_is_case_insensitive(self, engine):
        evaluation = _cbam(engine, mode="hostile")
        assert evaluation.context.execution_mode.value == "HOSTILE"

    def test_unknown_subject_not_found(self, engine):
        with pytest.raises(NotFound):
            _cbam(engine, subject="nobody")

    def test_subject_from_other_tenant_not_found(self, engine):
        with pytest.raises(NotFound):
            _cbam(engine, tenant_id=TENANT_B, subject="site-7")


class TestOutcomes:
    """Tests for rule outcomes, gaps and status."""

    def test_no_rules_is_ready(self, engine):
        evaluation = _cbam(engine, framework="NO_SUCH_FRAMEWORK")

        assert evaluation.result.status == ReadinessStatus.READY
        assert evaluation.result.rule_evaluations == ()
        assert evaluation.gaps == ()
        assert len(evaluation.result.evaluation_digest) == 64

    def test_no_evidence_blocks(self, engine):
        evaluation = _cbam(engine)

        assert evaluation.result.status == ReadinessStatus.BLOCKED
        assert [g.rule_code for g in evaluation.gaps] == ["CBAM-001", "CBAM-002", "CBAM-003"]
        assert [g.severity for g in evaluation.gaps] == [
            GapSeverity.BLOCKING, GapSeverity.BLOCKING, GapSeverity.LIMITING,
        ]
        assert all(g.reason == GapReason.NO_MATCHING_EVIDENCE for g in evaluation.gaps)
        assert all(g.result_id == evaluation.result.result_id for g in evaluation.gaps)
        assert evaluation.gaps[0].legal_reference == "Regulation (EU) 2023/956, Art. 10"

    def test_intended_use_selects_rules(self, engine):
        evaluation = _cbam(engine, intended_use="DEFINITIVE_DECLARATION")
        assert "CBAM-004" in _outcomes(evaluation)

        evaluation = _cbam(engine, command_id="cmd-2")
        assert "CBAM-004" not in _outcomes(evaluation)

    def test_complete_evidence_is_ready(self, engine, seal, make_declaration):
        supplier = seal(make_declaration())
        _seal_bom(seal, make_declaration)
        _seal_emissions_report(seal, make_declaration)

        evaluation = _cbam(engine)

        assert evaluation.result.status == ReadinessStatus.READY
        assert evaluation.result.rules_passed == 3
        assert evaluation.gaps == ()
        assert _outcomes(evaluation)["CBAM-001"].matched_evidence_ids == (supplier.evidence_id,)

    def test_limiting_gap_is_provisional(self, engine, seal, make_declaration):
        seal(make_declaration())
        _seal_bom(seal, make_declaration)

        evaluation = _cbam(engine)

        assert evaluation.result.status == ReadinessStatus.PROVISIONAL
        assert [(g.rule_code, g.severity) for g in evaluation.gaps] == [("CBAM-003", GapSeverity.LIMITING)]

    def test_missing_fields_reported(self, engine, seal, make_declaration):
        seal(make_declaration(structured_payload={"supplier": {"name": "Acme Steel GmbH"}}))

        outcome = _outcomes(_cbam(engine))["CBAM-001"]

        assert outcome.outcome == RuleOutcome.GAP
        assert outcome.reason == GapReason.MISSING_FIELDS
        assert outcome.missing_fields == ("supplier.country", "installation.id")

    def test_gap_and_result_renderings(self, engine, seal, make_declaration):
        seal(make_declaration(structured_payload={"supplier": {"name": "Acme Steel GmbH"}}))

        evaluation = _cbam(engine)
        gap = evaluation.gaps[0]

        assert gap.to_citation() == "[Gap: CBAM-001 v1 | BLOCKING | Regulation (EU) 2023/956, Art. 10]"
        assert gap.to_summary().startswith(
            "CBAM-001 (BLOCKING): missing fields supplier.country, installation.id. Seal supplier master data"
        )
        assert evaluation.result.to_summary().startswith("Readiness BLOCKED: 0 passed, 3 with gaps")

    def test_authority_must_match(self, engine, seal, make_declaration):
        seal(
            make_declaration(
                evidence_type="TEST_REPORT",
                ingestion_method="FILE_UPLOAD",
                authority_type="INTERNAL",
                structured_payload={"emissions": {"direct": 1.92, "reporting_period": "2024-Q4"}},
            ),
            attachment=b"%PDF-1.7 internal estimate",
        )

        outcome = _outcomes(_cbam(engine))["CBAM-003"]
        assert outcome.reason == GapReason.NO_MATCHING_EVIDENCE

    def test_non_mandatory_gap_has_no_record(self, store, ledger, resolver, clock):
        optional = ReadinessRule(
            rule_code="OPT-001",
            version=1,
            framework="OPT",
            description="Optional transaction trail",
            required_fields=("transactions",),
            mandatory=False,
            blocking=True,
        )
        engine = ReadinessEngine(store, StaticRuleRepository([optional]), resolver, ledger, BUILD, clock=clock)

        evaluation = _cbam(engine, framework="OPT")

        assert evaluation.result.status == ReadinessStatus.READY
        assert evaluation.result.rules_failed == 1
        assert evaluation.gaps == ()


class TestEligibility:
    """Tests for which evidence may influence a result."""

    def test_drafts_ignored(self, engine, machine, make_declaration):
        machine.create_or_update_draft(TENANT_A, make_declaration())

        outcome = _outcomes(_cbam(engine))["CBAM-001"]
        assert outcome.reason == GapReason.NO_MATCHING_EVIDENCE

    def test_quarantined_evidence_ignored(self, engine, seal, clock, make_declaration):
        evidence = seal(make_declaration(
            declared_scope="UNKNOWN",
            quarantine_reason=QUARANTINE_REASON,
            resolution_due_date=(clock.now + timedelta(days=30)).isoformat(),
        ))
        assert evidence.is_quarantined
        assert evidence.scope_target_id == SUPPLIER

        outcome = _outcomes(_cbam(engine))["CBAM-001"]
        assert outcome.reason == GapReason.NO_MATCHING_EVIDENCE

    def test_unstructured_evidence_ignored(self, engine, seal, make_declaration):
        seal(make_declaration(structured_payload=None))

        evaluation = _cbam(engine)
        assert _outcomes(evaluation)["CBAM-001"].reason == GapReason.NO_MATCHING_EVIDENCE
        assert evaluation.result.evidence_digests == ()

    def test_other_tenant_evidence_ignored(self, engine, seal, make_declaration):
        seal(make_declaration(), tenant_id=TENANT_B)

        outcome = _outcomes(_cbam(engine))["CBAM-001"]
        assert outcome.reason == GapReason.NO_MATCHING_EVIDENCE

    def test_test_fixtures_excluded_in_production(self, engine, seal, make_declaration):
        seal(make_declaration(origin="TEST_FIXTURE"))

        production = _outcomes(_cbam(engine, command_id="cmd-prod"))["CBAM-001"]
        test = _outcomes(_cbam(engine, command_id="cmd-test", mode="TEST"))["CBAM-001"]
        hostile = _outcomes(_cbam(engine, command_id="cmd-hostile", mode="HOSTILE"))["CBAM-001"]

        assert production.outcome == RuleOutcome.GAP
        assert test.outcome == RuleOutcome.PASS
        assert hostile.outcome == RuleOutcome.PASS

    def test_suspended_profile_excludes_evidence(self, engine, seal, registry, make_declaration):
        profile = registry.register(TENANT_A, SUPPLIER, "supplier_master", "ERP_API", "SUPPLIER")
        seal(make_declaration(profile_id=profile.profile_id))

        before = _outcomes(_cbam(engine, command_id="cmd-1"))["CBAM-001"]
        registry.set_status(TENANT_A, profile.profile_id, "SUSPENDED")
        after = _outcomes(_cbam(engine, command_id="cmd-2"))["CBAM-001"]

        assert before.outcome == RuleOutcome.PASS
        assert after.outcome == RuleOutcome.GAP


class TestDeterminism:
    """Tests for the evaluation digest."""

    def test_same_inputs_same_digest(self, engine, seal, make_declaration):
        seal(make_declaration())

        first = _cbam(engine, command_id="cmd-1")
        second = _cbam(engine, command_id="cmd-2", mode="HOSTILE")

        assert first.context.context_id != second.context.context_id
        assert first.result.result_id != second.result.result_id
        assert first.result.evaluation_digest == second.result.evaluation_digest

    def test_digest_recomputable_from_stored_result(self, engine, seal, make_declaration):
        evidence = seal(make_declaration())

        evaluation = _cbam(engine)
        result = evaluation.result

        assert result.evidence_digests == (evidence.content_fingerprint,)
        assert result.build_version == BUILD
        assert compute_evaluation_digest(
            evaluation.context, result.rule_set_hash, list(result.rule_evaluations), list(result.evidence_digests)
        ) == result.evaluation_digest

    def test_new_evidence_changes_digest(self, engine, seal, make_declaration):
        seal(make_declaration())
        before = _cbam(engine, command_id="cmd-1")
        _seal_bom(seal, make_declaration)
        after = _cbam(engine, command_id="cmd-2")

        assert before.result.evaluation_digest != after.result.evaluation_digest

    def test_subject_is_part_of_digest(self, engine):
        supplier = _cbam(engine, command_id="cmd-1")
        site = _cbam(engine, command_id="cmd-2", subject="site-7")

        assert supplier.result.status == site.result.status
        assert supplier.result.evaluation_digest != site.result.evaluation_digest


class TestPersistence:
    """Tests for stored results and the audit trail."""

    def test_get_result(self, engine):
        evaluation = _cbam(engine)

        stored = engine.get_result(TENANT_A, evaluation.result.result_id)

        assert stored.result == evaluation.result
        assert stored.context == evaluation.context
        assert [g.rule_code for g in stored.gaps] == [g.rule_code for g in evaluation.gaps]

    def test_get_result_other_tenant_not_found(self, engine):
        evaluation = _cbam(engine)

        with pytest.raises(NotFound):
            engine.get_result(TENANT_B, evaluation.result.result_id)

    def test_audit_event_recorded(self, engine, ledger):
        evaluation = _cbam(engine, correlation_id="corr-eval")

        events = ledger.events(TENANT_A, correlation_id="corr-eval")

        assert [e.event_type for e in events] == [AuditEventType.READINESS_EVALUATED]
        assert events[0].detail["result_id"] == evaluation.result.result_id
        assert events[0].detail["status"] == "BLOCKED"
        assert events[0].detail["gap_count"] == 3

    def test_failed_audit_leaves_nothing_behind(self, engine, store):
        with patch.object(engine.ledger, "append", side_effect=RuntimeError("ledger down")):
            with pytest.raises(RuntimeError):
                _cbam(engine)

        assert store._state.results == {}
        assert store._state.contexts == {}
