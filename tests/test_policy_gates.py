"""
Tests for post-execution contracts, quality gates and routing.

This module verifies that:
1. Step contracts check JSON format, required fields, required files and
   the GateResult contract for gate-producing steps
2. Pipeline regex, JSON and artifact gates evaluate and fail closed
3. Freshness is informational and delivery COMPLETE is restricted
4. Manual approval records turn into gate results
5. Outcomes fold gate results and declared status; routing follows outcome
6. Output parsing finds JSON objects, paths and input requests
"""

import json

import pytest

from stepflow.runtime.policy.artifacts import ArtifactStateCheck, did_artifact_change
from stepflow.runtime.policy.gate_result import parse_gate_result_contract
from stepflow.runtime.policy.gates import (
    evaluate_artifact_freshness,
    evaluate_delivery_completion,
    evaluate_manual_approval_results,
    evaluate_pipeline_quality_gates,
    evaluate_step_contracts,
    format_blocking_gate_failures,
    normalize_regex_flags,
    summarize_blocking_failures,
)
from stepflow.runtime.policy.outcome import resolve_workflow_outcome, select_routed_links
from stepflow.runtime.policy.output_parsing import (
    extract_input_request_signal,
    parse_json_output,
    resolve_path_value,
)
from stepflow.runtime.storage import StepStoragePaths
from stepflow.runtime.types import (
    Approval,
    ApprovalStatus,
    GateKind,
    GateResultStatus,
    OutputFormat,
    QualityGate,
    QualityGateResult,
    StepRole,
    WorkflowOutcome,
)

from conftest import make_link, make_step

GATE_RESULT_PASS = json.dumps({"workflow_status": "pass", "next_action": "continue", "reasons": []})


@pytest.fixture
def paths(tmp_path):
    return StepStoragePaths(
        shared_storage_path=str(tmp_path / "shared"),
        isolated_storage_path=str(tmp_path / "isolated"),
        run_storage_path=str(tmp_path / "run"),
    )


def _result(name="Gate", passed=False, blocking=True, details=""):
    return QualityGateResult(
        gate_id=name.lower(),
        gate_name=name,
        kind="regex_must_match",
        status=GateResultStatus.PASS if passed else GateResultStatus.FAIL,
        blocking=blocking,
        message=f"{name} message",
        details=details,
    )


def _state(template, path=None, size=10, mtime=100.0):
    if path is None:
        return ArtifactStateCheck(template=template)
    return ArtifactStateCheck(template=template, paths=[path], found_path=path, size_bytes=size, mtime=mtime)


# ============================================================================
# Step Contract Tests
# ============================================================================


class TestStepContracts:
    """Tests for evaluate_step_contracts."""

    def test_json_format_contract(self, paths):
        """Test JSON output steps fail on non-JSON output."""
        step = make_step("a", output_format=OutputFormat.JSON)

        bad = evaluate_step_contracts(step, "plain text", paths, {})
        good = evaluate_step_contracts(step, '{"ok": true}', paths, {})

        assert bad.gate_results[0].failed
        assert bad.gate_results[0].message == "Step is configured for JSON output but the output is not valid JSON."
        assert bad.parsed_json is None
        assert not good.gate_results[0].failed
        assert good.parsed_json == {"ok": True}

    def test_required_fields(self, paths):
        """Test each required field yields a pass or fail contract."""
        step = make_step("a", required_output_fields=("summary", "slides[0].title"))

        evaluation = evaluate_step_contracts(step, '{"summary": "x", "slides": []}', paths, {})

        present, missing = evaluation.gate_results
        assert present.status == GateResultStatus.PASS
        assert present.message == 'Required field "summary" is present.'
        assert missing.failed
        assert missing.message == 'Required field "slides[0].title" is missing from output JSON.'

    def test_required_field_without_json(self, paths):
        """Test required fields fail when output is not JSON."""
        step = make_step("a", required_output_fields=("p",))

        evaluation = evaluate_step_contracts(step, "nope", paths, {})

        assert evaluation.gate_results[0].failed
        assert "because output is not valid JSON" in evaluation.gate_results[0].message

    def test_required_output_files(self, tmp_path, paths):
        """Test required files are checked through storage templates."""
        (tmp_path / "shared").mkdir()
        (tmp_path / "shared" / "out.json").write_text("{}")
        step = make_step("a", required_output_files=("{{shared_storage_path}}/out.json", "missing.md"))

        results = evaluate_step_contracts(step, "done", paths, {}).gate_results

        assert results[0].message == f"Required artifact exists: {tmp_path / 'shared' / 'out.json'}"
        assert all(r.blocking for r in results)
        assert results[1].failed
        assert results[1].message == "Required artifact is missing: missing.md"
        assert results[1].details.startswith("Checked paths:")

    def test_gate_result_contract_for_review_steps(self, paths):
        """Test review steps must emit strict GateResult JSON."""
        step = make_step("r", role=StepRole.REVIEW)

        strict = evaluate_step_contracts(step, GATE_RESULT_PASS, paths, {}).gate_results[0]
        legacy = evaluate_step_contracts(step, "WORKFLOW_STATUS: PASS", paths, {}).gate_results[0]
        absent = evaluate_step_contracts(step, "Looks fine.", paths, {}).gate_results[0]

        assert strict.message == "Step emitted strict GateResult JSON contract."
        assert not strict.failed
        assert legacy.failed
        assert legacy.message == (
            "Legacy text status markers are not accepted for this step; emit strict GateResult JSON."
        )
        assert absent.failed
        assert absent.message == "Step did not emit strict GateResult JSON contract."

    def test_delivery_named_step_needs_contract(self, paths):
        """Test a step named for delivery is a gate-producing step."""
        step = make_step("d", "Deliver Deck")

        results = evaluate_step_contracts(step, "shipped", paths, {}).gate_results

        assert [r.gate_id for r in results] == ["contract-gate-result-d"]

    def test_plain_executor_has_no_contracts(self, paths):
        """Test an executor without declarations produces no contracts."""
        assert evaluate_step_contracts(make_step("a"), "done", paths, {}).gate_results == []


# ============================================================================
# Freshness And Delivery Tests
# ============================================================================


class TestFreshnessAndDelivery:
    """Tests for artifact freshness and the delivery completion invariant."""

    def test_updated_and_up_to_date(self):
        """Test freshness reports updates and never fails an existing artifact."""
        step = make_step("a", required_output_files=("a.json", "b.json"))
        before = [_state("a.json"), _state("b.json", "/x/b.json")]
        after = [_state("a.json", "/x/a.json"), _state("b.json", "/x/b.json")]

        results = evaluate_artifact_freshness(step, before, after)

        assert results[0].message == "Required artifact was updated in this attempt: /x/a.json"
        assert results[1].message == "Required artifact already up-to-date: /x/b.json"
        assert not any(r.failed for r in results)

    def test_review_steps_skip_freshness(self):
        """Test freshness applies only to artifact-producing roles."""
        step = make_step("r", role=StepRole.REVIEW, required_output_files=("a.json",))

        assert evaluate_artifact_freshness(step, [], [_state("a.json", "/x/a.json")]) == []

    def test_did_artifact_change(self):
        """Test size and mtime changes count as changes."""
        base = _state("a", "/x/a", size=10, mtime=100.0)

        assert did_artifact_change(base, _state("a", "/x/a", size=11, mtime=100.0))
        assert did_artifact_change(base, _state("a", "/x/a", size=10, mtime=101.0))
        assert not did_artifact_change(base, _state("a", "/x/a", size=10, mtime=100.0))

    def _complete(self, **overrides):
        payload = {
            "workflow_status": "COMPLETE",
            "next_action": "stop",
            "stage": "final",
            "step_role": "delivery",
            "gate_target": "delivery",
            "reasons": [],
        }
        payload.update(overrides)
        return json.dumps(payload)

    def test_complete_from_final_delivery(self):
        """Test COMPLETE passes on a terminal executor with full metadata."""
        step = make_step("d", "Delivery")

        results = evaluate_delivery_completion(step, self._complete(), None, 0)

        assert len(results) == 1
        assert not results[0].failed

    def test_complete_from_non_terminal_step(self):
        """Test COMPLETE fails when the step still has outgoing links."""
        step = make_step("d", "Delivery")

        results = evaluate_delivery_completion(step, self._complete(), None, 1)

        assert results[0].failed
        assert "outgoing_links=1" in results[0].details

    def test_complete_without_metadata(self):
        """Test COMPLETE fails when stage metadata is missing."""
        step = make_step("d", "Delivery")

        results = evaluate_delivery_completion(step, self._complete(stage="draft"), None, 0)

        assert results[0].failed
        assert "reported_stage=draft" in results[0].details

    def test_non_complete_is_ignored(self):
        """Test other statuses produce no delivery result."""
        assert evaluate_delivery_completion(make_step("d"), GATE_RESULT_PASS, None, 0) == []


# ============================================================================
# Pipeline Gate Tests
# ============================================================================


def _gate(kind, **kw):
    kw.setdefault("id", "g1")
    kw.setdefault("name", "Check")
    return QualityGate(kind=kind, **kw)


class TestPipelineGates:
    """Tests for evaluate_pipeline_quality_gates."""

    def _evaluate(self, gates, output, paths, parsed_json=None, inputs=None):
        return evaluate_pipeline_quality_gates(make_step("a"), output, parsed_json, gates, paths, inputs or {})

    def test_regex_must_match(self, paths):
        """Test must-match gates pass on a match and fail otherwise."""
        gate = _gate(GateKind.REGEX_MUST_MATCH, pattern=r"slides:\s*\d+", flags="i")

        passed = self._evaluate([gate], "SLIDES: 12", paths)[0]
        failed = self._evaluate([gate], "nothing", paths)[0]

        assert passed.message == 'Gate "Check" passed.'
        assert failed.failed
        assert failed.message == 'Output did not match required regex for gate "Check".'
        assert failed.details == r"pattern=slides:\s*\d+ flags=i"

    def test_regex_must_not_match(self, paths):
        """Test must-not-match gates fail on a match."""
        gate = _gate(GateKind.REGEX_MUST_NOT_MATCH, pattern="TODO")

        result = self._evaluate([gate], "TODO: finish", paths)[0]

        assert result.failed
        assert result.message == 'Output matched blocked regex for gate "Check".'

    def test_regex_fails_closed(self, paths):
        """Test empty and invalid patterns fail."""
        empty = self._evaluate([_gate(GateKind.REGEX_MUST_NOT_MATCH, pattern="  ")], "x", paths)[0]
        invalid = self._evaluate([_gate(GateKind.REGEX_MUST_MATCH, pattern="(")], "x", paths)[0]

        assert empty.failed
        assert empty.message == 'Regex gate "Check" has empty pattern.'
        assert invalid.failed
        assert invalid.message == 'Invalid regex in gate "Check".'

    def test_regex_sees_normalized_markers(self, paths):
        """Test markdown-emphasized status markers still match."""
        gate = _gate(GateKind.REGEX_MUST_MATCH, pattern=r"WORKFLOW_STATUS:\s*PASS", flags="i")

        result = self._evaluate([gate], "**WORKFLOW_STATUS:** pass", paths)[0]

        assert not result.failed

    def test_regex_sees_json_status(self, paths):
        """Test JSON status fields are visible to regex gates as markers."""
        gate = _gate(GateKind.REGEX_MUST_MATCH, pattern=r"WORKFLOW_STATUS: PASS")

        result = self._evaluate([gate], '{"workflow_status": "pass"}', paths)[0]

        assert not result.failed

    def test_complete_satisfies_status_gate(self, paths):
        """Test a COMPLETE marker satisfies a workflow status must-match gate."""
        gate = _gate(GateKind.REGEX_MUST_MATCH, pattern=r"WORKFLOW_STATUS:\s*PASS")

        result = self._evaluate([gate], "WORKFLOW_STATUS: COMPLETE", paths)[0]

        assert not result.failed

    def test_json_field_from_output(self, paths):
        """Test JSON field gates read the step output."""
        gate = _gate(GateKind.JSON_FIELD_EXISTS, json_path="$.deck.title")

        present = self._evaluate([gate], '{"deck": {"title": "Q3"}}', paths)[0]
        missing = self._evaluate([gate], '{"deck": {}}', paths)[0]
        not_json = self._evaluate([gate], "text", paths)[0]

        assert present.message == 'JSON path "$.deck.title" exists.'
        assert missing.message == 'JSON path "$.deck.title" is missing.'
        assert not_json.details == "Output is not valid JSON."

    def test_json_field_from_artifact(self, tmp_path, paths):
        """Test JSON field gates can read an artifact file instead."""
        (tmp_path / "shared").mkdir()
        (tmp_path / "shared" / "deck.json").write_text('{"slides": [{"id": 1}]}')
        gate = _gate(
            GateKind.JSON_FIELD_EXISTS, json_path="slides[0].id", artifact_path="{{shared_storage_path}}/deck.json"
        )

        result = self._evaluate([gate], "no json here", paths)[0]

        assert not result.failed
        assert "source=artifact" in result.details

    def test_artifact_gate(self, tmp_path, paths):
        """Test artifact gates check existence; an empty path fails."""
        (tmp_path / "run").mkdir()
        (tmp_path / "run" / "deck.pdf").write_bytes(b"%PDF")

        found = self._evaluate([_gate(GateKind.ARTIFACT_EXISTS, artifact_path="deck.pdf")], "", paths)[0]
        missing = self._evaluate([_gate(GateKind.ARTIFACT_EXISTS, artifact_path="gone.pdf")], "", paths)[0]
        empty = self._evaluate([_gate(GateKind.ARTIFACT_EXISTS)], "", paths)[0]

        assert found.message == f"Artifact found: {tmp_path / 'run' / 'deck.pdf'}"
        assert missing.message == "Artifact missing: gone.pdf"
        assert empty.failed

    def test_targeting_and_message_override(self, paths):
        """Test gates for other steps are ignored and custom messages win."""
        gates = [
            _gate(GateKind.REGEX_MUST_MATCH, id="other", pattern="x", target_step_id="b"),
            _gate(GateKind.REGEX_MUST_MATCH, id="mine", pattern="y", message="Need a y", blocking=False),
            _gate(GateKind.MANUAL_APPROVAL, id="approve"),
        ]

        results = self._evaluate(gates, "no match", paths)

        assert [r.gate_id for r in results] == ["mine"]
        assert results[0].message == "Need a y"
        assert not results[0].blocking

    def test_normalize_flags(self):
        """Test unknown and duplicate flags are dropped."""
        assert normalize_regex_flags("iixzm") == "im"


# ============================================================================
# Manual Approval Result Tests
# ============================================================================


class TestManualApprovalResults:
    """Tests for evaluate_manual_approval_results."""

    def _approval(self, status, note=""):
        return Approval(
            id="g1:a:attempt:1",
            gate_id="g1",
            gate_name="Sign-off",
            step_id="a",
            step_name="Step A",
            message="",
            status=status,
            note=note,
        )

    def test_approved_and_rejected(self):
        """Test approvals pass, rejections fail, with decision details."""
        gate = _gate(GateKind.MANUAL_APPROVAL, name="Sign-off")

        approved = evaluate_manual_approval_results([gate], {"g1": self._approval(ApprovalStatus.APPROVED, "ok")})
        rejected = evaluate_manual_approval_results([gate], {"g1": self._approval(ApprovalStatus.REJECTED)})

        assert approved[0].status == GateResultStatus.PASS
        assert approved[0].details == "decision=approved note=ok"
        assert approved[0].message == 'Manual approval granted for "Sign-off".'
        assert rejected[0].failed
        assert rejected[0].details == "decision=rejected"

    def test_missing_record(self):
        """Test a gate without a record fails."""
        gate = _gate(GateKind.MANUAL_APPROVAL, message="Legal must sign")

        result = evaluate_manual_approval_results([gate], {})[0]

        assert result.failed
        assert result.message == "Legal must sign"
        assert result.details == "Manual approval record missing."


# ============================================================================
# Summary Tests
# ============================================================================


class TestSummaries:
    """Tests for blocking failure summaries."""

    def test_format_blocking(self):
        """Test only blocking failures are listed, numbered."""
        results = [
            _result("Alpha", details="pattern=x"),
            _result("Beta", blocking=False),
            _result("Gamma"),
            _result("Delta", passed=True),
        ]

        text = format_blocking_gate_failures(results)

        assert text == (
            "QUALITY_GATES_BLOCKED:\n1. Alpha: Alpha message (pattern=x)\n2. Gamma: Gamma message"
        )
        assert summarize_blocking_failures(results) == "Alpha: Alpha message | Gamma: Gamma message"

    def test_nothing_blocking(self):
        """Test no summary when nothing blocks."""
        assert format_blocking_gate_failures([_result(blocking=False)]) == ""


# ============================================================================
# Outcome And Routing Tests
# ============================================================================


class TestOutcome:
    """Tests for resolve_workflow_outcome and select_routed_links."""

    def test_blocking_failure_is_fail(self):
        """Test a blocking failure overrides a declared pass."""
        outcome = resolve_workflow_outcome("WORKFLOW_STATUS: PASS", None, [_result()])

        assert outcome == WorkflowOutcome.FAIL

    def test_needs_input_is_fail(self):
        """Test an input request yields fail."""
        assert resolve_workflow_outcome("", None, [], needs_input=True) == WorkflowOutcome.FAIL

    def test_declared_outcome(self):
        """Test a declared status wins when nothing blocks."""
        assert resolve_workflow_outcome("WORKFLOW_STATUS: NEUTRAL", None, []) == WorkflowOutcome.NEUTRAL
        assert resolve_workflow_outcome("WORKFLOW_STATUS: COMPLETE", None, []) == WorkflowOutcome.PASS
        assert resolve_workflow_outcome('{"status": "fail"}', None, []) == WorkflowOutcome.FAIL

    def test_default_outcomes(self):
        """Test undeclared outcomes are pass, or neutral on a non-blocking failure."""
        assert resolve_workflow_outcome("done", None, []) == WorkflowOutcome.PASS
        assert resolve_workflow_outcome("done", None, [_result(blocking=False)]) == WorkflowOutcome.NEUTRAL

    def test_non_blocking_failure_overrides_declared_status(self):
        """Test a failed non-blocking gate makes a declared pass or fail neutral."""
        non_blocking = [_result(blocking=False)]

        assert resolve_workflow_outcome("WORKFLOW_STATUS: PASS", None, non_blocking) == WorkflowOutcome.NEUTRAL
        assert resolve_workflow_outcome("", {"workflow_status": "PASS"}, non_blocking) == WorkflowOutcome.NEUTRAL
        assert resolve_workflow_outcome("WORKFLOW_STATUS: FAIL", None, non_blocking) == WorkflowOutcome.NEUTRAL

    def test_routing(self):
        """Test links follow the outcome; blocked fails follow only on_fail."""
        links = [
            make_link("a", "b"),
            make_link("a", "c", "on_pass"),
            make_link("a", "d", "on_fail"),
            make_link("a", "e", "on_review"),
        ]

        def targets(outcome, blocked):
            return [link.target_step_id for link in select_routed_links(links, outcome, blocked)]

        assert targets(WorkflowOutcome.PASS, False) == ["b", "c", "e"]
        assert targets(WorkflowOutcome.NEUTRAL, False) == ["b", "e"]
        assert targets(WorkflowOutcome.FAIL, False) == ["b", "d", "e"]
        assert targets(WorkflowOutcome.FAIL, True) == ["d"]


# ============================================================================
# Output Parsing Tests
# ============================================================================


class TestOutputParsing:
    """Tests for output parsing helpers."""

    def test_parse_json_variants(self):
        """Test bare, fenced and embedded JSON objects are found."""
        assert parse_json_output('{"a": 1}') == {"a": 1}
        assert parse_json_output('Result:\n```json\n{"a": 2}\n```') == {"a": 2}
        assert parse_json_output('Here it is {"a": "}"} trailing') == {"a": "}"}
        assert parse_json_output("[1, 2]") is None
        assert parse_json_output("") is None

    def test_resolve_path(self):
        """Test dotted and indexed paths resolve."""
        payload = {"a": {"b": [{"c": 5}]}}

        assert resolve_path_value(payload, "$.a.b[0].c") == (True, 5)
        assert resolve_path_value(payload, "a.b.0.c") == (True, 5)
        assert resolve_path_value(payload, "a.b[1]") == (False, None)
        assert resolve_path_value(payload, " ") == (False, None)

    def test_input_request_signal(self):
        """Test input requests are detected from markers and JSON."""
        marker = extract_input_request_signal("WORKFLOW_STATUS: NEEDS_INPUT")
        status = extract_input_request_signal('{"status": "needs input", "summary": "Need the Figma link"}')
        requests = extract_input_request_signal('{"input_requests": [{"key": "pdf"}]}')
        none = extract_input_request_signal('{"status": "pass"}')

        assert marker.needs_input
        assert status.needs_input
        assert status.summary == "Need the Figma link"
        assert requests.needs_input
        assert not none.needs_input

    def test_gate_result_sources(self):
        """Test GateResult parsing reports json, text or nothing."""
        assert parse_gate_result_contract(GATE_RESULT_PASS).source == "json"
        assert parse_gate_result_contract(GATE_RESULT_PASS).contract.workflow_status == "PASS"

        text = parse_gate_result_contract("WORKFLOW_STATUS: FAIL\nNEXT_ACTION: retry_step")
        assert text.source == "text"
        assert text.contract.next_action == "retry_step"

        invalid = parse_gate_result_contract('{"workflow_status": "pass"}')
        assert invalid.contract is None
        assert invalid.errors
