"""
Tests for pipeline snapshot loading and normalization.

This module verifies that:
1. camelCase and snake_case payloads normalize to the same snapshot
2. Dangling and self-loop links are dropped; duplicates are rejected
3. Quality gates are validated against known kinds and step ids
4. Runtime limits are clamped to their sanity bounds
5. YAML files load through load_pipeline
"""

import pytest
import yaml

from stepflow.config.pipeline_loader import load_pipeline, pipeline_from_dict
from stepflow.runtime.errors import PipelineValidationError
from stepflow.runtime.types import (
    ANY_STEP,
    GateKind,
    OutputFormat,
    ProviderId,
    ReasoningEffort,
    StepRole,
)


def _minimal(**overrides):
    data = {
        "id": "deck",
        "name": "Deck Builder",
        "steps": [{"id": "plan", "name": "Planner"}, {"id": "build", "name": "Builder"}],
    }
    data.update(overrides)
    return data


# ============================================================================
# Step Normalization Tests
# ============================================================================


class TestStepNormalization:
    """Tests for step field normalization."""

    def test_camel_case_keys(self):
        """Test camelCase step keys map to the snake_case fields."""
        pipeline = pipeline_from_dict(
            {
                "id": "deck",
                "steps": [
                    {
                        "id": "build",
                        "name": "Builder",
                        "role": "Executor",
                        "providerId": "openai",
                        "reasoningEffort": "high",
                        "use1MContext": True,
                        "outputFormat": "json",
                        "requiredOutputFiles": ["{{shared_storage_path}}/out.json"],
                        "skipIfArtifacts": "{{shared_storage_path}}/out.json",
                        "enabledMcpServerIds": ["figma", "figma", " "],
                        "policyProfileIds": ["Design_Deck_Assets"],
                    }
                ],
            }
        )

        step = pipeline.steps[0]
        assert step.role == StepRole.EXECUTOR
        assert step.provider_id == ProviderId.OPENAI
        assert step.reasoning_effort == ReasoningEffort.HIGH
        assert step.use_1m_context is True
        assert step.output_format == OutputFormat.JSON
        assert step.required_output_files == ("{{shared_storage_path}}/out.json",)
        assert step.skip_if_artifacts == ("{{shared_storage_path}}/out.json",)
        assert step.enabled_mcp_server_ids == ("figma",)
        assert step.policy_profile_ids == ("design_deck_assets",)

    def test_defaults(self):
        """Test omitted step fields take their defaults."""
        step = pipeline_from_dict(_minimal()).steps[0]

        assert step.role == StepRole.EXECUTOR
        assert step.provider_id == ProviderId.CLAUDE
        assert step.reasoning_effort == ReasoningEffort.MEDIUM
        assert step.context_window_tokens == 272_000
        assert step.enable_isolated_storage is None
        assert step.enable_shared_storage is None

    def test_name_defaults_to_id(self):
        """Test a step without a name uses its id."""
        pipeline = pipeline_from_dict({"id": "p", "steps": [{"id": "solo"}]})

        assert pipeline.steps[0].name == "solo"
        assert pipeline.name == "p"

    def test_invalid_role_rejected(self):
        """Test an unknown role raises PipelineValidationError."""
        data = _minimal(steps=[{"id": "x", "role": "wizard"}])

        with pytest.raises(PipelineValidationError, match="invalid role"):
            pipeline_from_dict(data)

    def test_duplicate_step_id_rejected(self):
        """Test duplicate step ids are rejected."""
        data = _minimal(steps=[{"id": "x"}, {"id": "x"}])

        with pytest.raises(PipelineValidationError, match="Duplicate step id 'x'"):
            pipeline_from_dict(data)

    def test_step_without_id_rejected(self):
        """Test a step with no id is rejected."""
        with pytest.raises(PipelineValidationError, match="index 0 has no id"):
            pipeline_from_dict(_minimal(steps=[{"name": "Nameless"}]))

    def test_no_steps_rejected(self):
        """Test a pipeline without steps is rejected."""
        with pytest.raises(PipelineValidationError, match="no steps"):
            pipeline_from_dict(_minimal(steps=[]))

    def test_no_id_rejected(self):
        """Test a pipeline without an id is rejected."""
        data = _minimal()
        del data["id"]

        with pytest.raises(PipelineValidationError, match="no id"):
            pipeline_from_dict(data)

    def test_non_mapping_rejected(self):
        """Test a non-dict payload is rejected."""
        with pytest.raises(PipelineValidationError):
            pipeline_from_dict(["not", "a", "pipeline"])


# ============================================================================
# Link Normalization Tests
# ============================================================================


class TestLinkNormalization:
    """Tests for link normalization."""

    def test_missing_condition_means_always(self):
        """Test a link without a condition routes always."""
        pipeline = pipeline_from_dict(_minimal(links=[{"sourceStepId": "plan", "targetStepId": "build"}]))

        link = pipeline.links[0]
        assert link.source_step_id == "plan"
        assert link.target_step_id == "build"
        assert link.condition == "always"
        assert link.id == "link-1"

    def test_source_target_aliases(self):
        """Test short source/target keys are accepted."""
        pipeline = pipeline_from_dict(
            _minimal(links=[{"source": "plan", "target": "build", "condition": "on_pass", "id": "l1"}])
        )

        assert pipeline.links[0].condition == "on_pass"
        assert pipeline.links[0].id == "l1"

    def test_dangling_and_self_links_dropped(self):
        """Test links to unknown steps and self-loops are dropped."""
        pipeline = pipeline_from_dict(
            _minimal(
                links=[
                    {"source": "plan", "target": "ghost"},
                    {"source": "build", "target": "build"},
                    {"source": "plan", "target": "build"},
                ]
            )
        )

        assert [(l.source_step_id, l.target_step_id) for l in pipeline.links] == [("plan", "build")]

    def test_duplicate_link_rejected(self):
        """Test the same source/target/condition twice is rejected."""
        data = _minimal(
            links=[
                {"source": "plan", "target": "build"},
                {"source": "plan", "target": "build", "condition": "always"},
            ]
        )

        with pytest.raises(PipelineValidationError, match="Duplicate link"):
            pipeline_from_dict(data)

    def test_same_pair_different_condition_allowed(self):
        """Test two links between the same steps with different conditions."""
        pipeline = pipeline_from_dict(
            _minimal(
                links=[
                    {"source": "plan", "target": "build", "condition": "on_pass"},
                    {"source": "plan", "target": "build", "condition": "on_fail"},
                ]
            )
        )

        assert len(pipeline.links) == 2


# ============================================================================
# Gate and Runtime Tests
# ============================================================================


class TestGatesAndRuntime:
    """Tests for quality gate validation and runtime clamps."""

    def test_gate_normalized(self):
        """Test a gate payload normalizes, targeting any step by default."""
        pipeline = pipeline_from_dict(
            _minimal(qualityGates=[{"id": "g1", "name": "Has title", "kind": "regex_must_match", "pattern": "^#"}])
        )

        gate = pipeline.quality_gates[0]
        assert gate.kind == GateKind.REGEX_MUST_MATCH
        assert gate.target_step_id == ANY_STEP
        assert gate.blocking is True

    def test_unknown_gate_kind_rejected(self):
        """Test an unknown gate kind is rejected."""
        with pytest.raises(PipelineValidationError, match="unknown kind"):
            pipeline_from_dict(_minimal(quality_gates=[{"id": "g", "kind": "vibes"}]))

    def test_gate_unknown_target_rejected(self):
        """Test a gate targeting a missing step is rejected."""
        data = _minimal(quality_gates=[{"id": "g", "kind": "artifact_exists", "targetStepId": "ghost"}])

        with pytest.raises(PipelineValidationError, match="unknown step 'ghost'"):
            pipeline_from_dict(data)

    def test_runtime_clamped(self):
        """Test runtime limits are clamped into range."""
        pipeline = pipeline_from_dict(
            _minimal(runtime={"maxLoops": 50, "maxStepExecutions": 1, "stageTimeoutMs": 5})
        )

        assert pipeline.runtime.max_loops == 12
        assert pipeline.runtime.max_step_executions == 4
        assert pipeline.runtime.stage_timeout_ms == 10_000

    def test_runtime_defaults(self):
        """Test omitted runtime limits take their defaults."""
        runtime = pipeline_from_dict(_minimal()).runtime

        assert runtime.max_loops == 2
        assert runtime.max_step_executions == 18
        assert runtime.stage_timeout_ms == 240_000


# ============================================================================
# File Loading Tests
# ============================================================================


class TestLoadPipeline:
    """Tests for load_pipeline."""

    def test_load_yaml(self, tmp_path):
        """Test a YAML file loads into a pipeline."""
        path = tmp_path / "deck.yaml"
        path.write_text(yaml.safe_dump(_minimal(links=[{"source": "plan", "target": "build"}])))

        pipeline = load_pipeline(path)

        assert pipeline.id == "deck"
        assert [step.id for step in pipeline.steps] == ["plan", "build"]
        assert len(pipeline.links) == 1

    def test_missing_file(self, tmp_path):
        """Test a missing file raises PipelineValidationError."""
        with pytest.raises(PipelineValidationError, match="not found"):
            load_pipeline(tmp_path / "nope.yaml")

    def test_empty_file(self, tmp_path):
        """Test an empty file is reported as a pipeline without steps."""
        path = tmp_path / "empty.yaml"
        path.write_text("")

        with pytest.raises(PipelineValidationError, match="no steps"):
            load_pipeline(path)
