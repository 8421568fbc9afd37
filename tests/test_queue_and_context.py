"""
Tests for the dispatch queue and context composition.

This module verifies that:
1. The queue deduplicates items and refreshes their provenance
2. Per-step attempts are bounded by max_loops + 1
3. A step already in flight is never dequeued twice
4. Context text carries task, outputs, inputs and storage paths
5. Oversize context is trimmed to the step's window
6. Delegation notes describe the orchestrator fan-out
"""

from stepflow.runtime.scheduler.context import (
    TimelineEntry,
    build_delegation_notes,
    clamp_context_to_window,
    compose_context,
)
from stepflow.runtime.scheduler.queue import StepQueue
from stepflow.runtime.storage import DISABLED, StepStoragePaths
from stepflow.runtime.types import StepRole, TriggerReason

from conftest import make_link, make_step

# ============================================================================
# Queue Tests
# ============================================================================


def _queue(max_loops=2, steps=None):
    log = []
    steps = steps or [make_step("a"), make_step("b"), make_step("c")]
    return StepQueue(steps, max_loops, log.append), log


class TestStepQueue:
    """Tests for StepQueue."""

    def test_enqueue_logs_and_dedupes(self):
        """Test a step is queued once and the log names the reason."""
        queue, log = _queue()

        assert queue.enqueue("a", TriggerReason.ENTRY_STEP, log_reason="entry step")
        assert not queue.enqueue("a", TriggerReason.ROUTE)

        assert queue.queued_ids == ["a"]
        assert log == ["Queued Step A (entry step)"]

    def test_requeue_refreshes_provenance(self):
        """Test re-queuing an already queued step updates who queued it."""
        queue, _ = _queue()
        queue.enqueue("c", TriggerReason.ROUTE, queued_by_step_id="a")
        queue.enqueue("c", TriggerReason.DELEGATE, queued_by_step_id="b")

        item = queue.dequeue()

        assert item.queued_by_step_id == "b"
        assert item.reason == TriggerReason.DELEGATE

    def test_unknown_step_ignored(self):
        """Test unknown step ids are not queued."""
        queue, _ = _queue()

        assert not queue.enqueue("ghost", TriggerReason.ROUTE)
        assert queue.is_idle()

    def test_max_loop_limit(self):
        """Test a step cannot run more than max_loops + 1 times."""
        queue, log = _queue(max_loops=1)
        for attempt in (1, 2):
            queue.enqueue("a", TriggerReason.ROUTE)
            queue.dequeue()
            queue.record_attempt("a", attempt)
            queue.finish("a")

        assert not queue.enqueue("a", TriggerReason.ROUTE)
        assert log[-1] == "Skipped Step A: max loop count reached"
        assert queue.max_attempts_per_step == 2

    def test_in_flight_not_dequeued(self):
        """Test a queued step whose earlier dispatch is in flight waits."""
        queue, _ = _queue()
        queue.enqueue("a", TriggerReason.ROUTE)
        queue.enqueue("b", TriggerReason.ROUTE)
        first = queue.dequeue()
        queue.enqueue("a", TriggerReason.ROUTE)

        second = queue.dequeue()

        assert first.step_id == "a"
        assert second.step_id == "b"
        assert queue.dequeue() is None
        assert not queue.has_dispatchable()
        queue.finish("a")
        assert queue.has_dispatchable()

    def test_requeue_front_and_release(self):
        """Test an interrupted dispatch returns to the head with its attempt released."""
        queue, _ = _queue()
        queue.enqueue("a", TriggerReason.ROUTE)
        queue.enqueue("b", TriggerReason.ROUTE)
        item = queue.dequeue()
        queue.record_attempt("a", 1)

        queue.release_attempt("a", 1)
        queue.requeue_front(item)

        assert queue.queued_ids == ["a", "b"]
        assert queue.attempts("a") == 0
        assert queue.next_attempt("a") == 1

    def test_next_unvisited_step(self):
        """Test the fallback picks the first never-attempted step."""
        queue, _ = _queue()
        queue.record_attempt("a", 1)
        queue.enqueue("b", TriggerReason.ROUTE)

        assert queue.next_unvisited_step().id == "c"

    def test_restore_attempts(self):
        """Test persisted attempt counts seed the queue."""
        queue, _ = _queue()
        queue.restore_attempts({"a": 2, "ghost": 1, "b": 0})

        assert queue.attempts("a") == 2
        assert queue.attempts("b") == 0
        assert queue.next_unvisited_step().id == "b"


# ============================================================================
# Context Tests
# ============================================================================


PATHS = StepStoragePaths(
    shared_storage_path="/s/shared",
    isolated_storage_path=DISABLED,
    run_storage_path="/s/runs/r1/b",
)


class TestComposeContext:
    """Tests for compose_context."""

    def test_default_layout(self):
        """Test the default context lists task, attempt, outputs and storage."""
        a = make_step("a", "Planner")
        b = make_step("b", "Builder")
        timeline = [TimelineEntry(step_id="a", step_name="Planner", output="plan text")]

        context = compose_context(
            b,
            "Build {{input.topic}}",
            timeline,
            {"a": "plan text"},
            [make_link("a", "b")],
            {"a": a, "b": b},
            2,
            PATHS,
            {"topic": "slides", "api_key": "secret"},
        )

        assert context.startswith("Task:\nBuild slides")
        assert "Attempt:\n2" in context
        assert "Previous output:\nplan text" in context
        assert "Incoming outputs:\nPlanner:\nplan text" in context
        assert "All completed outputs:\nStep 1 (Planner):\nplan text" in context
        assert "- shared_storage_path: /s/shared" in context
        assert "- isolated_storage_path: DISABLED" in context
        assert "- api_key: [REDACTED]" in context
        assert "secret" not in context
        assert "isolated_storage: disabled" in context

    def test_first_step_placeholders(self):
        """Test a first step sees no previous or incoming output."""
        a = make_step("a")

        context = compose_context(a, "Task", [], {}, [], {"a": a}, 1, PATHS, {})

        assert "Previous output:\nNo previous output" in context
        assert "Incoming outputs:\nNone" in context
        assert "Run inputs:\nNone" in context

    def test_template_tokens(self):
        """Test a context template renders its tokens and appends storage info."""
        step = make_step(
            "b",
            context_template="Do {{task}} (try {{attempt}}) after {{upstream_outputs}} in {{shared_storage_path}}",
        )
        a = make_step("a", "Planner")

        context = compose_context(
            step, "the deck", [], {"a": "outline"}, [make_link("a", "b")], {"a": a, "b": step}, 3, PATHS, {}
        )

        assert context.startswith("Do the deck (try 3) after Planner:\noutline in /s/shared")
        assert "Storage paths:" in context

    def test_clamp_to_window(self):
        """Test oversize context keeps head and tail around a marker."""
        context = "H" * 40_000 + "M" * 40_000 + "T" * 40_000

        clamped = clamp_context_to_window(context, 1_000)

        assert "[Context trimmed for configured window: 16,000 tokens]" in clamped
        assert clamped.startswith("H" * 100)
        assert clamped.endswith("T" * 100)
        assert len(clamped) < 64_000 + 200

    def test_clamp_leaves_small_context(self):
        """Test context within the window is unchanged."""
        assert clamp_context_to_window("short", 272_000) == "short"


# ============================================================================
# Delegation Note Tests
# ============================================================================


class TestDelegationNotes:
    """Tests for build_delegation_notes."""

    def test_notes_per_delegate(self):
        """Test one note per delegated target, capped by delegation_count."""
        orchestrator = make_step("o", role=StepRole.ORCHESTRATOR, enable_delegation=True, delegation_count=2)
        steps = {s.id: s for s in (orchestrator, make_step("x", "Writer"), make_step("y", "Designer"), make_step("z"))}
        links = [make_link("o", "x"), make_link("o", "y"), make_link("o", "z")]

        notes = build_delegation_notes(orchestrator, links, 3, steps)

        assert notes == ["Subagent-1 dispatched to Writer.", "Subagent-2 dispatched to Designer."]

    def test_no_downstream(self):
        """Test a delegating step without outgoing links is noted."""
        orchestrator = make_step("o", enable_delegation=True)

        notes = build_delegation_notes(orchestrator, [], 0, {"o": orchestrator})

        assert notes == ["Delegation enabled, but this agent has no connected downstream steps."]

    def test_disabled(self):
        """Test no notes without delegation."""
        step = make_step("o")

        assert build_delegation_notes(step, [make_link("o", "x")], 1, {}) == []
