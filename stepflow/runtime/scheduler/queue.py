"""
queue.py - Dispatch queue and per-step attempt accounting for one run.

The queue is FIFO with provenance: every item records which step queued it
and why. A step is queued at most once at a time; re-queuing a step that is
already waiting only refreshes its provenance. A step can be dispatched at
most ``max_loops + 1`` times in a run.

The queue is not thread-safe on its own; the runner only touches it from
its scheduling thread.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Sequence, Set

from ..types import PipelineStep, StepId, TriggerReason

logger = logging.getLogger(__name__)


@dataclass
class QueueItem:
    """A queued dispatch.

    Attributes:
        step_id: Step to dispatch.
        queued_by_step_id: Step whose completion queued this one, if any.
        reason: Why the step was queued.
    """

    step_id: StepId
    queued_by_step_id: Optional[StepId] = None
    reason: TriggerReason = TriggerReason.ROUTE


class StepQueue:
    """FIFO of step dispatches bounded by a per-step attempt limit.

    Args:
        steps: Steps in pipeline order.
        max_loops: How many times a step may be re-entered after its first run.
        log: Run log callback for queue decisions.
    """

    def __init__(
        self,
        steps: Sequence[PipelineStep],
        max_loops: int,
        log: Callable[[str], None],
    ):
        self._steps = list(steps)
        self._step_by_id: Dict[StepId, PipelineStep] = {step.id: step for step in self._steps}
        self.max_attempts_per_step = max(1, max_loops + 1)
        self._log = log
        self._items: Deque[QueueItem] = deque()
        self._queued: Set[StepId] = set()
        self._in_flight: Set[StepId] = set()
        self._attempts: Dict[StepId, int] = {}

    # =========================================================================
    # Queueing
    # =========================================================================

    def enqueue(
        self,
        step_id: StepId,
        reason: TriggerReason,
        queued_by_step_id: Optional[StepId] = None,
        log_reason: Optional[str] = None,
    ) -> bool:
        """Queue a step. Returns True only when a new item was added."""
        step = self._step_by_id.get(step_id)
        if step is None:
            return False

        if step_id in self._queued:
            if queued_by_step_id is not None:
                for item in self._items:
                    if item.step_id == step_id:
                        item.queued_by_step_id = queued_by_step_id
                        item.reason = reason
                        break
            return False

        if self._attempts.get(step_id, 0) >= self.max_attempts_per_step:
            self._log(f"Skipped {step.label}: max loop count reached")
            return False

        self._items.append(QueueItem(step_id=step_id, queued_by_step_id=queued_by_step_id, reason=reason))
        self._queued.add(step_id)
        if log_reason:
            self._log(f"Queued {step.label} ({log_reason})")
        return True

    def dequeue(self) -> Optional[QueueItem]:
        """Take the first item whose step is not already in flight.

        The taken step moves to the in-flight set until ``finish`` is called.
        """
        for item in list(self._items):
            if item.step_id in self._in_flight:
                continue
            self._items.remove(item)
            self._queued.discard(item.step_id)
            self._in_flight.add(item.step_id)
            return item
        return None

    def finish(self, step_id: StepId) -> None:
        self._in_flight.discard(step_id)

    def requeue_front(self, item: QueueItem) -> None:
        """Put an interrupted dispatch back at the head of the queue."""
        self._in_flight.discard(item.step_id)
        if item.step_id in self._queued:
            return
        self._items.appendleft(item)
        self._queued.add(item.step_id)

    # =========================================================================
    # Attempts
    # =========================================================================

    def next_attempt(self, step_id: StepId) -> int:
        return self._attempts.get(step_id, 0) + 1

    def record_attempt(self, step_id: StepId, attempt: int) -> None:
        self._attempts[step_id] = max(self._attempts.get(step_id, 0), attempt)

    def release_attempt(self, step_id: StepId, attempt: int) -> None:
        """Give back an attempt that was interrupted before it finished."""
        if self._attempts.get(step_id, 0) == attempt:
            self._attempts[step_id] = attempt - 1

    def attempts(self, step_id: StepId) -> int:
        return self._attempts.get(step_id, 0)

    def restore_attempts(self, attempts: Dict[StepId, int]) -> None:
        """Seed attempt counters from persisted run state (resume)."""
        for step_id, count in attempts.items():
            if step_id in self._step_by_id and count > 0:
                self._attempts[step_id] = count

    # =========================================================================
    # Frontier
    # =========================================================================

    @property
    def in_flight(self) -> Set[StepId]:
        return set(self._in_flight)

    @property
    def queued_ids(self) -> List[StepId]:
        return [item.step_id for item in self._items]

    def is_idle(self) -> bool:
        """Nothing queued and nothing in flight."""
        return not self._items and not self._in_flight

    def has_dispatchable(self) -> bool:
        return any(item.step_id not in self._in_flight for item in self._items)

    def next_unvisited_step(self) -> Optional[PipelineStep]:
        """First step in order never attempted, queued or in flight."""
        for step in self._steps:
            if self._attempts.get(step.id, 0) > 0:
                continue
            if step.id in self._queued or step.id in self._in_flight:
                continue
            return step
        return None
