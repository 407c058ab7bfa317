"""Run and step state machines.

Every status change of a step or run goes through :func:`transition_step` or
:func:`transition_run`; anything else is rejected with
:class:`InvalidTransitionError`.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Sequence

from .contracts import (
    TERMINAL_STEP_STATUSES,
    DependencyKind,
    RunStatus,
    StepStatus,
)
from .exceptions import InvalidTransitionError
from .persistence.models import Run, StepInstance
from .resolver import is_blocked
from .utils.clock import utcnow

logger = logging.getLogger(__name__)

STEP_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.NOT_READY: frozenset({StepStatus.PENDING}),
    StepStatus.PENDING: frozenset({StepStatus.IN_PROGRESS}),
    StepStatus.IN_PROGRESS: frozenset(
        {
            StepStatus.COMPLETED,
            StepStatus.RETRY_PENDING,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
        }
    ),
    StepStatus.RETRY_PENDING: frozenset({StepStatus.PENDING}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}

RUN_TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.QUEUED: frozenset(
        {RunStatus.IN_PROGRESS, RunStatus.FAILED, RunStatus.CANCELLED}
    ),
    RunStatus.IN_PROGRESS: frozenset(
        {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
    ),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


def can_transition_step(current: StepStatus, target: StepStatus) -> bool:
    return target in STEP_TRANSITIONS[current]


def transition_step(
    step: StepInstance, target: StepStatus, now: Optional[datetime] = None
) -> StepInstance:
    """Move ``step`` to ``target`` in place, maintaining timestamps."""
    if not can_transition_step(step.status, target):
        raise InvalidTransitionError(
            f"Step {step.sequence} of run {step.run_id} cannot move "
            f"from {step.status.value} to {target.value}",
            {"run_id": step.run_id, "sequence": step.sequence},
        )
    now = now or utcnow()
    previous = step.status
    step.status = target
    if target == StepStatus.IN_PROGRESS:
        step.started_at = now
        step.retry_at = None
    elif target == StepStatus.PENDING:
        step.retry_at = None
    elif target in TERMINAL_STEP_STATUSES:
        step.completed_at = now
        step.awaiting_signal = False
    logger.debug(
        f"Step {step.sequence} of run {step.run_id}: {previous.value} -> {target.value}"
    )
    return step


def transition_run(
    run: Run, target: RunStatus, now: Optional[datetime] = None
) -> Run:
    """Move ``run`` to ``target`` in place, maintaining timestamps."""
    if target not in RUN_TRANSITIONS[run.status]:
        raise InvalidTransitionError(
            f"Run {run.id} cannot move from {run.status.value} to {target.value}",
            {"run_id": run.id},
        )
    now = now or utcnow()
    previous = run.status
    run.status = target
    if target == RunStatus.IN_PROGRESS:
        run.started_at = now
    elif run.is_terminal:
        run.completed_at = now
    logger.info(f"Run {run.id}: {previous.value} -> {target.value}")
    return run


def _sequential_chains_completed(steps: Sequence[StepInstance]) -> bool:
    by_sequence = {s.sequence: s for s in steps}
    for step in steps:
        if step.status != StepStatus.COMPLETED:
            continue
        for dep in step.dependencies:
            if dep.kind == DependencyKind.SEQUENTIAL.value:
                upstream = by_sequence.get(dep.step_number)
                if upstream is None or upstream.status != StepStatus.COMPLETED:
                    return False
    return True


def evaluate_run(
    run: Run, steps: Sequence[StepInstance], in_flight: int = 0
) -> Optional[RunStatus]:
    """Decide whether ``run`` should move to a terminal status.

    Returns ``None`` while the run should keep going.

    * ``failed`` as soon as a required step failed.
    * ``completed`` once every step is terminal and no sequential
      dependency chain ends in a non-completed step.
    * ``failed`` when nothing is in flight and every remaining step is
      permanently blocked by a failed or skipped predecessor.
    """
    if run.is_terminal:
        return None
    if any(s.status == StepStatus.FAILED and s.required for s in steps):
        return RunStatus.FAILED
    if all(s.is_terminal for s in steps):
        return (
            RunStatus.COMPLETED
            if _sequential_chains_completed(steps)
            else RunStatus.FAILED
        )
    if in_flight:
        return None
    remaining = [s for s in steps if not s.is_terminal]
    if remaining and all(
        s.status == StepStatus.NOT_READY and is_blocked(s, steps) for s in remaining
    ):
        return RunStatus.FAILED
    return None
