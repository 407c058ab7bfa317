"""Dependency resolution for step instances.

All functions here are pure: they look only at the step and the sibling list
they are given and never mutate either.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Protocol, Sequence

from .contracts import (
    Dependency,
    DependencyCondition,
    DependencyKind,
    StepStatus,
)
from .exceptions import ValidationError
from .templating import MISSING, lookup

# "cancelled" is not a step status, but runs and tasks use it and an upstream
# reporting it counts as terminal for the ``any`` rule.
_ANY_SATISFYING = frozenset(
    {StepStatus.COMPLETED.value, StepStatus.FAILED.value, StepStatus.SKIPPED.value, "cancelled"}
)


class _StepLike(Protocol):
    sequence: int
    status: Any
    dependencies: Sequence[Dependency]


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, StepStatus) else str(status)


def _index(siblings: Iterable[_StepLike]) -> Dict[int, _StepLike]:
    return {s.sequence: s for s in siblings}


def dependency_satisfied(dependency: Dependency, upstream: Optional[_StepLike]) -> bool:
    """Apply the rule for one dependency kind to its upstream step."""
    if upstream is None:
        return False
    status = _status_value(upstream.status)
    if dependency.kind == DependencyKind.ANY.value:
        return status in _ANY_SATISFYING
    # sequential, conditional and unknown kinds
    return status == StepStatus.COMPLETED.value


def is_ready(step: _StepLike, siblings: Iterable[_StepLike]) -> bool:
    """Return ``True`` when every prerequisite of ``step`` is satisfied."""
    if not step.dependencies:
        return True
    by_sequence = _index(siblings)
    return all(
        dependency_satisfied(dep, by_sequence.get(dep.step_number))
        for dep in step.dependencies
    )


def is_blocked(step: _StepLike, siblings: Iterable[_StepLike]) -> bool:
    """Return ``True`` when ``step`` can never become ready.

    A step is permanently blocked when a dependency that needs a completed
    upstream points at an upstream that already ended failed or skipped, or
    points at a sequence number that does not exist.
    """
    by_sequence = _index(siblings)
    for dep in step.dependencies:
        upstream = by_sequence.get(dep.step_number)
        if upstream is None:
            return True
        if dep.kind == DependencyKind.ANY.value:
            continue
        status = _status_value(upstream.status)
        if status in _ANY_SATISFYING and status != StepStatus.COMPLETED.value:
            return True
    return False


def condition_met(condition: DependencyCondition, output: Optional[Dict[str, Any]]) -> bool:
    """Evaluate a conditional dependency's predicate against upstream output."""
    value = lookup(output or {}, condition.field)
    if condition.exists is not None and (value is not MISSING) != condition.exists:
        return False
    if value is MISSING:
        value = None
    if condition.equals is not None and value != condition.equals:
        return False
    if condition.not_equals is not None and value == condition.not_equals:
        return False
    return True


def unmet_conditions(step: _StepLike, siblings: Iterable[_StepLike]) -> list[Dependency]:
    """Conditional dependencies of ``step`` whose predicate does not hold."""
    by_sequence = _index(siblings)
    unmet: list[Dependency] = []
    for dep in step.dependencies:
        if dep.kind != DependencyKind.CONDITIONAL.value or dep.condition is None:
            continue
        upstream = by_sequence.get(dep.step_number)
        output = getattr(upstream, "output_data", None) if upstream else None
        if not condition_met(dep.condition, output):
            unmet.append(dep)
    return unmet


def validate_dependencies(steps: Iterable[_StepLike]) -> None:
    """Validate a step graph, raising :class:`ValidationError` when malformed.

    Sequence numbers must be unique, 1-based and contiguous, and each
    dependency must reference an existing step with a lower sequence number.
    Since every edge points backwards the graph is acyclic by construction.
    """
    steps = list(steps)
    sequences = [s.sequence for s in steps]
    if len(set(sequences)) != len(sequences):
        duplicates = sorted({n for n in sequences if sequences.count(n) > 1})
        raise ValidationError(
            f"Duplicate step sequence numbers: {duplicates}",
            {"duplicates": duplicates},
        )
    if sorted(sequences) != list(range(1, len(sequences) + 1)):
        raise ValidationError(
            "Step sequence numbers must be contiguous and start at 1",
            {"sequences": sorted(sequences)},
        )
    known = set(sequences)
    for step in steps:
        for dep in step.dependencies:
            if dep.step_number >= step.sequence:
                raise ValidationError(
                    f"Step {step.sequence} depends on step {dep.step_number}; "
                    "dependencies must reference earlier steps",
                    {"step": step.sequence, "dependency": dep.step_number},
                )
            if dep.step_number not in known:
                raise ValidationError(
                    f"Step {step.sequence} depends on unknown step {dep.step_number}",
                    {"step": step.sequence, "dependency": dep.step_number},
                )


def initial_status(step: _StepLike) -> StepStatus:
    """Steps without dependencies start pending, all others not_ready."""
    return StepStatus.PENDING if not step.dependencies else StepStatus.NOT_READY


__all__ = [
    "condition_met",
    "dependency_satisfied",
    "initial_status",
    "is_blocked",
    "is_ready",
    "unmet_conditions",
    "validate_dependencies",
]
