"""Human tasks: create an assignment, notify the assignee, wait for a signal."""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..contracts import (
    ExecutionOptions,
    StepContext,
    StepDefinition,
    WorkerResult,
    WorkerType,
)
from ..exceptions import ConfigurationError
from ..persistence.models import StepInstance, TaskAssignment, TaskStatus
from ..persistence.repository import PlaybookRepository
from ..templating import render
from ..utils.clock import Clock, utcnow
from .base import WorkerHandler, elapsed_ms
from .system import LoggingNotifier, Notifier

logger = logging.getLogger(__name__)


class AssignmentStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    SKILL_MATCHING = "skill_matching"
    WORKLOAD_BALANCING = "workload_balancing"


class Candidate(BaseModel):
    user_id: str
    skills: List[str] = Field(default_factory=list)


def _parse_candidates(raw: Any) -> List[Candidate]:
    candidates = []
    for item in raw or []:
        if isinstance(item, str):
            candidates.append(Candidate(user_id=item))
        else:
            candidates.append(Candidate(**item))
    return candidates


class HumanWorker(WorkerHandler):
    """Fire-and-continue handler for human steps.

    Returns ``awaiting_signal=True``; the step completes only when the task is
    completed or rejected through the orchestrator daemon.
    """

    worker_type = WorkerType.HUMAN

    def __init__(
        self,
        repository: PlaybookRepository,
        notifier: Optional[Notifier] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self.notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._round_robin: Dict[tuple, int] = {}

    def validate_step(self, step: StepDefinition) -> None:
        strategy = step.config.get("assignment_strategy")
        if strategy is not None:
            try:
                AssignmentStrategy(strategy)
            except ValueError as exc:
                raise ConfigurationError(
                    f"Unknown assignment strategy {strategy!r} in step {step.sequence}"
                ) from exc

    async def execute(
        self, step: StepInstance, context: StepContext, options: ExecutionOptions
    ) -> WorkerResult:
        started = time.monotonic()

        existing = await self._open_task_for(step)
        if existing is not None:
            # Re-dispatch of a step whose task is still open.
            return self._awaiting(existing, started)

        scope = context.template_scope()
        config = render(step.config, scope)
        candidates = _parse_candidates(config.get("candidates"))
        strategy = config.get("assignment_strategy")
        assignee = config.get("assignee")
        if assignee is None and strategy and candidates:
            assignee = await self.assign(
                AssignmentStrategy(strategy),
                candidates,
                context.organization_id,
                config.get("required_skills", []),
            )

        now = self._clock()
        due_in = config.get("due_in_seconds")
        task = TaskAssignment(
            organization_id=context.organization_id,
            run_id=context.run_id,
            step_id=step.id,
            sequence=step.sequence,
            title=config.get("title") or step.name,
            description=config.get("description"),
            assignee=assignee,
            candidates=[c.user_id for c in candidates],
            strategy=strategy,
            priority=config.get("priority", "normal"),
            created_at=now,
            due_at=now + timedelta(seconds=float(due_in)) if due_in else None,
        )
        await self._repository.create_task(task)
        logger.info(
            f"Created task {task.id} for step {step.sequence} of run {context.run_id}"
            + (f", assigned to {assignee}" if assignee else "")
        )

        if assignee:
            await self.notifier.send(
                assignee,
                f"New task: {task.title}",
                task.description or "",
                channel=config.get("channel", "email"),
                metadata={"task_id": task.id, "run_id": context.run_id},
            )
        return self._awaiting(task, started)

    async def assign(
        self,
        strategy: AssignmentStrategy,
        candidates: List[Candidate],
        organization_id: str,
        required_skills: Optional[List[str]] = None,
    ) -> str:
        """Pick one candidate according to ``strategy``."""
        if strategy == AssignmentStrategy.ROUND_ROBIN:
            key = tuple(c.user_id for c in candidates)
            index = self._round_robin.get(key, 0)
            self._round_robin[key] = index + 1
            return candidates[index % len(candidates)].user_id

        workloads = {
            c.user_id: await self._open_task_count(organization_id, c.user_id)
            for c in candidates
        }
        if strategy == AssignmentStrategy.WORKLOAD_BALANCING:
            return min(candidates, key=lambda c: workloads[c.user_id]).user_id

        wanted = set(required_skills or [])
        # most overlapping skills first, then least loaded, then listed order
        best = min(
            candidates,
            key=lambda c: (-len(wanted & set(c.skills)), workloads[c.user_id]),
        )
        return best.user_id

    async def _open_task_count(self, organization_id: str, user_id: str) -> int:
        tasks = await self._repository.list_tasks(
            organization_id=organization_id, assignee=user_id, status=TaskStatus.OPEN
        )
        return len(tasks)

    async def _open_task_for(self, step: StepInstance) -> Optional[TaskAssignment]:
        tasks = await self._repository.list_tasks(
            run_id=step.run_id, status=TaskStatus.OPEN
        )
        return next((t for t in tasks if t.step_id == step.id), None)

    def _awaiting(self, task: TaskAssignment, started: float) -> WorkerResult:
        return WorkerResult(
            success=True,
            output_data={"task_id": task.id, "assignee": task.assignee},
            awaiting_signal=True,
            duration_ms=elapsed_ms(started),
            worker_info={"task_id": task.id, "strategy": task.strategy},
        )
