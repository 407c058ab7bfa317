"""In-memory implementation of the playbook repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..contracts import PlaybookDefinition, RunStatus
from .models import (
    AuditEntry,
    IdempotencyRecord,
    Run,
    StepInstance,
    TaskAssignment,
    TaskStatus,
)
from .repository import PlaybookRepository


class InMemoryPlaybookRepository(PlaybookRepository):
    """Store orchestration state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, Run] = {}
        self._steps: Dict[str, StepInstance] = {}
        self._definitions: Dict[str, PlaybookDefinition] = {}
        self._idempotency: Dict[str, IdempotencyRecord] = {}
        self._audit: List[AuditEntry] = []
        self._tasks: Dict[str, TaskAssignment] = {}

    # ------------------------------------------------------------------
    async def create_run(self, run: Run) -> None:
        self._runs[run.id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def save_run(self, run: Run) -> None:
        self._runs[run.id] = run.model_copy(deep=True)

    async def list_runs(
        self,
        statuses: Optional[Iterable[RunStatus]] = None,
        organization_ids: Optional[Iterable[str]] = None,
    ) -> list[Run]:
        wanted_statuses = set(statuses) if statuses else None
        wanted_orgs = set(organization_ids) if organization_ids else None
        runs = [
            r
            for r in self._runs.values()
            if (wanted_statuses is None or r.status in wanted_statuses)
            and (wanted_orgs is None or r.organization_id in wanted_orgs)
        ]
        runs.sort(key=lambda r: r.created_at)
        return [r.model_copy(deep=True) for r in runs]

    # ------------------------------------------------------------------
    async def create_steps(self, steps: list[StepInstance]) -> None:
        for step in steps:
            self._steps[step.id] = step.model_copy(deep=True)

    async def get_steps(self, run_id: str) -> list[StepInstance]:
        steps = [s for s in self._steps.values() if s.run_id == run_id]
        steps.sort(key=lambda s: s.sequence)
        return [s.model_copy(deep=True) for s in steps]

    async def get_step(self, step_id: str) -> StepInstance | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def save_step(self, step: StepInstance) -> None:
        current = self._steps.get(step.id)
        stored = step.model_copy(deep=True)
        if current is not None:
            # leases are owned by claim_step/release_step
            stored.claimed_by = current.claimed_by
            stored.claimed_until = current.claimed_until
        self._steps[step.id] = stored

    async def claim_step(
        self, step_id: str, owner: str, until: datetime, now: datetime
    ) -> bool:
        step = self._steps.get(step_id)
        if step is None:
            return False
        if (
            step.claimed_by not in (None, owner)
            and step.claimed_until is not None
            and step.claimed_until > now
        ):
            return False
        step.claimed_by = owner
        step.claimed_until = until
        return True

    async def release_step(self, step_id: str, owner: str) -> None:
        step = self._steps.get(step_id)
        if step is not None and step.claimed_by == owner:
            step.claimed_by = None
            step.claimed_until = None

    # ------------------------------------------------------------------
    async def save_definition(self, definition: PlaybookDefinition) -> None:
        self._definitions[definition.id] = definition.model_copy(deep=True)

    async def get_definition(self, playbook_id: str) -> PlaybookDefinition | None:
        definition = self._definitions.get(playbook_id)
        return definition.model_copy(deep=True) if definition else None

    async def list_definitions(
        self, organization_id: Optional[str] = None
    ) -> list[PlaybookDefinition]:
        return [
            d.model_copy(deep=True)
            for d in self._definitions.values()
            if organization_id is None or d.organization_id == organization_id
        ]

    # ------------------------------------------------------------------
    async def create_idempotency_record(self, record: IdempotencyRecord) -> None:
        self._idempotency[record.id] = record.model_copy(deep=True)

    async def find_idempotency_record(
        self, key: str, operation: str, organization_id: str
    ) -> IdempotencyRecord | None:
        latest = None
        # insertion order breaks created_at ties
        for r in self._idempotency.values():
            if (
                r.key == key
                and r.operation == operation
                and r.organization_id == organization_id
                and (latest is None or r.created_at >= latest.created_at)
            ):
                latest = r
        return latest.model_copy(deep=True) if latest else None

    async def get_idempotency_record(self, record_id: str) -> IdempotencyRecord | None:
        record = self._idempotency.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def save_idempotency_record(self, record: IdempotencyRecord) -> None:
        self._idempotency[record.id] = record.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def add_audit_entry(self, entry: AuditEntry) -> None:
        self._audit.append(entry.model_copy(deep=True))

    async def list_audit_entries(
        self, run_id: Optional[str] = None, event: Optional[str] = None
    ) -> list[AuditEntry]:
        return [
            e.model_copy(deep=True)
            for e in self._audit
            if (run_id is None or e.run_id == run_id)
            and (event is None or e.event == event)
        ]

    # ------------------------------------------------------------------
    async def create_task(self, task: TaskAssignment) -> None:
        self._tasks[task.id] = task.model_copy(deep=True)

    async def get_task(self, task_id: str) -> TaskAssignment | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def save_task(self, task: TaskAssignment) -> None:
        self._tasks[task.id] = task.model_copy(deep=True)

    async def list_tasks(
        self,
        organization_id: Optional[str] = None,
        assignee: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        run_id: Optional[str] = None,
    ) -> list[TaskAssignment]:
        tasks = [
            t
            for t in self._tasks.values()
            if (organization_id is None or t.organization_id == organization_id)
            and (assignee is None or t.assignee == assignee)
            and (status is None or t.status == status)
            and (run_id is None or t.run_id == run_id)
        ]
        tasks.sort(key=lambda t: t.created_at)
        return [t.model_copy(deep=True) for t in tasks]
