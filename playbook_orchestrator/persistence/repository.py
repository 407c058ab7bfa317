"""Repository abstraction for orchestration state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..contracts import PlaybookDefinition, RunStatus
from .models import (
    AuditEntry,
    IdempotencyRecord,
    Run,
    StepInstance,
    TaskAssignment,
    TaskStatus,
)


class PlaybookRepository(Protocol):
    """Protocol for orchestration persistence backends.

    Every record carries an ``organization_id``; list operations accept an
    organization filter so that one coordinator can be scoped to a tenant set.
    """

    # runs
    async def create_run(self, run: Run) -> None:
        """Persist a new run."""

    async def get_run(self, run_id: str) -> Run | None:
        """Retrieve a run by id."""

    async def save_run(self, run: Run) -> None:
        """Persist the current state of an existing run."""

    async def list_runs(
        self,
        statuses: Optional[Iterable[RunStatus]] = None,
        organization_ids: Optional[Iterable[str]] = None,
    ) -> list[Run]:
        """Return runs matching the filters, oldest first."""

    # step instances
    async def create_steps(self, steps: list[StepInstance]) -> None:
        """Persist the materialized steps of a run."""

    async def get_steps(self, run_id: str) -> list[StepInstance]:
        """Return the steps of a run ordered by sequence number."""

    async def get_step(self, step_id: str) -> StepInstance | None:
        """Retrieve a single step."""

    async def save_step(self, step: StepInstance) -> None:
        """Persist the current state of an existing step."""

    async def claim_step(
        self, step_id: str, owner: str, until: datetime, now: datetime
    ) -> bool:
        """Compare-and-set lease on a step.

        Succeeds when the step is unclaimed, already claimed by ``owner`` or
        its previous lease has expired.
        """

    async def release_step(self, step_id: str, owner: str) -> None:
        """Drop ``owner``'s lease on a step."""

    # definitions
    async def save_definition(self, definition: PlaybookDefinition) -> None:
        """Insert or replace a playbook definition."""

    async def get_definition(self, playbook_id: str) -> PlaybookDefinition | None:
        """Retrieve a playbook definition."""

    async def list_definitions(
        self, organization_id: Optional[str] = None
    ) -> list[PlaybookDefinition]:
        """Return stored playbook definitions."""

    # idempotency records
    async def create_idempotency_record(self, record: IdempotencyRecord) -> None:
        """Persist a new idempotency record."""

    async def find_idempotency_record(
        self, key: str, operation: str, organization_id: str
    ) -> IdempotencyRecord | None:
        """Return the most recent record for ``(key, operation)``."""

    async def get_idempotency_record(self, record_id: str) -> IdempotencyRecord | None:
        """Retrieve an idempotency record by id."""

    async def save_idempotency_record(self, record: IdempotencyRecord) -> None:
        """Persist the current state of an idempotency record."""

    # audit
    async def add_audit_entry(self, entry: AuditEntry) -> None:
        """Append an audit entry."""

    async def list_audit_entries(
        self, run_id: Optional[str] = None, event: Optional[str] = None
    ) -> list[AuditEntry]:
        """Return audit entries in insertion order."""

    # human tasks
    async def create_task(self, task: TaskAssignment) -> None:
        """Persist a new human task."""

    async def get_task(self, task_id: str) -> TaskAssignment | None:
        """Retrieve a human task."""

    async def save_task(self, task: TaskAssignment) -> None:
        """Persist the current state of a human task."""

    async def list_tasks(
        self,
        organization_id: Optional[str] = None,
        assignee: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        run_id: Optional[str] = None,
    ) -> list[TaskAssignment]:
        """Return human tasks matching the filters."""
