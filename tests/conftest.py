from datetime import datetime, timedelta, timezone

import pytest

from playbook_orchestrator.contracts import (
    Dependency,
    ExecutionOptions,
    PlaybookDefinition,
    StepContext,
    StepDefinition,
    StepStatus,
    WorkerType,
)
from playbook_orchestrator.persistence import InMemoryPlaybookRepository, StepInstance


class FakeClock:
    """Manually advanced clock returning timezone-aware UTC datetimes."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repo() -> InMemoryPlaybookRepository:
    return InMemoryPlaybookRepository()


def system_step(sequence: int, *deps: int, kind: str = "sequential", **config) -> StepDefinition:
    config.setdefault("operation", "transform")
    config.setdefault("mapping", {"step": sequence})
    return StepDefinition(
        sequence=sequence,
        name=f"step{sequence}",
        worker_type=WorkerType.SYSTEM,
        dependencies=[Dependency(step_number=d, kind=kind) for d in deps],
        config=config,
    )


def make_definition(*steps: StepDefinition, organization_id: str = "org-1") -> PlaybookDefinition:
    return PlaybookDefinition(
        id="pb-test",
        organization_id=organization_id,
        name="Test playbook",
        steps=list(steps),
    )


def step_instance(
    sequence: int = 1,
    worker_type: WorkerType = WorkerType.SYSTEM,
    config: dict | None = None,
    input_data: dict | None = None,
    run_id: str = "run-1",
) -> StepInstance:
    return StepInstance(
        run_id=run_id,
        organization_id="org-1",
        sequence=sequence,
        name=f"step{sequence}",
        worker_type=worker_type,
        status=StepStatus.IN_PROGRESS,
        config=config or {},
        input_data=input_data or {},
    )


def step_context(
    run_input: dict | None = None,
    previous: dict | None = None,
    names: dict | None = None,
    run_id: str = "run-1",
) -> StepContext:
    return StepContext(
        run_id=run_id,
        organization_id="org-1",
        correlation_id="WF-test",
        requested_by="alice",
        run_input=run_input or {},
        previous_outputs=previous or {},
        step_names=names or {},
    )


def options(timeout: float = 30.0, idempotency_key: str | None = None) -> ExecutionOptions:
    return ExecutionOptions(timeout=timeout, idempotency_key=idempotency_key)
