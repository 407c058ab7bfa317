"""Core contracts shared by the scheduler, the workers and the persistence layer."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .exceptions import ErrorCategory, ExecutionError, OrchestratorError


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    NOT_READY = "not_ready"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RETRY_PENDING = "retry_pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class WorkerType(str, Enum):
    """Closed set of execution modalities a step can use."""

    SYSTEM = "system"
    HUMAN = "human"
    AI = "ai"
    EXTERNAL = "external"


class DependencyKind(str, Enum):
    SEQUENTIAL = "sequential"
    CONDITIONAL = "conditional"
    ANY = "any"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)
TERMINAL_STEP_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}
)


class DependencyCondition(BaseModel):
    """Predicate on an upstream step's output, used by conditional dependencies."""

    field: str
    equals: Optional[Any] = None
    not_equals: Optional[Any] = None
    exists: Optional[bool] = None


class Dependency(BaseModel):
    """Precedence constraint on an earlier step of the same run.

    ``kind`` is kept as a plain string so that unknown kinds survive loading;
    the resolver applies the sequential rule to anything it does not know.
    """

    step_number: int = Field(..., ge=1)
    kind: str = DependencyKind.SEQUENTIAL.value
    condition: Optional[DependencyCondition] = None

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, v: Any) -> str:
        if isinstance(v, DependencyKind):
            return v.value
        return str(v).lower()


class StepError(BaseModel):
    """Serializable form of an :class:`OrchestratorError`."""

    category: ErrorCategory
    message: str
    recoverable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "StepError":
        if not isinstance(exc, OrchestratorError):
            exc = ExecutionError(f"{type(exc).__name__}: {exc}")
        return cls(
            category=exc.category,
            message=exc.message,
            recoverable=exc.recoverable,
            details=dict(exc.details),
        )


class StepDefinition(BaseModel):
    """Declares one step of a playbook."""

    sequence: int = Field(..., ge=1)
    name: str
    worker_type: WorkerType
    dependencies: List[Dependency] = Field(default_factory=list)
    required: bool = True
    required_permissions: List[str] = Field(default_factory=list)
    max_retries: int = Field(default=3, ge=0)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    input_data: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)


class PlaybookDefinition(BaseModel):
    """A versioned, organization-scoped multi-step process."""

    id: str
    organization_id: str
    name: str
    version: str = "1.0.0"
    description: Optional[str] = None
    steps: List[StepDefinition] = Field(default_factory=list)

    def step(self, sequence: int) -> Optional[StepDefinition]:
        return next((s for s in self.steps if s.sequence == sequence), None)


class StepContext(BaseModel):
    """Upstream context handed to a worker handler."""

    run_id: str
    organization_id: str
    correlation_id: Optional[str] = None
    requested_by: Optional[str] = None
    run_input: Dict[str, Any] = Field(default_factory=dict)
    run_context: Dict[str, Any] = Field(default_factory=dict)
    previous_outputs: Dict[int, Dict[str, Any]] = Field(default_factory=dict)
    step_names: Dict[int, str] = Field(default_factory=dict)

    def template_scope(self) -> Dict[str, Any]:
        """Scope used by :func:`playbook_orchestrator.templating.render`."""
        steps: Dict[str, Any] = {}
        for sequence, output in self.previous_outputs.items():
            steps[str(sequence)] = output
            name = self.step_names.get(sequence)
            if name:
                steps[name] = output
        return {
            "input": self.run_input,
            "steps": steps,
            "context": self.run_context,
            "run": {
                "id": self.run_id,
                "organization_id": self.organization_id,
                "correlation_id": self.correlation_id,
                "requested_by": self.requested_by,
            },
        }


class ExecutionOptions(BaseModel):
    timeout: float
    attempt: int = 1
    idempotency_key: Optional[str] = None


class WorkerResult(BaseModel):
    """Outcome every worker handler returns."""

    success: bool
    output_data: Optional[Dict[str, Any]] = None
    error: Optional[StepError] = None
    duration_ms: int = 0
    worker_info: Dict[str, Any] = Field(default_factory=dict)
    awaiting_signal: bool = False
    skipped: bool = False

    @model_validator(mode="after")
    def _check_consistency(self) -> "WorkerResult":
        if not self.success and self.error is None:
            raise ValueError("failed results must carry an error")
        return self

    @classmethod
    def failure(
        cls, exc: BaseException, duration_ms: int = 0, **worker_info: Any
    ) -> "WorkerResult":
        return cls(
            success=False,
            error=StepError.from_exception(exc),
            duration_ms=duration_ms,
            worker_info=worker_info,
        )
