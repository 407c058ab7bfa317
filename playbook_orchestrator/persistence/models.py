"""Data models for persisted orchestration state."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from ..contracts import (
    TERMINAL_RUN_STATUSES,
    TERMINAL_STEP_STATUSES,
    Dependency,
    RunStatus,
    StepError,
    StepStatus,
    WorkerType,
)
from ..utils.clock import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class Run(BaseModel):
    """One execution of a playbook."""

    id: str = Field(default_factory=_new_id)
    playbook_id: str
    playbook_version: Optional[str] = None
    organization_id: str
    status: RunStatus = RunStatus.QUEUED
    total_steps: int = 0
    current_step: int = 0
    input_payload: Dict[str, Any] = Field(default_factory=dict)
    output_payload: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    requested_by: Optional[str] = None
    correlation_id: Optional[str] = None
    cancel_requested: bool = False
    error: Optional[StepError] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class StepInstance(BaseModel):
    """One unit of work within a run, bound to a sequence number."""

    id: str = Field(default_factory=_new_id)
    run_id: str
    organization_id: str
    sequence: int = Field(..., ge=1)
    name: str
    step_definition_id: Optional[str] = None
    worker_type: WorkerType
    status: StepStatus = StepStatus.NOT_READY
    required: bool = True
    required_permissions: List[str] = Field(default_factory=list)
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[Dependency] = Field(default_factory=list)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    retry_at: Optional[datetime] = None
    timeout_seconds: Optional[float] = None
    last_error: Optional[StepError] = None
    worker_info: Dict[str, Any] = Field(default_factory=dict)
    awaiting_signal: bool = False
    claimed_by: Optional[str] = None
    claimed_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "StepInstance":
        if self.retry_count > self.max_retries:
            raise ValueError("retry_count may not exceed max_retries")
        for dep in self.dependencies:
            if dep.step_number >= self.sequence:
                raise ValueError(
                    f"step {self.sequence} depends on step {dep.step_number}; "
                    "dependencies must reference earlier steps"
                )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES


class IdempotencyStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class IdempotencyRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    key: str
    operation: str
    organization_id: str
    status: IdempotencyStatus = IdempotencyStatus.IN_PROGRESS
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class AuditEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    event: str
    organization_id: Optional[str] = None
    run_id: Optional[str] = None
    step_id: Optional[str] = None
    worker_type: Optional[str] = None
    user_id: Optional[str] = None
    outcome: Optional[str] = None
    error_category: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class TaskStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class TaskAssignment(BaseModel):
    """Human work item created by the human worker."""

    id: str = Field(default_factory=_new_id)
    organization_id: str
    run_id: str
    step_id: str
    sequence: int
    title: str
    description: Optional[str] = None
    assignee: Optional[str] = None
    candidates: List[str] = Field(default_factory=list)
    strategy: Optional[str] = None
    priority: str = "normal"
    status: TaskStatus = TaskStatus.OPEN
    result: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    due_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
