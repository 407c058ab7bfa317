"""Orchestrator daemon: the polling loop that drives runs to completion."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .config import OrchestratorConfig
from .contracts import RunStatus, StepError, StepStatus
from .dispatch import StepDispatcher, step_idempotency
from .exceptions import (
    ErrorCategory,
    ExecutionError,
    InvalidTransitionError,
    StepTimeoutError,
    ValidationError,
)
from .idempotency import IdempotencyGuard
from .persistence.models import Run, StepInstance, TaskAssignment, TaskStatus
from .persistence.repository import PlaybookRepository
from .resolver import is_blocked, is_ready
from .retry_manager import RetryManager
from .security.audit import RUN_CANCELLED, TASK_SIGNAL, AuditLog
from .security.gate import SecurityGate
from .security.policy import PermissionProvider, StaticPermissionProvider
from .security.rate_limit import StepRateLimiter
from .state import evaluate_run, transition_run, transition_step
from .utils.clock import Clock, utcnow
from .workers.registry import WorkerRegistry

logger = logging.getLogger(__name__)


class OrchestratorStatus(BaseModel):
    """Health snapshot returned by :meth:`OrchestratorDaemon.get_status`."""

    running: bool
    instance_id: str
    active_runs: int
    in_flight_claims: int
    cycles: int = 0
    last_cycle_at: Optional[datetime] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class OrchestratorDaemon:
    """Single coordinator polling persisted runs and dispatching their steps.

    Every cycle re-derives what to do from persisted step status, so a crash
    between cycles leaves nothing to repair beyond expired leases, which the
    next cycle recovers.
    """

    def __init__(
        self,
        repository: PlaybookRepository,
        registry: WorkerRegistry,
        config: Optional[OrchestratorConfig] = None,
        permissions: Optional[PermissionProvider] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self.instance_id = self.config.instance_id or f"orchestrator-{uuid.uuid4().hex[:8]}"
        self._repository = repository
        self._registry = registry
        self._clock = clock

        self.audit = AuditLog(repository, clock)
        self.gate = SecurityGate(
            permissions or StaticPermissionProvider(self.config.permissions),
            self.audit,
            StepRateLimiter(self.config.rate_limits, clock),
        )
        self.idempotency = IdempotencyGuard(
            repository,
            expiration_seconds=self.config.idempotency.expiration_seconds,
            stuck_threshold_seconds=self.config.idempotency.stuck_threshold_seconds,
            clock=clock,
        )
        self.retry_manager = RetryManager(
            self.config.retry.delays, self.config.retry.recoverable_categories, clock
        )
        self.dispatcher = StepDispatcher(
            repository,
            registry,
            self.gate,
            self.idempotency,
            self.retry_manager,
            self.audit,
            max_concurrent_steps_per_run=self.config.max_concurrent_steps_per_run,
            handler_timeout=self.config.handler_timeout,
            system_handler_timeout=self.config.system_handler_timeout,
            lease_seconds=self.config.lease_seconds,
            instance_id=self.instance_id,
            clock=clock,
            on_settled=self._on_step_settled,
        )

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self._active_runs: Dict[str, Run] = {}
        self._cycles = 0
        self._last_cycle_at: Optional[datetime] = None

    @property
    def repository(self) -> PlaybookRepository:
        return self._repository

    @property
    def running(self) -> bool:
        return self._running

    # lifecycle

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"Orchestrator {self.instance_id} started "
            f"(poll every {self.config.polling_interval}s)"
        )

    async def stop(self) -> None:
        """Stop polling, then wait up to ``drain_timeout`` for in-flight steps."""
        if not self._running:
            return
        self._running = False
        if self._wake is not None:
            self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
        drained = await self.dispatcher.wait_idle(self.config.drain_timeout)
        if not drained:
            logger.warning(
                f"Drain timeout after {self.config.drain_timeout}s with "
                f"{self.dispatcher.claim_count} step(s) still in flight"
            )
        logger.info(f"Orchestrator {self.instance_id} stopped")

    def notify_new_run(self, run_id: str) -> None:
        """Advisory hint that ``run_id`` exists; wakes the loop early."""
        logger.debug(f"New run hint: {run_id}")
        if self._wake is not None:
            self._wake.set()

    def get_status(self) -> OrchestratorStatus:
        return OrchestratorStatus(
            running=self._running,
            instance_id=self.instance_id,
            active_runs=len(self._active_runs),
            in_flight_claims=self.dispatcher.claim_count,
            cycles=self._cycles,
            last_cycle_at=self._last_cycle_at,
            config=self.config.snapshot(),
        )

    def _on_step_settled(self, run_id: str) -> None:
        if self._wake is not None:
            self._wake.set()

    async def _loop(self) -> None:
        while self._running:
            self._wake.clear()
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Orchestrator cycle failed")
            if not self._running:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), self.config.polling_interval)
            except asyncio.TimeoutError:
                pass

    # scheduling

    async def run_cycle(self) -> None:
        """One pass over the active runs."""
        runs = await self._refresh_active_runs()
        for run in runs:
            try:
                await self._process_run(run.id)
            except Exception:
                logger.exception(f"Failed to process run {run.id}")
        self._cycles += 1
        self._last_cycle_at = self._clock()

    async def _refresh_active_runs(self) -> List[Run]:
        organizations = self.config.organizations or None
        in_progress = await self._repository.list_runs([RunStatus.IN_PROGRESS], organizations)
        queued = await self._repository.list_runs([RunStatus.QUEUED], organizations)
        selected = (in_progress + queued)[: self.config.max_concurrent_runs]
        for run_id in set(self._active_runs) - {r.id for r in selected}:
            self.dispatcher.forget_run(run_id)
        self._active_runs = {r.id: r for r in selected}
        return selected

    async def _process_run(self, run_id: str) -> None:
        async with self.dispatcher.run_lock(run_id):
            run = await self._repository.get_run(run_id)
            if run is None or run.is_terminal or run.cancel_requested:
                self._active_runs.pop(run_id, None)
                return
            now = self._clock()
            if run.status == RunStatus.QUEUED:
                transition_run(run, RunStatus.IN_PROGRESS, now)
                await self._repository.save_run(run)

            steps = await self._repository.get_steps(run.id)
            for step in steps:
                if self._is_orphaned(step, now):
                    await self._recover_orphan(run, step)
                elif (
                    step.status == StepStatus.RETRY_PENDING
                    and step.retry_at is not None
                    and step.retry_at <= now
                ):
                    transition_step(step, StepStatus.PENDING, now)
                    await self._repository.save_step(step)

            for step in steps:
                if step.status == StepStatus.NOT_READY and is_ready(step, steps):
                    transition_step(step, StepStatus.PENDING, now)
                    await self._repository.save_step(step)

            outcome = evaluate_run(run, steps, self.dispatcher.in_flight(run.id, steps))
            if outcome is not None:
                await self._finish_run(run, steps, outcome)
                return

            await self.dispatcher.dispatch_ready(run, steps)

    def _is_orphaned(self, step: StepInstance, now: datetime) -> bool:
        if step.status != StepStatus.IN_PROGRESS or step.awaiting_signal:
            return False
        if self.dispatcher.is_claimed(step.id):
            return False
        return step.claimed_until is None or step.claimed_until <= now

    async def _recover_orphan(self, run: Run, step: StepInstance) -> None:
        logger.warning(
            f"Recovering step {step.sequence} of run {run.id}: lease held by "
            f"{step.claimed_by or 'nobody'} expired"
        )
        error = StepError.from_exception(
            StepTimeoutError(
                "Step lease expired before a result was recorded",
                {"claimed_by": step.claimed_by},
            )
        )
        # the expired lease means no attempt is still running
        key, operation = step_idempotency(run.id, step)
        await self.idempotency.abandon(key, operation, run.organization_id, error.message)
        await self.dispatcher.record_failure(run, step, error)

    async def _finish_run(
        self, run: Run, steps: List[StepInstance], outcome: RunStatus
    ) -> None:
        now = self._clock()
        if outcome == RunStatus.FAILED:
            failed = next(
                (s for s in steps if s.status == StepStatus.FAILED and s.required), None
            )
            if failed is not None and failed.last_error is not None:
                run.error = failed.last_error
            else:
                blocked = [
                    s.sequence for s in steps if not s.is_terminal and is_blocked(s, steps)
                ]
                run.error = StepError(
                    category=ErrorCategory.EXECUTION,
                    message="No remaining step can make progress",
                    details={"blocked_steps": blocked},
                )
            await self._cancel_open_tasks(run.id, now)
        transition_run(run, outcome, now)
        await self._repository.save_run(run)
        self._active_runs.pop(run.id, None)
        if outcome == RunStatus.FAILED:
            logger.error(f"Run {run.id} failed: {run.error.message if run.error else ''}")

    async def _cancel_open_tasks(self, run_id: str, now: datetime) -> int:
        tasks = await self._repository.list_tasks(run_id=run_id, status=TaskStatus.OPEN)
        for task in tasks:
            task.status = TaskStatus.CANCELLED
            task.completed_at = now
            await self._repository.save_task(task)
        return len(tasks)

    # external signals

    async def cancel_run(self, run_id: str, reason: Optional[str] = None) -> Run:
        """Cancel ``run_id`` immediately without interrupting running handlers."""
        async with self.dispatcher.run_lock(run_id):
            run = await self._repository.get_run(run_id)
            if run is None:
                raise ValidationError(f"Unknown run {run_id}")
            now = self._clock()
            run.cancel_requested = True
            transition_run(run, RunStatus.CANCELLED, now)
            if reason:
                run.context["cancel_reason"] = reason
            await self._repository.save_run(run)
            cancelled_tasks = await self._cancel_open_tasks(run.id, now)
            await self.audit.record(
                RUN_CANCELLED,
                organization_id=run.organization_id,
                run_id=run.id,
                user_id=run.requested_by,
                outcome="cancelled",
                reason=reason,
                cancelled_tasks=cancelled_tasks,
            )
        self._active_runs.pop(run_id, None)
        logger.info(f"Run {run_id} cancelled" + (f": {reason}" if reason else ""))
        return run

    async def complete_task(
        self,
        task_id: str,
        output: Optional[Dict[str, Any]] = None,
        completed_by: Optional[str] = None,
    ) -> TaskAssignment:
        """Complete a human task and the step waiting on it."""
        task = await self._open_task(task_id)
        async with self.dispatcher.run_lock(task.run_id):
            now = self._clock()
            task.status = TaskStatus.COMPLETED
            task.result = dict(output or {})
            task.completed_at = now
            await self._repository.save_task(task)
            await self._audit_task_signal(task, "completed", completed_by)

            step = await self._repository.get_step(task.step_id)
            run = await self._repository.get_run(task.run_id)
            if step is not None and step.status == StepStatus.IN_PROGRESS:
                step.output_data = {**task.result, "task_id": task.id}
                if completed_by:
                    step.output_data["completed_by"] = completed_by
                transition_step(step, StepStatus.COMPLETED, now)
                await self._repository.save_step(step)
                if run is not None and not run.is_terminal:
                    run.output_payload[str(step.sequence)] = step.output_data
                    run.current_step = max(run.current_step, step.sequence)
                    await self._repository.save_run(run)
        self._on_step_settled(task.run_id)
        return task

    async def reject_task(
        self, task_id: str, reason: str, rejected_by: Optional[str] = None
    ) -> TaskAssignment:
        """Reject a human task, failing its step without retries."""
        task = await self._open_task(task_id)
        async with self.dispatcher.run_lock(task.run_id):
            now = self._clock()
            task.status = TaskStatus.REJECTED
            task.result = {"reason": reason}
            task.completed_at = now
            await self._repository.save_task(task)
            await self._audit_task_signal(task, "rejected", rejected_by, reason=reason)

            step = await self._repository.get_step(task.step_id)
            run = await self._repository.get_run(task.run_id)
            if step is not None and step.status == StepStatus.IN_PROGRESS:
                error = StepError.from_exception(
                    ExecutionError(f"Task rejected: {reason}", {"task_id": task.id})
                )
                await self.dispatcher.record_failure(run, step, error)
        self._on_step_settled(task.run_id)
        return task

    async def _open_task(self, task_id: str) -> TaskAssignment:
        task = await self._repository.get_task(task_id)
        if task is None:
            raise ValidationError(f"Unknown task {task_id}")
        if task.status != TaskStatus.OPEN:
            raise InvalidTransitionError(
                f"Task {task_id} is already {task.status.value}", {"task_id": task_id}
            )
        return task

    async def _audit_task_signal(
        self, task: TaskAssignment, outcome: str, user_id: Optional[str], **details: Any
    ) -> None:
        await self.audit.record(
            TASK_SIGNAL,
            organization_id=task.organization_id,
            run_id=task.run_id,
            step_id=task.step_id,
            worker_type="human",
            user_id=user_id,
            outcome=outcome,
            task_id=task.id,
            **details,
        )
