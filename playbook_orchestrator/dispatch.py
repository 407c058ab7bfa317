"""Step dispatcher: concurrency-aware launch of ready steps."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from .contracts import (
    ExecutionOptions,
    StepContext,
    StepStatus,
    WorkerResult,
    WorkerType,
)
from .exceptions import InfrastructureError, OrchestratorError, StepTimeoutError
from .idempotency import IdempotencyGuard, build_idempotency_key
from .persistence.models import Run, StepInstance
from .persistence.repository import PlaybookRepository
from .resolver import is_ready, unmet_conditions
from .retry_manager import RetryManager
from .security.audit import STEP_ERROR, STEP_FAILED, STEP_RETRY_SCHEDULED, AuditLog
from .security.gate import SecurityGate
from .state import transition_step
from .utils.clock import Clock, utcnow
from .workers.registry import WorkerRegistry

logger = logging.getLogger(__name__)


def step_idempotency(run_id: str, step: StepInstance) -> Tuple[str, str]:
    """Key and operation name guarding one execution of ``step``."""
    return (
        build_idempotency_key("step", run_id, step.sequence),
        f"execute_{step.worker_type.value}",
    )


def build_step_context(run: Run, siblings: Sequence[StepInstance]) -> StepContext:
    """Context for a step: run input plus outputs of completed siblings."""
    return StepContext(
        run_id=run.id,
        organization_id=run.organization_id,
        correlation_id=run.correlation_id,
        requested_by=run.requested_by,
        run_input=run.input_payload,
        run_context=run.context,
        previous_outputs={
            s.sequence: s.output_data
            for s in siblings
            if s.status == StepStatus.COMPLETED and s.output_data is not None
        },
        step_names={s.sequence: s.name for s in siblings},
    )


class StepDispatcher:
    """Launches ready steps as background tasks and settles their results.

    Two guards prevent double dispatch: a process-local claim set and a lease
    in the repository (``claim_step``) so that several coordinators can share
    one database. Claims are released when the handler settles, whatever the
    outcome.
    """

    def __init__(
        self,
        repository: PlaybookRepository,
        registry: WorkerRegistry,
        gate: SecurityGate,
        idempotency: IdempotencyGuard,
        retry_manager: RetryManager,
        audit: AuditLog,
        max_concurrent_steps_per_run: int = 3,
        handler_timeout: float = 1800.0,
        system_handler_timeout: float = 60.0,
        lease_seconds: Optional[float] = None,
        instance_id: Optional[str] = None,
        clock: Clock = utcnow,
        on_settled: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._gate = gate
        self._idempotency = idempotency
        self._retry_manager = retry_manager
        self._audit = audit
        self.max_concurrent_steps_per_run = max_concurrent_steps_per_run
        self.handler_timeout = handler_timeout
        self.system_handler_timeout = system_handler_timeout
        self.lease_seconds = lease_seconds or handler_timeout + 60.0
        self.instance_id = instance_id or f"orchestrator-{uuid.uuid4().hex[:8]}"
        self._clock = clock
        self._on_settled = on_settled

        self._claims: Set[str] = set()
        self._claims_by_run: Dict[str, Set[str]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._run_locks: Dict[str, asyncio.Lock] = {}

    @property
    def claim_count(self) -> int:
        return len(self._claims)

    def is_claimed(self, step_id: str) -> bool:
        return step_id in self._claims

    def run_lock(self, run_id: str) -> asyncio.Lock:
        """Lock serializing updates of one run's records."""
        lock = self._run_locks.get(run_id)
        if lock is None:
            lock = self._run_locks[run_id] = asyncio.Lock()
        return lock

    def forget_run(self, run_id: str) -> None:
        if not self._claims_by_run.get(run_id):
            self._claims_by_run.pop(run_id, None)
            lock = self._run_locks.get(run_id)
            if lock is not None and not lock.locked():
                self._run_locks.pop(run_id, None)

    def in_flight(self, run_id: str, steps: Sequence[StepInstance]) -> int:
        """Locally claimed steps plus steps persisted ``in_progress``."""
        ids = set(self._claims_by_run.get(run_id, set()))
        ids.update(s.id for s in steps if s.status == StepStatus.IN_PROGRESS)
        return len(ids)

    def timeout_for(self, step: StepInstance) -> float:
        if step.timeout_seconds:
            return step.timeout_seconds
        if step.worker_type == WorkerType.SYSTEM:
            return self.system_handler_timeout
        return self.handler_timeout

    async def dispatch_ready(self, run: Run, steps: Sequence[StepInstance]) -> List[str]:
        """Launch pending, ready steps of ``run`` up to the per-run cap."""
        launched: List[str] = []
        if run.cancel_requested or run.is_terminal:
            return launched
        for step in sorted(steps, key=lambda s: s.sequence):
            if self.in_flight(run.id, steps) >= self.max_concurrent_steps_per_run:
                logger.debug(f"Run {run.id} at step concurrency cap")
                break
            if step.status != StepStatus.PENDING or step.id in self._claims:
                continue
            if not is_ready(step, steps):
                continue
            if await self.launch(run, step, steps):
                launched.append(step.id)
        return launched

    async def launch(
        self, run: Run, step: StepInstance, siblings: Sequence[StepInstance]
    ) -> bool:
        """Claim ``step``, mark it in progress and start its handler task."""
        if step.id in self._claims:
            return False
        self._claim(run.id, step.id)
        now = self._clock()
        try:
            leased = await self._repository.claim_step(
                step.id, self.instance_id, now + timedelta(seconds=self.lease_seconds), now
            )
            if not leased:
                logger.warning(
                    f"Step {step.sequence} of run {run.id} is leased by another instance"
                )
                self._unclaim(run.id, step.id)
                return False
            transition_step(step, StepStatus.IN_PROGRESS, now)
            await self._repository.save_step(step)
        except Exception:
            self._unclaim(run.id, step.id)
            raise

        logger.info(
            f"Dispatching step {step.sequence} ({step.worker_type.value}) of run {run.id}"
        )
        task = asyncio.create_task(self._execute(run, step.model_copy(deep=True), list(siblings)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for every launched handler to settle. ``False`` on timeout."""
        pending = {t for t in self._tasks if not t.done()}
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        return not still_pending

    def _claim(self, run_id: str, step_id: str) -> None:
        self._claims.add(step_id)
        self._claims_by_run.setdefault(run_id, set()).add(step_id)

    def _unclaim(self, run_id: str, step_id: str) -> None:
        self._claims.discard(step_id)
        run_claims = self._claims_by_run.get(run_id)
        if run_claims is not None:
            run_claims.discard(step_id)

    async def _execute(
        self, run: Run, step: StepInstance, siblings: List[StepInstance]
    ) -> None:
        try:
            result = await self._run_step(run, step, siblings)
            await self.settle(run.id, step.id, result)
        except Exception:
            logger.exception(f"Failed to settle step {step.sequence} of run {run.id}")
        finally:
            self._unclaim(run.id, step.id)
            try:
                await self._repository.release_step(step.id, self.instance_id)
            except Exception:
                logger.exception(f"Failed to release lease on step {step.id}")
            if self._on_settled is not None:
                self._on_settled(run.id)

    async def _run_step(
        self, run: Run, step: StepInstance, siblings: List[StepInstance]
    ) -> WorkerResult:
        unmet = unmet_conditions(step, siblings)
        if unmet:
            logger.info(
                f"Skipping step {step.sequence} of run {run.id}: condition on "
                f"step {unmet[0].step_number} not met"
            )
            return WorkerResult(
                success=True,
                skipped=True,
                worker_info={"unmet_conditions": [d.step_number for d in unmet]},
            )

        decision = await self._gate.check(step, run)
        if not decision.allowed:
            return WorkerResult.failure(decision.to_exception())

        try:
            handler = self._registry.get(step.worker_type)
        except OrchestratorError as exc:
            return WorkerResult.failure(exc)

        key, operation = step_idempotency(run.id, step)
        check = await self._idempotency.check(key, operation, run.organization_id)
        if check.is_duplicate:
            if check.cached_result is not None:
                logger.info(f"Replaying cached result for step {step.sequence} of run {run.id}")
                cached = WorkerResult(**check.cached_result)
                cached.worker_info = {**cached.worker_info, "idempotent_replay": True}
                return cached
            return WorkerResult.failure(
                InfrastructureError(
                    f"Step {step.sequence} of run {run.id} is already executing elsewhere",
                    {"idempotency_key": key},
                )
            )
        record_id = await self._idempotency.record(key, operation, run.organization_id)

        timeout = self.timeout_for(step)
        options = ExecutionOptions(
            timeout=timeout, attempt=step.retry_count + 1, idempotency_key=key
        )
        context = build_step_context(run, siblings)
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(handler.execute(step, context, options), timeout)
        except asyncio.TimeoutError:
            result = WorkerResult.failure(
                StepTimeoutError(
                    f"Step {step.sequence} exceeded its {timeout}s timeout",
                    {"timeout": timeout},
                ),
                int((time.monotonic() - started) * 1000),
            )
        except Exception as exc:
            logger.warning(f"Handler for step {step.sequence} of run {run.id} raised: {exc}")
            result = WorkerResult.failure(exc, int((time.monotonic() - started) * 1000))

        if result.success:
            await self._idempotency.complete(record_id, result.model_dump(mode="json"))
        else:
            await self._idempotency.fail(record_id, result.error.message)
        return result

    async def settle(self, run_id: str, step_id: str, result: WorkerResult) -> None:
        """Persist a handler result on its step, routing failures through retries."""
        async with self.run_lock(run_id):
            step = await self._repository.get_step(step_id)
            run = await self._repository.get_run(run_id)
            if step is None or step.status != StepStatus.IN_PROGRESS:
                logger.warning(f"Ignoring result for step {step_id}; it is no longer in progress")
                return
            now = self._clock()
            step.worker_info = {**result.worker_info, "duration_ms": result.duration_ms}

            if result.skipped:
                transition_step(step, StepStatus.SKIPPED, now)
                await self._repository.save_step(step)
                return

            if result.success:
                step.output_data = result.output_data or {}
                if result.awaiting_signal:
                    step.awaiting_signal = True
                    await self._repository.save_step(step)
                    logger.info(f"Step {step.sequence} of run {run_id} awaiting signal")
                    return
                transition_step(step, StepStatus.COMPLETED, now)
                await self._repository.save_step(step)
                logger.info(f"Step {step.sequence} of run {run_id} completed")
                if run is not None and not run.is_terminal:
                    run.output_payload[str(step.sequence)] = step.output_data
                    run.current_step = max(run.current_step, step.sequence)
                    await self._repository.save_run(run)
                return

            await self.record_failure(run, step, result.error)

    async def record_failure(self, run: Optional[Run], step: StepInstance, error) -> None:
        """Audit ``error`` and apply the retry decision to ``step``."""
        decision = self._retry_manager.apply(step, error)
        await self._repository.save_step(step)
        fields = dict(
            organization_id=step.organization_id,
            run_id=step.run_id,
            step_id=step.id,
            worker_type=step.worker_type,
            user_id=run.requested_by if run else None,
            error_category=error.category,
        )
        await self._audit.record(
            STEP_ERROR,
            outcome="retry" if decision.retry else "terminal",
            message=error.message,
            recoverable=error.recoverable,
            retry_count=step.retry_count,
            **fields,
        )
        if decision.retry:
            await self._audit.record(
                STEP_RETRY_SCHEDULED,
                outcome="scheduled",
                retry_count=step.retry_count,
                delay_seconds=decision.delay_seconds,
                retry_at=step.retry_at.isoformat() if step.retry_at else None,
                **fields,
            )
        else:
            logger.error(
                f"Step {step.sequence} of run {step.run_id} failed permanently "
                f"({decision.reason}): {error.message}"
            )
            await self._audit.record(
                STEP_FAILED, outcome=decision.reason, message=error.message, **fields
            )
