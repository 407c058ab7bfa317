"""Playbook launcher for the orchestrator."""

from __future__ import annotations

import logging
import random
import secrets
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from .contracts import PlaybookDefinition
from .definitions import validate_definition
from .exceptions import ValidationError
from .idempotency import IdempotencyGuard
from .persistence.models import Run, StepInstance
from .persistence.repository import PlaybookRepository
from .resolver import initial_status
from .utils.clock import Clock, utcnow
from .workers.registry import WorkerRegistry

if TYPE_CHECKING:
    from .daemon import OrchestratorDaemon

logger = logging.getLogger(__name__)

START_RUN_OPERATION = "start_run"


def generate_correlation_id(now: Optional[datetime] = None) -> str:
    """Return an id of the form ``WF-<yyyymmddHHMMSS>-<8 hex>-<3 digits>``."""
    now = now or utcnow()
    return f"WF-{now:%Y%m%d%H%M%S}-{secrets.token_hex(4)}-{random.randint(0, 999):03d}"


class PlaybookLauncher:
    """Service responsible for starting new runs."""

    def __init__(
        self,
        repository: PlaybookRepository,
        registry: Optional[WorkerRegistry] = None,
        daemon: Optional["OrchestratorDaemon"] = None,
        idempotency: Optional[IdempotencyGuard] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._daemon = daemon
        self._idempotency = idempotency or IdempotencyGuard(repository, clock=clock)
        self._clock = clock

    async def register_definition(self, definition: PlaybookDefinition) -> None:
        """Validate and store ``definition``."""
        validate_definition(definition, self._registry)
        await self._repository.save_definition(definition)

    async def start_playbook(self, playbook_id: str, **kwargs: Any) -> Run:
        """Start a run of a stored definition."""
        definition = await self._repository.get_definition(playbook_id)
        if definition is None:
            raise ValidationError(f"Unknown playbook {playbook_id}")
        return await self.start_run(definition, **kwargs)

    async def start_run(
        self,
        definition: PlaybookDefinition,
        input_payload: Optional[Dict[str, Any]] = None,
        organization_id: Optional[str] = None,
        requested_by: Optional[str] = None,
        correlation_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Run:
        """Materialize a run and all of its steps.

        Args:
            definition: Playbook to execute.
            input_payload: Run input available to step templates.
            organization_id: Organization scope; must match the definition's.
            requested_by: User the steps are executed on behalf of.
            correlation_id: Optional caller-supplied tracking id.
            idempotency_key: When given, repeated calls with the same key
                return the run created by the first call.
            context: Free-form execution context.

        Returns:
            The persisted ``queued`` run.
        """
        organization_id = organization_id or definition.organization_id
        if organization_id != definition.organization_id:
            raise ValidationError(
                f"Playbook {definition.id} belongs to organization "
                f"{definition.organization_id}, not {organization_id}"
            )
        validate_definition(definition, self._registry)

        record_id = None
        if idempotency_key:
            check = await self._idempotency.check(
                idempotency_key, START_RUN_OPERATION, organization_id
            )
            if check.is_duplicate:
                if check.cached_result is None:
                    raise ValidationError(
                        f"A run for idempotency key {idempotency_key} is already being created"
                    )
                existing = await self._repository.get_run(check.cached_result["run_id"])
                if existing is not None:
                    logger.info(f"Returning existing run {existing.id} for key {idempotency_key}")
                    return existing
            record_id = await self._idempotency.record(
                idempotency_key, START_RUN_OPERATION, organization_id
            )

        try:
            run = await self._create_run(
                definition, input_payload, organization_id, requested_by, correlation_id, context
            )
        except Exception as exc:
            if record_id is not None:
                await self._idempotency.fail(record_id, str(exc))
            raise
        if record_id is not None:
            await self._idempotency.complete(record_id, {"run_id": run.id})

        if self._daemon is not None:
            self._daemon.notify_new_run(run.id)
        logger.info(
            f"Started run {run.id} of playbook {definition.id} "
            f"(correlation_id={run.correlation_id})"
        )
        return run

    async def _create_run(
        self,
        definition: PlaybookDefinition,
        input_payload: Optional[Dict[str, Any]],
        organization_id: str,
        requested_by: Optional[str],
        correlation_id: Optional[str],
        context: Optional[Dict[str, Any]],
    ) -> Run:
        now = self._clock()
        run = Run(
            playbook_id=definition.id,
            playbook_version=definition.version,
            organization_id=organization_id,
            total_steps=len(definition.steps),
            input_payload=dict(input_payload or {}),
            context=dict(context or {}),
            requested_by=requested_by,
            correlation_id=correlation_id or generate_correlation_id(now),
            created_at=now,
        )
        steps = [
            StepInstance(
                run_id=run.id,
                organization_id=organization_id,
                sequence=s.sequence,
                name=s.name,
                step_definition_id=f"{definition.id}:{s.sequence}",
                worker_type=s.worker_type,
                status=initial_status(s),
                required=s.required,
                required_permissions=list(s.required_permissions),
                input_data=dict(s.input_data),
                config=dict(s.config),
                dependencies=list(s.dependencies),
                max_retries=s.max_retries,
                timeout_seconds=s.timeout_seconds,
                created_at=now,
            )
            for s in sorted(definition.steps, key=lambda s: s.sequence)
        ]
        await self._repository.create_run(run)
        await self._repository.create_steps(steps)
        return run
