"""Security gate consulted before every step dispatch."""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from ..exceptions import OrchestratorError, PermissionDeniedError, RateLimitError
from ..persistence.models import Run, StepInstance
from .audit import PERMISSION_CHECK, RATE_LIMIT, AuditLog
from .context import SecurityContext
from .policy import PermissionProvider, PolicyEngine
from .rate_limit import StepRateLimiter

logger = logging.getLogger(__name__)


class GateDecision(BaseModel):
    allowed: bool
    required_permissions: List[str] = Field(default_factory=list)
    missing_permissions: List[str] = Field(default_factory=list)
    rate_limited: bool = False

    def to_exception(self) -> Optional[OrchestratorError]:
        if self.allowed:
            return None
        if self.rate_limited:
            return RateLimitError("Rate limit exceeded")
        return PermissionDeniedError(
            f"Missing permissions: {', '.join(self.missing_permissions)}",
            self.missing_permissions,
        )


class SecurityGate:
    """Permission check followed by the rate limiter, both audited."""

    def __init__(
        self,
        permissions: PermissionProvider,
        audit: AuditLog,
        rate_limiter: Optional[StepRateLimiter] = None,
        policy: Optional[PolicyEngine] = None,
    ) -> None:
        self._permissions = permissions
        self._audit = audit
        self._rate_limiter = rate_limiter or StepRateLimiter()
        self._policy = policy or PolicyEngine()

    async def build_context(self, run: Run) -> SecurityContext:
        granted = await self._permissions.get_permissions(
            run.requested_by, run.organization_id
        )
        return SecurityContext(
            user_id=run.requested_by,
            organization_id=run.organization_id,
            permissions=granted,
        )

    async def check(self, step: StepInstance, run: Run) -> GateDecision:
        context = await self.build_context(run)
        required = sorted(
            self._policy.required_permissions(step.worker_type, step.required_permissions)
        )
        missing = self._policy.missing_permissions(context, required)
        audit_fields = dict(
            organization_id=run.organization_id,
            run_id=run.id,
            step_id=step.id,
            worker_type=step.worker_type,
            user_id=run.requested_by,
        )
        await self._audit.record(
            PERMISSION_CHECK,
            outcome="denied" if missing else "allowed",
            required_permissions=required,
            missing_permissions=missing,
            **audit_fields,
        )
        if missing:
            logger.warning(
                f"Permission denied for step {step.sequence} of run {run.id}: missing {missing}"
            )
            return GateDecision(
                allowed=False, required_permissions=required, missing_permissions=missing
            )

        if not await self._rate_limiter.try_acquire(run.requested_by, step.worker_type):
            rule = self._rate_limiter.rule_for(step.worker_type)
            await self._audit.record(
                RATE_LIMIT,
                outcome="denied",
                max_executions=rule.max_executions if rule else None,
                window_seconds=rule.window_seconds if rule else None,
                **audit_fields,
            )
            logger.warning(
                f"Rate limit exceeded for {step.worker_type.value} steps by "
                f"{run.requested_by or 'system'}"
            )
            return GateDecision(
                allowed=False, required_permissions=required, rate_limited=True
            )
        return GateDecision(allowed=True, required_permissions=required)
