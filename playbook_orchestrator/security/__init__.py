"""Permission gating, rate limiting and audit trail."""

from .audit import AuditLog
from .context import SecurityContext
from .gate import GateDecision, SecurityGate
from .policy import (
    WORKER_TYPE_PERMISSIONS,
    PermissionProvider,
    PolicyEngine,
    StaticPermissionProvider,
)
from .rate_limit import StepRateLimiter

__all__ = [
    "AuditLog",
    "GateDecision",
    "PermissionProvider",
    "PolicyEngine",
    "SecurityContext",
    "SecurityGate",
    "StaticPermissionProvider",
    "StepRateLimiter",
    "WORKER_TYPE_PERMISSIONS",
]
