"""Error taxonomy for the playbook orchestration engine."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, Optional


class ErrorCategory(str, Enum):
    """Classification attached to every orchestration error."""

    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    PERMISSION = "permission"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    EXECUTION = "execution"
    SYSTEM = "system"


class OrchestratorError(Exception):
    """Base class for all orchestration errors."""

    category: ErrorCategory = ErrorCategory.EXECUTION
    recoverable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(OrchestratorError):
    """Malformed input: dependency graph, idempotency key, step data."""

    category = ErrorCategory.VALIDATION


class ConfigurationError(ValidationError):
    """Invalid configuration, e.g. an unregistered worker type."""

    category = ErrorCategory.CONFIGURATION


class InvalidTransitionError(ValidationError):
    """A status change not permitted by the run or step state machine."""


class PermissionDeniedError(OrchestratorError):
    """Security Gate denial, itemizing the missing permissions."""

    category = ErrorCategory.PERMISSION

    def __init__(self, message: str, missing_permissions: Iterable[str] = ()):
        missing = sorted(missing_permissions)
        super().__init__(message, {"missing_permissions": missing})
        self.missing_permissions = missing


class RateLimitError(OrchestratorError):
    """Too many executions of one worker type by one user in the window."""

    category = ErrorCategory.RATE_LIMIT


class StepTimeoutError(OrchestratorError):
    """A handler exceeded its wall-clock budget."""

    category = ErrorCategory.TIMEOUT
    recoverable = True


class ExecutionError(OrchestratorError):
    """Handler-internal failure. Recoverable only when network-flavored."""

    category = ErrorCategory.EXECUTION

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        network: bool = False,
    ):
        super().__init__(message, details)
        self.network = network
        self.recoverable = network


class InfrastructureError(OrchestratorError):
    """Persistence or infrastructure failure."""

    category = ErrorCategory.SYSTEM
    recoverable = True


__all__ = [
    "ErrorCategory",
    "OrchestratorError",
    "ValidationError",
    "ConfigurationError",
    "InvalidTransitionError",
    "PermissionDeniedError",
    "RateLimitError",
    "StepTimeoutError",
    "ExecutionError",
    "InfrastructureError",
]
