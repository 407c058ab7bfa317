"""Playbook orchestrator: dependency-aware execution of multi-step playbooks."""

from .config import OrchestratorConfig, load_config
from .contracts import (
    Dependency,
    PlaybookDefinition,
    RunStatus,
    StepDefinition,
    StepStatus,
    WorkerResult,
    WorkerType,
)
from .daemon import OrchestratorDaemon, OrchestratorStatus
from .definitions import load_playbook, validate_definition
from .dispatch import StepDispatcher
from .idempotency import IdempotencyGuard, derive_idempotency_key
from .launcher import PlaybookLauncher, generate_correlation_id
from .persistence import get_repository
from .retry_manager import RetryManager
from .workers import WorkerRegistry, build_registry

__version__ = "0.1.0"
__all__ = [
    "Dependency",
    "IdempotencyGuard",
    "OrchestratorConfig",
    "OrchestratorDaemon",
    "OrchestratorStatus",
    "PlaybookDefinition",
    "PlaybookLauncher",
    "RetryManager",
    "RunStatus",
    "StepDefinition",
    "StepDispatcher",
    "StepStatus",
    "WorkerRegistry",
    "WorkerResult",
    "WorkerType",
    "build_registry",
    "derive_idempotency_key",
    "generate_correlation_id",
    "get_repository",
    "load_config",
    "load_playbook",
    "validate_definition",
]
