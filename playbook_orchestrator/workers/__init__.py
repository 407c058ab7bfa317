"""Worker handlers, one per worker type, behind a shared contract."""

from __future__ import annotations

from typing import Optional

import httpx

from ..config import OrchestratorConfig
from ..persistence.repository import PlaybookRepository
from ..utils.clock import Clock, utcnow
from .ai import AIWorker, build_prompt, confidence_score
from .base import WorkerHandler
from .external import ExternalWorker
from .human import AssignmentStrategy, HumanWorker
from .providers import AIProvider, ProviderResponse, PydanticAIProvider, SimulatedProvider
from .registry import WorkerRegistry
from .system import InMemoryRecordStore, LoggingNotifier, Notifier, RecordStore, SystemWorker


def build_registry(
    repository: PlaybookRepository,
    config: Optional[OrchestratorConfig] = None,
    notifier: Optional[Notifier] = None,
    record_store: Optional[RecordStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Clock = utcnow,
) -> WorkerRegistry:
    """Registry with a handler for every worker type.

    AI steps use ``config.ai.primary_model`` through pydantic-ai when one is
    configured and the simulated provider otherwise.
    """
    config = config or OrchestratorConfig()
    notifier = notifier or LoggingNotifier()
    ai = config.ai
    primary: AIProvider = (
        PydanticAIProvider(ai.primary_model, ai.system_prompt)
        if ai.primary_model
        else SimulatedProvider()
    )
    fallback = (
        PydanticAIProvider(ai.fallback_model, ai.system_prompt) if ai.fallback_model else None
    )
    return WorkerRegistry(
        [
            SystemWorker(record_store=record_store, notifier=notifier),
            HumanWorker(repository, notifier=notifier, clock=clock),
            AIWorker(primary, fallback, ai.min_confidence, ai.system_prompt),
            ExternalWorker(client=http_client),
        ]
    )


__all__ = [
    "AIProvider",
    "AIWorker",
    "AssignmentStrategy",
    "ExternalWorker",
    "HumanWorker",
    "InMemoryRecordStore",
    "LoggingNotifier",
    "Notifier",
    "ProviderResponse",
    "PydanticAIProvider",
    "RecordStore",
    "SimulatedProvider",
    "SystemWorker",
    "WorkerHandler",
    "WorkerRegistry",
    "build_prompt",
    "build_registry",
    "confidence_score",
]
