"""Shared contract for worker handlers."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod

from ..contracts import ExecutionOptions, StepContext, WorkerResult, WorkerType
from ..persistence.models import StepInstance


class WorkerHandler(ABC):
    """Executes one step of a given worker type.

    Handlers report failures inside the returned :class:`WorkerResult` rather
    than raising. The dispatcher applies the wall-clock timeout from
    ``options.timeout`` around :meth:`execute`.
    """

    worker_type: WorkerType

    @abstractmethod
    async def execute(
        self, step: StepInstance, context: StepContext, options: ExecutionOptions
    ) -> WorkerResult:
        ...


def elapsed_ms(started: float) -> int:
    """Milliseconds since ``started`` (a :func:`time.monotonic` value)."""
    return int((time.monotonic() - started) * 1000)
