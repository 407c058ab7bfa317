"""Mapping from the closed set of worker types to handler implementations."""

from __future__ import annotations

from typing import Dict, Iterable, Optional

from ..contracts import PlaybookDefinition, WorkerType
from ..exceptions import ConfigurationError
from .base import WorkerHandler


class WorkerRegistry:
    """Registry of one handler per :class:`WorkerType`.

    Lookups of an unregistered type raise :class:`ConfigurationError`
    instead of silently doing nothing.
    """

    def __init__(self, handlers: Optional[Iterable[WorkerHandler]] = None) -> None:
        self._handlers: Dict[WorkerType, WorkerHandler] = {}
        for handler in handlers or ():
            self.register(handler)

    def register(
        self, handler: WorkerHandler, worker_type: Optional[WorkerType] = None
    ) -> None:
        """Add ``handler`` for ``worker_type``, replacing any previous one."""
        key = worker_type or getattr(handler, "worker_type", None)
        try:
            key = WorkerType(key)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown worker type: {key!r}") from exc
        self._handlers[key] = handler

    def get(self, worker_type: WorkerType | str) -> WorkerHandler:
        try:
            key = WorkerType(worker_type)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown worker type: {worker_type!r}") from exc
        handler = self._handlers.get(key)
        if handler is None:
            raise ConfigurationError(
                f"No handler registered for worker type {key.value}",
                {"worker_type": key.value},
            )
        return handler

    def registered_types(self) -> list[WorkerType]:
        return sorted(self._handlers, key=lambda t: t.value)

    def __contains__(self, worker_type: object) -> bool:
        try:
            return WorkerType(worker_type) in self._handlers
        except ValueError:
            return False

    def validate_definition(self, definition: PlaybookDefinition) -> None:
        """Ensure every step of ``definition`` has a handler.

        Handlers exposing a ``validate_step(step_definition)`` hook are asked
        to check worker-specific configuration as well.
        """
        for step in definition.steps:
            handler = self.get(step.worker_type)
            validate = getattr(handler, "validate_step", None)
            if validate is not None:
                validate(step)
