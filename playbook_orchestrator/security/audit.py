"""Audit logging for security and execution events."""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..persistence.models import AuditEntry
from ..persistence.repository import PlaybookRepository
from ..utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

PERMISSION_CHECK = "permission_check"
RATE_LIMIT = "rate_limit"
STEP_ERROR = "step_error"
STEP_RETRY_SCHEDULED = "step_retry_scheduled"
STEP_FAILED = "step_failed"
RUN_CANCELLED = "run_cancelled"
TASK_SIGNAL = "task_signal"

_COLUMNS = (
    "organization_id",
    "run_id",
    "step_id",
    "worker_type",
    "user_id",
    "outcome",
    "error_category",
)


class AuditLog:
    """Records authorization decisions and step errors."""

    def __init__(self, repository: PlaybookRepository, clock: Clock = utcnow) -> None:
        self._repository = repository
        self._clock = clock

    async def record(self, event: str, **details: Any) -> AuditEntry:
        """Persist an audit log entry.

        Known keyword arguments populate the entry's columns; anything else
        lands in ``details``.
        """
        columns = {k: details.pop(k) for k in _COLUMNS if k in details}
        for key in ("worker_type", "error_category"):
            value: Optional[Any] = columns.get(key)
            if value is not None and hasattr(value, "value"):
                columns[key] = value.value
        entry = AuditEntry(
            event=event, details=details, created_at=self._clock(), **columns
        )
        await self._repository.add_audit_entry(entry)
        logger.debug(f"Audit {event}: run={entry.run_id} step={entry.step_id} outcome={entry.outcome}")
        return entry
