"""Step-level retry decisions driven by a backoff ladder."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Iterable, Optional, Sequence

from pydantic import BaseModel

from .contracts import StepError, StepStatus
from .exceptions import ErrorCategory
from .persistence.models import StepInstance
from .state import transition_step
from .utils.clock import Clock, utcnow
from .utils.retry import ladder_delay

logger = logging.getLogger(__name__)


class RetryDecision(BaseModel):
    retry: bool
    delay_seconds: Optional[float] = None
    reason: str


class RetryManager:
    """Decides between ``retry_pending`` and ``failed`` for a failed step."""

    def __init__(
        self,
        delays: Sequence[float] = (1.0, 2.0, 5.0, 10.0, 20.0),
        recoverable_categories: Iterable[ErrorCategory] = (
            ErrorCategory.TIMEOUT,
            ErrorCategory.SYSTEM,
        ),
        clock: Clock = utcnow,
    ) -> None:
        if not delays:
            raise ValueError("Backoff ladder must not be empty")
        self.delays = list(delays)
        self.recoverable_categories = frozenset(recoverable_categories)
        self._clock = clock

    def is_recoverable(self, error: StepError) -> bool:
        if error.category in (ErrorCategory.PERMISSION, ErrorCategory.VALIDATION):
            return False
        # network-flavored execution errors carry recoverable=True themselves
        if error.category == ErrorCategory.EXECUTION:
            return error.recoverable or ErrorCategory.EXECUTION in self.recoverable_categories
        return error.category in self.recoverable_categories

    def apply(self, step: StepInstance, error: StepError) -> RetryDecision:
        """Transition ``step`` (which must be in progress) after a failure."""
        step.last_error = error
        now = self._clock()
        if not self.is_recoverable(error):
            transition_step(step, StepStatus.FAILED, now)
            return RetryDecision(retry=False, reason="non_recoverable")
        if step.retry_count >= step.max_retries:
            transition_step(step, StepStatus.FAILED, now)
            return RetryDecision(retry=False, reason="retries_exhausted")

        step.retry_count += 1
        delay = ladder_delay(self.delays, step.retry_count)
        transition_step(step, StepStatus.RETRY_PENDING, now)
        step.retry_at = now + timedelta(seconds=delay)
        logger.warning(
            f"Step {step.sequence} of run {step.run_id} failed with {error.category.value}; "
            f"retry {step.retry_count}/{step.max_retries} in {delay}s"
        )
        return RetryDecision(retry=True, delay_seconds=delay, reason="recoverable")
