"""Rolling-window rate limiting of step executions per user and worker type."""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Mapping, Optional, Tuple

from ..config import RateLimitRule
from ..contracts import WorkerType
from ..utils.clock import Clock, utcnow


class StepRateLimiter:
    """Caps executions of one worker type by one user in a rolling window.

    Worker types without a rule are unlimited.
    """

    def __init__(
        self, rules: Optional[Mapping[WorkerType, RateLimitRule]] = None, clock: Clock = utcnow
    ) -> None:
        self._rules: Dict[WorkerType, RateLimitRule] = dict(rules or {})
        self._clock = clock
        self._events: Dict[Tuple[str, WorkerType], Deque[datetime]] = {}
        self._lock = asyncio.Lock()

    def rule_for(self, worker_type: WorkerType) -> Optional[RateLimitRule]:
        return self._rules.get(worker_type)

    def _prune(self, events: Deque[datetime], now: datetime, window: float) -> None:
        cutoff = now - timedelta(seconds=window)
        while events and events[0] <= cutoff:
            events.popleft()

    async def try_acquire(self, user_id: Optional[str], worker_type: WorkerType) -> bool:
        """Consume one slot. Returns ``False`` when the window is full."""
        rule = self._rules.get(worker_type)
        if rule is None:
            return True
        async with self._lock:
            now = self._clock()
            events = self._events.setdefault((user_id or "system", worker_type), deque())
            self._prune(events, now, rule.window_seconds)
            if len(events) >= rule.max_executions:
                return False
            events.append(now)
            return True
