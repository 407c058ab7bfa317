"""Idempotency guard deduplicating operations by key and operation name."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel

from .exceptions import ValidationError
from .persistence.models import IdempotencyRecord, IdempotencyStatus
from .persistence.repository import PlaybookRepository
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 255
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]+$")


class IdempotencyCheck(BaseModel):
    """Outcome of :meth:`IdempotencyGuard.check`."""

    is_duplicate: bool
    cached_result: Optional[Dict[str, Any]] = None
    record: Optional[IdempotencyRecord] = None


def validate_key(key: str) -> str:
    """Reject empty, over-long or oddly-charactered keys."""
    if not isinstance(key, str) or not key:
        raise ValidationError("Idempotency key must be a non-empty string")
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"Idempotency key exceeds {MAX_KEY_LENGTH} characters",
            {"length": len(key)},
        )
    if not _KEY_PATTERN.match(key):
        raise ValidationError(
            "Idempotency key may only contain letters, digits and '_.:-'",
            {"key": key},
        )
    return key


def build_idempotency_key(operation: str, *identifiers: Any) -> str:
    """Compose ``operation:id1:id2`` and validate the result."""
    return validate_key(":".join([operation, *(str(i) for i in identifiers)]))


def derive_idempotency_key(
    operation: str, payload: Any, organization_id: str
) -> str:
    """Derive a 16-hex-character key from an operation payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(
        f"{operation}-{canonical}-{organization_id}".encode("utf-8")
    ).hexdigest()
    return digest[:16]


class IdempotencyGuard:
    """Read-before-write deduplication backed by the repository.

    A ``completed`` record inside the expiration window is returned verbatim.
    An ``in_progress`` record younger than the stuck threshold is treated as a
    duplicate still running elsewhere; an older one is marked ``failed`` so a
    fresh attempt may proceed.
    """

    def __init__(
        self,
        repository: PlaybookRepository,
        expiration_seconds: float = 86400.0,
        stuck_threshold_seconds: float = 300.0,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._expiration = expiration_seconds
        self._stuck_threshold = stuck_threshold_seconds
        self._clock = clock

    async def check(
        self,
        key: str,
        operation: str,
        organization_id: str,
        expiration: Optional[float] = None,
    ) -> IdempotencyCheck:
        validate_key(key)
        record = await self._repository.find_idempotency_record(
            key, operation, organization_id
        )
        if record is None:
            return IdempotencyCheck(is_duplicate=False)

        now = self._clock()
        age = now - record.created_at
        window = timedelta(seconds=expiration if expiration is not None else self._expiration)

        if record.status == IdempotencyStatus.EXPIRED:
            return IdempotencyCheck(is_duplicate=False, record=record)

        if age > window:
            record.status = IdempotencyStatus.EXPIRED
            await self._repository.save_idempotency_record(record)
            logger.debug(f"Idempotency record {record.id} for {operation} expired")
            return IdempotencyCheck(is_duplicate=False, record=record)

        if record.status == IdempotencyStatus.COMPLETED:
            return IdempotencyCheck(
                is_duplicate=True, cached_result=record.result, record=record
            )

        if record.status == IdempotencyStatus.IN_PROGRESS:
            if age <= timedelta(seconds=self._stuck_threshold):
                return IdempotencyCheck(is_duplicate=True, record=record)
            record.status = IdempotencyStatus.FAILED
            record.error = "stuck in progress"
            record.completed_at = now
            await self._repository.save_idempotency_record(record)
            logger.warning(
                f"Idempotency record {record.id} for {operation} was stuck; marked failed"
            )
            return IdempotencyCheck(is_duplicate=False, record=record)

        # failed records allow a fresh attempt
        return IdempotencyCheck(is_duplicate=False, record=record)

    async def record(self, key: str, operation: str, organization_id: str) -> str:
        validate_key(key)
        record = IdempotencyRecord(
            key=key,
            operation=operation,
            organization_id=organization_id,
            created_at=self._clock(),
        )
        await self._repository.create_idempotency_record(record)
        return record.id

    async def complete(self, record_id: str, result: Optional[Dict[str, Any]]) -> None:
        record = await self._get(record_id)
        record.status = IdempotencyStatus.COMPLETED
        record.result = result
        record.error = None
        record.completed_at = self._clock()
        await self._repository.save_idempotency_record(record)

    async def fail(self, record_id: str, error: str) -> None:
        record = await self._get(record_id)
        record.status = IdempotencyStatus.FAILED
        record.error = error
        record.completed_at = self._clock()
        await self._repository.save_idempotency_record(record)

    async def abandon(
        self, key: str, operation: str, organization_id: str, error: str
    ) -> bool:
        """Fail the latest ``in_progress`` record for an attempt known to be dead.

        Returns ``True`` when a record was marked failed.
        """
        record = await self._repository.find_idempotency_record(
            key, operation, organization_id
        )
        if record is None or record.status != IdempotencyStatus.IN_PROGRESS:
            return False
        record.status = IdempotencyStatus.FAILED
        record.error = error
        record.completed_at = self._clock()
        await self._repository.save_idempotency_record(record)
        logger.info(f"Abandoned idempotency record {record.id} for {operation}")
        return True

    async def execute_once(
        self,
        key: str,
        operation: str,
        organization_id: str,
        func: Callable[[], Awaitable[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        """Run ``func`` at most once for ``(key, operation)``.

        Returns the cached result for a completed duplicate. Raises
        :class:`ValidationError` when the operation is still in progress.
        """
        check = await self.check(key, operation, organization_id)
        if check.is_duplicate:
            if check.cached_result is None:
                raise ValidationError(
                    f"Operation {operation} with key {key} is already in progress"
                )
            return check.cached_result
        record_id = await self.record(key, operation, organization_id)
        try:
            result = await func()
        except Exception as exc:
            await self.fail(record_id, str(exc))
            raise
        await self.complete(record_id, result)
        return result

    async def _get(self, record_id: str) -> IdempotencyRecord:
        record = await self._repository.get_idempotency_record(record_id)
        if record is None:
            raise ValidationError(f"Unknown idempotency record {record_id}")
        return record
