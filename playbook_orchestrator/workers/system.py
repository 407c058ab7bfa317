"""Deterministic system operations: validation, transformation, notification and records."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from ..contracts import (
    ExecutionOptions,
    StepContext,
    StepDefinition,
    WorkerResult,
    WorkerType,
)
from ..exceptions import ConfigurationError, ExecutionError, OrchestratorError, ValidationError
from ..persistence.models import StepInstance
from ..templating import MISSING, lookup, render
from .base import WorkerHandler, elapsed_ms

logger = logging.getLogger(__name__)

_TYPE_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
}


class RecordStore(Protocol):
    """Boundary to the generic business record store."""

    async def create_record(
        self, organization_id: str, entity_type: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        ...

    async def update_record(
        self, organization_id: str, record_id: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        ...


class InMemoryRecordStore:
    """Record store kept in a dictionary, scoped by organization."""

    def __init__(self) -> None:
        self.records: Dict[str, Dict[str, Any]] = {}

    async def create_record(
        self, organization_id: str, entity_type: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        record = {
            "id": str(uuid.uuid4()),
            "organization_id": organization_id,
            "entity_type": entity_type,
            "fields": dict(fields),
        }
        self.records[record["id"]] = record
        return dict(record)

    async def update_record(
        self, organization_id: str, record_id: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        record = self.records.get(record_id)
        if record is None or record["organization_id"] != organization_id:
            raise ExecutionError(f"Record {record_id} not found", {"record_id": record_id})
        record["fields"].update(fields)
        return dict(record)


class Notifier(Protocol):
    """Delivers a notification to a recipient."""

    async def send(
        self,
        recipient: str,
        subject: str,
        message: str,
        channel: str = "email",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class LoggingNotifier:
    """Notifier that logs and remembers what it sent."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send(
        self,
        recipient: str,
        subject: str,
        message: str,
        channel: str = "email",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.sent.append(
            {
                "recipient": recipient,
                "subject": subject,
                "message": message,
                "channel": channel,
                "metadata": metadata or {},
            }
        )
        logger.info(f"Notification via {channel} to {recipient}: {subject}")


Operation = Callable[[StepInstance, StepContext, Dict[str, Any]], Awaitable[Dict[str, Any]]]


class SystemWorker(WorkerHandler):
    """Runs one of a fixed set of operations named by ``config.operation``.

    The operation payload is the step's ``input_data`` rendered against the
    run input and prior step outputs; it defaults to the run input when the
    step declares none.
    """

    worker_type = WorkerType.SYSTEM

    def __init__(
        self,
        record_store: Optional[RecordStore] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.record_store = record_store or InMemoryRecordStore()
        self.notifier = notifier or LoggingNotifier()
        self._operations: Dict[str, Operation] = {
            "validate": self._validate,
            "transform": self._transform,
            "notify": self._notify,
            "create_record": self._create_record,
            "update_record": self._update_record,
        }

    @property
    def operations(self) -> List[str]:
        return sorted(self._operations)

    def validate_step(self, step: StepDefinition) -> None:
        operation = step.config.get("operation")
        if operation not in self._operations:
            raise ConfigurationError(
                f"Unknown system operation {operation!r} in step {step.sequence}",
                {"operation": operation, "known": self.operations},
            )

    async def execute(
        self, step: StepInstance, context: StepContext, options: ExecutionOptions
    ) -> WorkerResult:
        started = time.monotonic()
        operation = step.config.get("operation")
        info = {"operation": operation, "attempt": options.attempt}
        handler = self._operations.get(operation)
        if handler is None:
            return WorkerResult.failure(
                ConfigurationError(f"Unknown system operation {operation!r}"),
                elapsed_ms(started),
                **info,
            )
        scope = context.template_scope()
        payload = render(step.input_data, scope) if step.input_data else dict(context.run_input)
        try:
            output = await handler(step, context, payload)
        except OrchestratorError as exc:
            logger.warning(f"System operation {operation} failed: {exc.message}")
            return WorkerResult.failure(exc, elapsed_ms(started), **info)
        return WorkerResult(
            success=True,
            output_data=output,
            duration_ms=elapsed_ms(started),
            worker_info=info,
        )

    async def _validate(
        self, step: StepInstance, context: StepContext, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        required = step.config.get("required_fields", [])
        field_types = step.config.get("field_types", {})
        missing = [f for f in required if lookup(payload, f) in (MISSING, None, "")]
        type_errors = {}
        for field, expected in field_types.items():
            check = _TYPE_CHECKS.get(expected)
            if check is None:
                raise ConfigurationError(f"Unknown field type {expected!r} for {field}")
            value = lookup(payload, field)
            if value is not MISSING and value is not None and not check(value):
                type_errors[field] = expected
        if missing or type_errors:
            raise ValidationError(
                "Validation failed",
                {"missing_fields": missing, "type_errors": type_errors},
            )
        return {"valid": True, "validated_fields": sorted(set(required) | set(field_types))}

    async def _transform(
        self, step: StepInstance, context: StepContext, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        mapping = step.config.get("mapping")
        if not isinstance(mapping, dict):
            raise ConfigurationError("transform requires a 'mapping' object")
        scope = context.template_scope()
        scope["data"] = payload
        return render(mapping, scope)

    async def _notify(
        self, step: StepInstance, context: StepContext, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        scope = context.template_scope()
        scope["data"] = payload
        recipient = render(step.config.get("recipient"), scope)
        if not recipient:
            raise ValidationError("notify requires a recipient")
        channel = step.config.get("channel", "email")
        subject = render(step.config.get("subject", step.name), scope)
        message = render(step.config.get("message", ""), scope)
        await self.notifier.send(
            str(recipient),
            str(subject),
            str(message),
            channel=channel,
            metadata={"run_id": context.run_id, "step": step.sequence},
        )
        return {"notified": True, "recipient": recipient, "channel": channel}

    async def _create_record(
        self, step: StepInstance, context: StepContext, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        entity_type = step.config.get("entity_type")
        if not entity_type:
            raise ConfigurationError("create_record requires an 'entity_type'")
        record = await self.record_store.create_record(
            context.organization_id, entity_type, payload
        )
        return {"record_id": record["id"], "record": record}

    async def _update_record(
        self, step: StepInstance, context: StepContext, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        scope = context.template_scope()
        scope["data"] = payload
        record_id = render(step.config.get("record_id"), scope)
        if not record_id or not isinstance(record_id, str) or "${" in record_id:
            raise ValidationError("update_record requires a resolvable 'record_id'")
        record = await self.record_store.update_record(
            context.organization_id, record_id, payload
        )
        return {"record_id": record["id"], "record": record}
