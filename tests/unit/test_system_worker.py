import pytest

from playbook_orchestrator.contracts import StepDefinition, WorkerType
from playbook_orchestrator.exceptions import ConfigurationError, ErrorCategory
from playbook_orchestrator.workers import InMemoryRecordStore, LoggingNotifier, SystemWorker
from conftest import options, step_context, step_instance


@pytest.mark.asyncio
async def test_validate_reports_missing_fields_and_type_errors():
    worker = SystemWorker()
    step = step_instance(
        config={
            "operation": "validate",
            "required_fields": ["name", "email", "profile.age"],
            "field_types": {"amount": "number", "tags": "array"},
        }
    )
    context = step_context(run_input={"name": "Ada", "amount": "12", "tags": []})
    result = await worker.execute(step, context, options())

    assert not result.success
    assert result.error.category == ErrorCategory.VALIDATION
    assert not result.error.recoverable
    assert result.error.details["missing_fields"] == ["email", "profile.age"]
    assert result.error.details["type_errors"] == {"amount": "number"}


@pytest.mark.asyncio
async def test_validate_success_uses_rendered_input_data():
    worker = SystemWorker()
    step = step_instance(
        sequence=2,
        config={"operation": "validate", "required_fields": ["total"], "field_types": {"total": "integer"}},
        input_data={"total": "${steps.1.total}"},
    )
    context = step_context(previous={1: {"total": 7}})
    result = await worker.execute(step, context, options())
    assert result.success
    assert result.output_data == {"valid": True, "validated_fields": ["total"]}
    assert result.worker_info["operation"] == "validate"


@pytest.mark.asyncio
async def test_transform_renders_mapping_against_run_scope():
    worker = SystemWorker()
    step = step_instance(
        sequence=3,
        config={
            "operation": "transform",
            "mapping": {
                "customer": "${input.customer.id}",
                "summary": "Order ${steps.review.order_id} for ${data.customer.name}",
                "approved": "${steps.2.approved}",
                "run": "${run.correlation_id}",
            },
        },
    )
    context = step_context(
        run_input={"customer": {"id": 17, "name": "Ada"}},
        previous={1: {"order_id": "A-1"}, 2: {"approved": True}},
        names={1: "review"},
    )
    result = await worker.execute(step, context, options())
    assert result.success
    assert result.output_data == {
        "customer": 17,
        "summary": "Order A-1 for Ada",
        "approved": True,
        "run": "WF-test",
    }


@pytest.mark.asyncio
async def test_notify_sends_through_notifier():
    notifier = LoggingNotifier()
    worker = SystemWorker(notifier=notifier)
    step = step_instance(
        config={
            "operation": "notify",
            "recipient": "${input.email}",
            "subject": "Welcome ${input.name}",
            "message": "Hello",
            "channel": "sms",
        }
    )
    result = await worker.execute(
        step, step_context(run_input={"email": "ada@example.com", "name": "Ada"}), options()
    )
    assert result.success
    assert result.output_data == {
        "notified": True,
        "recipient": "ada@example.com",
        "channel": "sms",
    }
    assert notifier.sent[0]["subject"] == "Welcome Ada"
    assert notifier.sent[0]["metadata"] == {"run_id": "run-1", "step": 1}


@pytest.mark.asyncio
async def test_notify_without_recipient_fails():
    worker = SystemWorker()
    step = step_instance(config={"operation": "notify"})
    result = await worker.execute(step, step_context(), options())
    assert not result.success
    assert result.error.category == ErrorCategory.VALIDATION


@pytest.mark.asyncio
async def test_create_and_update_record():
    store = InMemoryRecordStore()
    worker = SystemWorker(record_store=store)

    create = step_instance(
        config={"operation": "create_record", "entity_type": "grant_application"},
        input_data={"title": "${input.title}"},
    )
    created = await worker.execute(create, step_context(run_input={"title": "Solar"}), options())
    assert created.success
    record_id = created.output_data["record_id"]
    assert store.records[record_id]["fields"] == {"title": "Solar"}
    assert store.records[record_id]["organization_id"] == "org-1"

    update = step_instance(
        sequence=2,
        config={"operation": "update_record", "record_id": "${steps.1.record_id}"},
        input_data={"status": "submitted"},
    )
    updated = await worker.execute(
        update, step_context(previous={1: created.output_data}), options()
    )
    assert updated.success
    assert store.records[record_id]["fields"] == {"title": "Solar", "status": "submitted"}


@pytest.mark.asyncio
async def test_update_unknown_record_is_execution_failure():
    worker = SystemWorker()
    step = step_instance(config={"operation": "update_record", "record_id": "nope"})
    result = await worker.execute(step, step_context(), options())
    assert not result.success
    assert result.error.category == ErrorCategory.EXECUTION
    assert not result.error.recoverable


@pytest.mark.asyncio
async def test_unknown_operation_is_configuration_failure():
    worker = SystemWorker()
    result = await worker.execute(step_instance(config={"operation": "teleport"}), step_context(), options())
    assert not result.success
    assert result.error.category == ErrorCategory.CONFIGURATION


def test_validate_step_rejects_unknown_operation():
    worker = SystemWorker()
    step = StepDefinition(sequence=1, name="x", worker_type=WorkerType.SYSTEM, config={"operation": "teleport"})
    with pytest.raises(ConfigurationError):
        worker.validate_step(step)
    assert "transform" in worker.operations
