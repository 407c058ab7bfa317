import asyncio
from datetime import timedelta

import httpx
import pytest

from playbook_orchestrator import (
    OrchestratorConfig,
    OrchestratorDaemon,
    PlaybookLauncher,
    build_registry,
)
from playbook_orchestrator.contracts import (
    Dependency,
    RunStatus,
    StepDefinition,
    StepStatus,
    WorkerType,
)
from playbook_orchestrator.dispatch import step_idempotency
from playbook_orchestrator.exceptions import ErrorCategory, InvalidTransitionError, ValidationError
from playbook_orchestrator.persistence import IdempotencyStatus, SQLitePlaybookRepository, TaskStatus
from playbook_orchestrator.workers import LoggingNotifier
from conftest import make_definition, system_step


def _config(**overrides):
    data = {
        "retry": {"delays": [1, 2, 5]},
        "permissions": {"alice": ["*"]},
    }
    data.update(overrides)
    return OrchestratorConfig(**data)


def _daemon(repo, clock, http_client=None, notifier=None, **overrides):
    config = _config(**overrides)
    registry = build_registry(
        repo, config, notifier=notifier or LoggingNotifier(), http_client=http_client, clock=clock
    )
    return OrchestratorDaemon(repo, registry, config, clock=clock)


async def drive(daemon, run_id, clock=None, advance=0.0, max_cycles=20):
    """Run cycles until ``run_id`` is terminal, letting handlers settle in between."""
    run = None
    for _ in range(max_cycles):
        await daemon.run_cycle()
        await daemon.dispatcher.wait_idle(5)
        run = await daemon.repository.get_run(run_id)
        if run.is_terminal:
            return run
        if clock is not None and advance:
            clock.advance(advance)
    return run


def _human_step(sequence, *deps, **config):
    return StepDefinition(
        sequence=sequence,
        name=f"review{sequence}",
        worker_type=WorkerType.HUMAN,
        dependencies=[Dependency(step_number=d) for d in deps],
        config=config,
    )


@pytest.mark.asyncio
async def test_three_step_run_completes(repo, clock):
    daemon = _daemon(repo, clock)
    launcher = PlaybookLauncher(repo, daemon=daemon, clock=clock)
    definition = make_definition(
        system_step(1, mapping={"customer": "${input.customer_id}"}),
        system_step(2, 1, mapping={"greeting": "Hello ${steps.1.customer}"}),
        system_step(3, 1, 2, kind="any", mapping={"done": True, "first": "${steps.step1.customer}"}),
    )
    run = await launcher.start_run(definition, {"customer_id": "c-7"}, requested_by="alice")

    finished = await drive(daemon, run.id)

    assert finished.status == RunStatus.COMPLETED
    assert finished.started_at is not None
    assert finished.completed_at is not None
    assert finished.output_payload == {
        "1": {"customer": "c-7"},
        "2": {"greeting": "Hello c-7"},
        "3": {"done": True, "first": "c-7"},
    }
    steps = await repo.get_steps(run.id)
    assert [s.status for s in steps] == [StepStatus.COMPLETED] * 3
    assert all(s.started_at <= s.completed_at for s in steps)
    assert daemon.dispatcher.claim_count == 0


@pytest.mark.asyncio
async def test_non_recoverable_failure_fails_run(repo, clock):
    daemon = _daemon(repo, clock)
    launcher = PlaybookLauncher(repo, clock=clock)
    definition = make_definition(
        system_step(1, operation="validate", required_fields=["email"]),
        system_step(2, 1),
        system_step(3, 1, 2, kind="any"),
    )
    run = await launcher.start_run(definition, {"name": "Ada"}, requested_by="alice")

    finished = await drive(daemon, run.id)

    assert finished.status == RunStatus.FAILED
    assert finished.error.category == ErrorCategory.VALIDATION
    assert finished.error.details["missing_fields"] == ["email"]
    steps = await repo.get_steps(run.id)
    assert [s.status for s in steps] == [
        StepStatus.FAILED,
        StepStatus.NOT_READY,
        StepStatus.NOT_READY,
    ]
    assert steps[0].retry_count == 0


@pytest.mark.asyncio
async def test_external_step_recovers_after_transient_errors(repo, clock):
    responses = [httpx.Response(503), httpx.Response(503), httpx.Response(200, json={"id": "c-1"})]
    requests = []

    def handler(request):
        requests.append(request)
        return responses.pop(0)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    daemon = _daemon(repo, clock, http_client=client)
    launcher = PlaybookLauncher(repo, clock=clock)
    definition = make_definition(
        StepDefinition(
            sequence=1,
            name="create_contact",
            worker_type=WorkerType.EXTERNAL,
            config={
                "url": "https://crm.example.com/contacts",
                "method": "POST",
                "body": {"name": "${input.name}"},
                "retry": {"max_attempts": 1},
                "field_mapping": {"contact_id": "body.id"},
            },
        )
    )
    run = await launcher.start_run(definition, {"name": "Ada"}, requested_by="alice")

    # first attempt fails and is scheduled one second out
    await daemon.run_cycle()
    await daemon.dispatcher.wait_idle(5)
    step = (await repo.get_steps(run.id))[0]
    assert step.status == StepStatus.RETRY_PENDING
    assert step.retry_count == 1

    # not yet due
    await daemon.run_cycle()
    assert len(requests) == 1

    finished = await drive(daemon, run.id, clock=clock, advance=2)
    assert finished.status == RunStatus.COMPLETED
    step = (await repo.get_steps(run.id))[0]
    assert step.retry_count == 2
    assert step.output_data == {"contact_id": "c-1"}
    assert len(requests) == 3
    assert {r.headers["Idempotency-Key"] for r in requests} == {f"step:{run.id}:1"}

    scheduled = await repo.list_audit_entries(run_id=run.id, event="step_retry_scheduled")
    assert [e.details["delay_seconds"] for e in scheduled] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_human_step_completed_by_signal(repo, clock):
    notifier = LoggingNotifier()
    daemon = _daemon(repo, clock, notifier=notifier)
    launcher = PlaybookLauncher(repo, clock=clock)
    definition = make_definition(
        _human_step(1, title="Approve ${input.applicant}", assignee="bob"),
        system_step(2, 1, mapping={"approved": "${steps.1.approved}"}),
    )
    run = await launcher.start_run(definition, {"applicant": "Ada"}, requested_by="alice")

    await drive(daemon, run.id, max_cycles=3)
    steps = await repo.get_steps(run.id)
    assert steps[0].status == StepStatus.IN_PROGRESS
    assert steps[0].awaiting_signal
    tasks = await repo.list_tasks(run_id=run.id)
    assert [t.title for t in tasks] == ["Approve Ada"]
    assert notifier.sent[0]["recipient"] == "bob"

    await daemon.complete_task(tasks[0].id, {"approved": True}, completed_by="bob")
    finished = await drive(daemon, run.id)

    assert finished.status == RunStatus.COMPLETED
    assert finished.output_payload["2"] == {"approved": True}
    assert finished.output_payload["1"]["completed_by"] == "bob"
    signal = (await repo.list_audit_entries(run_id=run.id, event="task_signal"))[0]
    assert signal.outcome == "completed"

    with pytest.raises(InvalidTransitionError):
        await daemon.complete_task(tasks[0].id, {})


@pytest.mark.asyncio
async def test_human_step_rejection_fails_run(repo, clock):
    daemon = _daemon(repo, clock)
    launcher = PlaybookLauncher(repo, clock=clock)
    definition = make_definition(_human_step(1, assignee="bob"), system_step(2, 1))
    run = await launcher.start_run(definition, requested_by="alice")
    await drive(daemon, run.id, max_cycles=2)

    task = (await repo.list_tasks(run_id=run.id))[0]
    await daemon.reject_task(task.id, "missing documents", rejected_by="bob")
    finished = await drive(daemon, run.id)

    assert finished.status == RunStatus.FAILED
    assert finished.error.message == "Task rejected: missing documents"
    steps = await repo.get_steps(run.id)
    assert steps[0].status == StepStatus.FAILED
    assert steps[0].retry_count == 0
    assert (await repo.get_task(task.id)).status == TaskStatus.REJECTED


@pytest.mark.asyncio
async def test_cancel_run(repo, clock):
    daemon = _daemon(repo, clock)
    launcher = PlaybookLauncher(repo, clock=clock)
    definition = make_definition(_human_step(1, assignee="bob"), system_step(2, 1))
    run = await launcher.start_run(definition, requested_by="alice")
    await drive(daemon, run.id, max_cycles=2)

    cancelled = await daemon.cancel_run(run.id, "duplicate application")
    assert cancelled.status == RunStatus.CANCELLED
    assert cancelled.cancel_requested
    task = (await repo.list_tasks(run_id=run.id))[0]
    assert task.status == TaskStatus.CANCELLED
    entry = (await repo.list_audit_entries(run_id=run.id, event="run_cancelled"))[0]
    assert entry.details["reason"] == "duplicate application"
    assert entry.details["cancelled_tasks"] == 1

    # later cycles leave the run alone
    await daemon.run_cycle()
    steps = await repo.get_steps(run.id)
    assert steps[1].status == StepStatus.NOT_READY
    assert (await repo.get_run(run.id)).status == RunStatus.CANCELLED

    with pytest.raises(InvalidTransitionError):
        await daemon.cancel_run(run.id)
    with pytest.raises(ValidationError):
        await daemon.cancel_run("missing")


@pytest.mark.asyncio
async def test_permission_denied_step_fails_run(repo, clock):
    daemon = _daemon(repo, clock, permissions={"alice": ["playbook.execute.system"]})
    launcher = PlaybookLauncher(repo, clock=clock)
    definition = make_definition(system_step(1), _human_step(2, 1, assignee="bob"))
    run = await launcher.start_run(definition, requested_by="alice")

    finished = await drive(daemon, run.id)
    assert finished.status == RunStatus.FAILED
    assert finished.error.category == ErrorCategory.PERMISSION
    assert finished.error.details["missing_permissions"] == ["playbook.execute.human"]
    assert await repo.list_tasks(run_id=run.id) == []


@pytest.mark.asyncio
async def test_orphaned_step_is_recovered_as_timeout(repo, clock):
    daemon = _daemon(repo, clock)
    launcher = PlaybookLauncher(repo, clock=clock)
    run = await launcher.start_run(make_definition(system_step(1)), requested_by="alice")

    # a crashed coordinator left the step in progress without a lease
    step = (await repo.get_steps(run.id))[0]
    step.status = StepStatus.IN_PROGRESS
    await repo.save_step(step)

    await daemon.run_cycle()
    recovered = await repo.get_step(step.id)
    assert recovered.status == StepStatus.RETRY_PENDING
    assert recovered.last_error.category == ErrorCategory.TIMEOUT

    finished = await drive(daemon, run.id, clock=clock, advance=1)
    assert finished.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_orphan_recovery_releases_dead_attempt_record(repo, clock):
    # lease of 70s, well below the 300s stuck threshold
    daemon = _daemon(repo, clock, handler_timeout=10)
    launcher = PlaybookLauncher(repo, clock=clock)
    run = await launcher.start_run(make_definition(system_step(1)), requested_by="alice")

    step = (await repo.get_steps(run.id))[0]
    step.status = StepStatus.IN_PROGRESS
    await repo.save_step(step)
    assert await repo.claim_step(
        step.id, "dead", clock() + timedelta(seconds=70), clock()
    )
    key, operation = step_idempotency(run.id, step)
    record_id = await daemon.idempotency.record(key, operation, run.organization_id)

    clock.advance(71)
    finished = await drive(daemon, run.id, clock=clock, advance=1)
    assert finished.status == RunStatus.COMPLETED

    steps = await repo.get_steps(run.id)
    assert steps[0].retry_count == 1
    abandoned = await repo.get_idempotency_record(record_id)
    assert abandoned.status == IdempotencyStatus.FAILED


@pytest.mark.asyncio
async def test_optional_failure_does_not_fail_run(repo, clock):
    daemon = _daemon(repo, clock)
    launcher = PlaybookLauncher(repo, clock=clock)
    optional = system_step(1, operation="validate", required_fields=["email"])
    optional.required = False
    definition = make_definition(optional, system_step(2, 1, kind="any"))
    run = await launcher.start_run(definition, requested_by="alice")

    finished = await drive(daemon, run.id)
    assert finished.status == RunStatus.COMPLETED
    steps = await repo.get_steps(run.id)
    assert [s.status for s in steps] == [StepStatus.FAILED, StepStatus.COMPLETED]


@pytest.mark.asyncio
async def test_organization_filter(repo, clock):
    daemon = _daemon(repo, clock, organizations=["org-2"])
    launcher = PlaybookLauncher(repo, clock=clock)
    run = await launcher.start_run(make_definition(system_step(1)), requested_by="alice")
    await daemon.run_cycle()
    assert (await repo.get_run(run.id)).status == RunStatus.QUEUED


@pytest.mark.asyncio
async def test_start_stop_lifecycle(repo):
    config = _config(polling_interval=0.01, drain_timeout=5)
    daemon = OrchestratorDaemon(repo, build_registry(repo, config), config)
    launcher = PlaybookLauncher(repo, daemon=daemon)

    await daemon.start()
    assert daemon.get_status().running
    run = await launcher.start_run(
        make_definition(system_step(1), system_step(2, 1)), requested_by="alice"
    )
    for _ in range(200):
        stored = await repo.get_run(run.id)
        if stored.is_terminal:
            break
        await asyncio.sleep(0.01)
    await daemon.stop()

    assert stored.status == RunStatus.COMPLETED
    status = daemon.get_status()
    assert not status.running
    assert status.cycles > 0
    assert status.in_flight_claims == 0
    assert status.config["polling_interval"] == 0.01
    assert "permissions" not in status.config


@pytest.mark.asyncio
async def test_end_to_end_on_sqlite(tmp_path, clock):
    repo = SQLitePlaybookRepository(tmp_path / "orchestrator.db")
    daemon = _daemon(repo, clock)
    launcher = PlaybookLauncher(repo, clock=clock)
    definition = make_definition(
        system_step(1, mapping={"n": "${input.n}"}),
        system_step(2, 1, mapping={"n": "${steps.1.n}", "ok": True}),
    )
    run = await launcher.start_run(definition, {"n": 3}, requested_by="alice")
    finished = await drive(daemon, run.id)
    assert finished.status == RunStatus.COMPLETED
    assert finished.output_payload["2"] == {"n": 3, "ok": True}
