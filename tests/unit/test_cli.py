import asyncio
import textwrap

import pytest
from typer.testing import CliRunner

import playbook_orchestrator.persistence as persistence
from playbook_orchestrator.cli import app
from playbook_orchestrator.contracts import RunStatus, StepStatus
from playbook_orchestrator.launcher import PlaybookLauncher
from playbook_orchestrator.persistence import InMemoryPlaybookRepository, TaskAssignment
from conftest import make_definition, system_step

runner = CliRunner()

PLAYBOOK = textwrap.dedent(
    """
    id: onboarding
    organization_id: org-1
    name: Customer onboarding
    steps:
      - sequence: 1
        name: normalize
        worker_type: system
        config:
          operation: transform
          mapping: {customer: "${input.customer_id}"}
      - sequence: 2
        name: welcome
        worker_type: system
        dependencies: [{step_number: 1}]
        config:
          operation: notify
          recipient: ops@example.com
    """
)


@pytest.fixture
def cli_repo(monkeypatch):
    repo = InMemoryPlaybookRepository()
    monkeypatch.setattr(persistence, "_repository_instance", repo)
    monkeypatch.delenv("PLAYBOOK_ORCHESTRATOR_CONFIG", raising=False)
    return repo


def _human_task(repo):
    async def _setup():
        run = await PlaybookLauncher(repo).start_run(make_definition(system_step(1)))
        step = (await repo.get_steps(run.id))[0]
        step.status = StepStatus.IN_PROGRESS
        step.awaiting_signal = True
        await repo.save_step(step)
        task = TaskAssignment(
            organization_id="org-1",
            run_id=run.id,
            step_id=step.id,
            sequence=1,
            title="Approve",
            assignee="bob",
        )
        await repo.create_task(task)
        return run, step, task

    return asyncio.run(_setup())


def test_runs_start_list_and_show(cli_repo, tmp_path):
    path = tmp_path / "onboarding.yaml"
    path.write_text(PLAYBOOK)

    result = runner.invoke(
        app, ["runs", "start", str(path), "--input", '{"customer_id": "c-1"}', "--user", "alice"]
    )
    assert result.exit_code == 0, result.stdout
    run_id, correlation_id, status = result.stdout.strip().split("\t")
    assert correlation_id.startswith("WF-")
    assert status == "queued"

    result = runner.invoke(app, ["runs", "list"])
    assert result.exit_code == 0
    assert f"{run_id}\tonboarding\tqueued" in result.stdout

    result = runner.invoke(app, ["runs", "list", "--status", "completed"])
    assert "No runs found" in result.stdout

    result = runner.invoke(app, ["runs", "show", run_id])
    assert result.exit_code == 0
    assert f"Run {run_id}: queued" in result.stdout
    assert "- 1 normalize [system]: pending" in result.stdout
    assert "- 2 welcome [system]: not_ready" in result.stdout


def test_runs_start_missing_file_and_bad_input(cli_repo, tmp_path):
    result = runner.invoke(app, ["runs", "start", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
    assert "Specified playbook does not exist" in result.stdout

    path = tmp_path / "onboarding.yaml"
    path.write_text(PLAYBOOK)
    result = runner.invoke(app, ["runs", "start", str(path), "--input", "[1, 2]"])
    assert result.exit_code == 2


def test_runs_start_reports_invalid_playbook(cli_repo, tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text(PLAYBOOK.replace("worker_type: system", "worker_type: psychic", 1))
    result = runner.invoke(app, ["runs", "start", str(path)])
    assert result.exit_code == 1
    assert "configuration:" in result.stdout


def test_runs_show_missing(cli_repo):
    result = runner.invoke(app, ["runs", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Run not found" in result.stdout


def test_runs_cancel(cli_repo):
    run, _, task = _human_task(cli_repo)
    result = runner.invoke(app, ["runs", "cancel", run.id, "--reason", "customer withdrew"])
    assert result.exit_code == 0
    assert f"Run {run.id}: cancelled" in result.stdout

    stored = asyncio.run(cli_repo.get_run(run.id))
    assert stored.status == RunStatus.CANCELLED
    assert stored.context["cancel_reason"] == "customer withdrew"

    again = runner.invoke(app, ["runs", "cancel", run.id])
    assert again.exit_code == 1
    assert "validation:" in again.stdout


def test_tasks_complete(cli_repo):
    run, step, task = _human_task(cli_repo)
    result = runner.invoke(
        app, ["tasks", "complete", task.id, "--output", '{"approved": true}', "--user", "bob"]
    )
    assert result.exit_code == 0
    assert f"Task {task.id}: completed" in result.stdout

    stored = asyncio.run(cli_repo.get_step(step.id))
    assert stored.status == StepStatus.COMPLETED
    assert stored.output_data == {"approved": True, "task_id": task.id, "completed_by": "bob"}

    again = runner.invoke(app, ["tasks", "complete", task.id])
    assert again.exit_code == 1


def test_tasks_reject(cli_repo):
    _, step, task = _human_task(cli_repo)
    result = runner.invoke(app, ["tasks", "reject", task.id, "--reason", "incomplete documents"])
    assert result.exit_code == 0
    assert f"Task {task.id}: rejected" in result.stdout

    stored = asyncio.run(cli_repo.get_step(step.id))
    assert stored.status == StepStatus.FAILED
    assert stored.last_error.message == "Task rejected: incomplete documents"
