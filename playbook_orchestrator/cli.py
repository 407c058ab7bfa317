"""Command line interface for operating the playbook orchestrator."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Optional, Tuple

import typer

from .config import OrchestratorConfig, load_config
from .contracts import RunStatus
from .daemon import OrchestratorDaemon
from .definitions import load_playbook
from .exceptions import OrchestratorError
from .launcher import PlaybookLauncher
from .persistence import PlaybookRepository, get_repository
from .workers import build_registry

app = typer.Typer(help="CLI for the playbook orchestrator")

runs_app = typer.Typer(help="Commands for managing runs")
tasks_app = typer.Typer(help="Commands for answering human tasks")

app.add_typer(runs_app, name="runs")
app.add_typer(tasks_app, name="tasks")

ConfigOption = typer.Option(None, "--config", "-c", help="Path to a YAML config file")


@app.callback()
def main() -> None:
    """Playbook orchestrator CLI entry point."""
    pass


def _setup(config_path: Optional[Path]) -> Tuple[OrchestratorConfig, PlaybookRepository]:
    config = load_config(str(config_path) if config_path else None)
    # an explicit config file selects its own backend
    return config, get_repository(config=config if config_path else None)


def _daemon(config: OrchestratorConfig, repository: PlaybookRepository) -> OrchestratorDaemon:
    return OrchestratorDaemon(repository, build_registry(repository, config), config)


def _parse_json(value: Optional[str], option: str) -> dict:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except ValueError:
        typer.secho(f"{option} must be valid JSON", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    if not isinstance(data, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    return data


def _fail(exc: OrchestratorError) -> None:
    typer.secho(f"{exc.category.value}: {exc.message}", fg=typer.colors.RED)
    raise typer.Exit(code=1)


@app.command("serve")
def serve(
    config_path: Optional[Path] = ConfigOption,
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run until interrupted)"
    ),
) -> None:
    """
    Run the orchestrator daemon.

    Polls the configured repository for queued and in-progress runs and
    dispatches their ready steps. SIGINT or SIGTERM stops the daemon after
    draining in-flight steps.

    Example:
        playbook-orchestrator serve --config config.yaml
    """
    config, repository = _setup(config_path)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    daemon = _daemon(config, repository)

    async def _serve() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError):
                pass
        await daemon.start()
        try:
            await asyncio.wait_for(stop.wait(), lifespan)
        except asyncio.TimeoutError:
            pass
        finally:
            await daemon.stop()

    typer.echo(f"Starting orchestrator {daemon.instance_id}")
    asyncio.run(_serve())


@runs_app.command("start")
def runs_start(
    playbook: Path,
    input_json: Optional[str] = typer.Option(None, "--input", help="Run input as JSON"),
    user: Optional[str] = typer.Option(None, help="User the run is requested by"),
    idempotency_key: Optional[str] = typer.Option(None, help="Deduplicate repeated starts"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Start a run of the playbook defined in a YAML file.

    Example:
        playbook-orchestrator runs start onboarding.yaml --input '{"customer_id": "c-1"}'
    """
    if not playbook.exists():
        typer.secho("Specified playbook does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    config, repository = _setup(config_path)
    payload = _parse_json(input_json, "--input")
    launcher = PlaybookLauncher(repository, build_registry(repository, config))
    try:
        definition = load_playbook(playbook)
        run = asyncio.run(
            launcher.start_run(
                definition,
                payload,
                requested_by=user,
                idempotency_key=idempotency_key,
            )
        )
    except OrchestratorError as exc:
        _fail(exc)
    typer.echo(f"{run.id}\t{run.correlation_id}\t{run.status.value}")


@runs_app.command("list")
def runs_list(
    status: Optional[RunStatus] = typer.Option(None, help="Only runs with this status"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """List runs with their current status."""
    config, repository = _setup(config_path)
    runs = asyncio.run(
        repository.list_runs([status] if status else None, config.organizations or None)
    )
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.playbook_id}\t{run.status.value}")


@runs_app.command("show")
def runs_show(run_id: str, config_path: Optional[Path] = ConfigOption) -> None:
    """Show a run and the status of each of its steps."""
    _, repository = _setup(config_path)

    async def _load():
        return await repository.get_run(run_id), await repository.get_steps(run_id)

    run, steps = asyncio.run(_load())
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.status.value}")
    if run.error:
        typer.echo(f"Error: {run.error.category.value}: {run.error.message}")
    for step in steps:
        line = f"- {step.sequence} {step.name} [{step.worker_type.value}]: {step.status.value}"
        if step.retry_count:
            line += f" (retries: {step.retry_count})"
        typer.echo(line)


@runs_app.command("cancel")
def runs_cancel(
    run_id: str,
    reason: Optional[str] = typer.Option(None, help="Reason recorded on the run"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Cancel a run. Steps already executing are not interrupted."""
    config, repository = _setup(config_path)
    try:
        run = asyncio.run(_daemon(config, repository).cancel_run(run_id, reason))
    except OrchestratorError as exc:
        _fail(exc)
    typer.echo(f"Run {run.id}: {run.status.value}")


@tasks_app.command("complete")
def tasks_complete(
    task_id: str,
    output_json: Optional[str] = typer.Option(None, "--output", help="Task result as JSON"),
    user: Optional[str] = typer.Option(None, help="User completing the task"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Complete a human task, completing the step that waits on it."""
    config, repository = _setup(config_path)
    output = _parse_json(output_json, "--output")
    try:
        task = asyncio.run(_daemon(config, repository).complete_task(task_id, output, user))
    except OrchestratorError as exc:
        _fail(exc)
    typer.echo(f"Task {task.id}: {task.status.value}")


@tasks_app.command("reject")
def tasks_reject(
    task_id: str,
    reason: str = typer.Option(..., help="Why the task is rejected"),
    user: Optional[str] = typer.Option(None, help="User rejecting the task"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Reject a human task, failing the step that waits on it."""
    config, repository = _setup(config_path)
    try:
        task = asyncio.run(_daemon(config, repository).reject_task(task_id, reason, user))
    except OrchestratorError as exc:
        _fail(exc)
    typer.echo(f"Task {task.id}: {task.status.value}")


if __name__ == "__main__":
    app()
