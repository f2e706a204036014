"""Command line interface for validating and running gantry pipelines."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Dict, List, Optional

import typer
import yaml

from gantry import (
    CancellationToken,
    PipelineRun,
    Scheduler,
    TriggerContext,
    get_registry,
    get_repository,
    load_config,
    load_workflow_file,
)
from gantry.contracts import JobState
from gantry.errors import DefinitionError, InvalidTriggerInput

app = typer.Typer(help="CLI for gantry pipelines")

runs_app = typer.Typer(help="Commands for inspecting recorded runs")
app.add_typer(runs_app, name="runs")

_STATE_COLORS = {
    JobState.SUCCEEDED: typer.colors.GREEN,
    JobState.FAILED: typer.colors.RED,
    JobState.CANCELLED: typer.colors.YELLOW,
    JobState.SKIPPED: typer.colors.BRIGHT_BLACK,
}


@app.callback()
def main() -> None:
    """Gantry CLI entry point."""
    pass


def _load(path: Path):
    try:
        return load_workflow_file(path)
    except FileNotFoundError:
        typer.secho(f"Workflow file not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except DefinitionError as exc:
        typer.secho(f"Invalid workflow {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_pairs(pairs: List[str], option: str) -> Dict[str, str]:
    parsed: Dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise typer.BadParameter(f"expected NAME=VALUE, got {pair!r}", param_hint=option)
        name, value = pair.split("=", 1)
        parsed[name.strip()] = value
    return parsed


def _repository(config_path: Optional[Path]):
    if config_path is None:
        return get_repository()
    return get_repository(config=load_config(str(config_path)))


def _read_secrets_file(path: Path) -> Dict[str, str]:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise typer.BadParameter("secrets file must hold a mapping", param_hint="--secrets-file")
    return {str(name): str(value) for name, value in data.items() if value is not None}


@app.command("validate")
def validate(workflow_path: Path) -> None:
    """
    Parse and validate a workflow file.

    Checks job identifiers, dependency references, cycles and every expression
    without running anything.

    Example:
        gantry validate .github/workflows/release.yml
    """
    definition = _load(workflow_path)
    typer.secho(
        f"Workflow {definition.name or workflow_path.name} is valid", fg=typer.colors.GREEN
    )
    for job in definition.jobs:
        line = f"- {job.id}: uses {job.uses}"
        if job.needs:
            line += f" (needs {', '.join(job.needs)})"
        if job.condition is not None:
            line += f" if {job.condition.source}"
        typer.echo(line)


@app.command("plan")
def plan(
    workflow_path: Path,
    job: Optional[str] = typer.Option(None, help="Only the stages needed to run this job"),
) -> None:
    """
    Print the stages in which jobs may run.

    Jobs in the same stage have no dependency on one another and run
    concurrently, subject to the scheduler's concurrency limit.

    Example:
        gantry plan release.yml
        # Output: Stage 1: lint
        #         Stage 2: build, test
        #         Stage 3: deploy
        gantry plan release.yml --job build
    """
    definition = _load(workflow_path)
    graph = definition.graph
    stages = graph.levels()
    if job is not None:
        if job not in graph:
            typer.secho(f"Unknown job {job!r}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        wanted = graph.ancestors(job) | {job}
        stages = [[j for j in stage if j in wanted] for stage in stages]
        stages = [stage for stage in stages if stage]
    for number, stage in enumerate(stages, start=1):
        typer.echo(f"Stage {number}: {', '.join(stage)}")


async def _execute(
    scheduler: Scheduler,
    definition,
    trigger: TriggerContext,
    secrets: Dict[str, str],
) -> PipelineRun:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
        handles_interrupt = True
    except (NotImplementedError, RuntimeError):
        # no signal support outside the main thread or on Windows
        handles_interrupt = False
    try:
        return await scheduler.run(definition, trigger, secrets=secrets, cancel_token=token)
    finally:
        if handles_interrupt:
            loop.remove_signal_handler(signal.SIGINT)
        await scheduler.registry.close()


@app.command("run")
def run(
    workflow_path: Path,
    event: str = typer.Option("workflow_dispatch", help="Name of the triggering event"),
    ref: str = typer.Option("", help="Git ref the run is for, e.g. refs/heads/main"),
    actor: str = typer.Option("", help="User or system that triggered the run"),
    inputs: List[str] = typer.Option([], "--input", "-i", help="Dispatch input NAME=VALUE"),
    secrets: List[str] = typer.Option([], "--secret", "-s", help="Secret NAME=VALUE"),
    secrets_file: Optional[Path] = typer.Option(None, help="YAML mapping of secrets"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Configuration file"),
    log_level: Optional[str] = typer.Option(None, help="Logging level"),
) -> None:
    """
    Execute a workflow with the configured collaborators.

    Every job's ``uses:`` must name a collaborator in the configuration.
    Exits with status 1 unless the run succeeds.

    Example:
        gantry run release.yml --ref refs/heads/main -i environment=staging \\
            -s CLUSTER_TOKEN=xyz --config gantry.yaml
    """
    config = load_config(str(config_path) if config_path else None)
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    definition = _load(workflow_path)

    secret_values: Dict[str, str] = {}
    if secrets_file is not None:
        secret_values.update(_read_secrets_file(secrets_file))
    secret_values.update(_parse_pairs(secrets, "--secret"))
    trigger = TriggerContext(
        event_name=event,
        ref=ref,
        actor=actor,
        inputs=_parse_pairs(inputs, "--input"),
    )

    scheduler = Scheduler.from_config(
        config, registry=get_registry(config), repository=_repository(config_path)
    )
    try:
        result = asyncio.run(_execute(scheduler, definition, trigger, secret_values))
    except InvalidTriggerInput as exc:
        typer.secho(f"Invalid trigger: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Run {result.run_id}: {result.status.value}")
    for job_id, report in result.report().items():
        line = f"- {job_id}: {report.state.value}"
        if report.reason:
            line += f" ({report.reason})"
        typer.secho(line, fg=_STATE_COLORS.get(report.state))
    for name, value in result.outputs.items():
        typer.echo(f"output {name}={value}")
    if not result.succeeded:
        raise typer.Exit(code=1)


@runs_app.command("list")
def runs_list(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Configuration file"),
) -> None:
    """
    List recorded runs with their status.

    Example:
        gantry runs list
        # Output: 3f2c...    release    succeeded
    """
    repo = _repository(config_path)
    instances = asyncio.run(repo.list_runs())
    if not instances:
        typer.echo("No runs found")
        return
    for instance in instances:
        typer.echo(f"{instance.run_id}\t{instance.workflow_name or '-'}\t{instance.status}")


@runs_app.command("show")
def runs_show(
    run_id: str,
    config_path: Optional[Path] = typer.Option(None, "--config", help="Configuration file"),
) -> None:
    """
    Show the transition history of a recorded run.

    Example:
        gantry runs show 3f2c9a1e-...
        # Output: Run 3f2c9a1e-...: failed
        #         - lint: pending -> ready -> running -> failed
    """
    repo = _repository(config_path)
    instance = asyncio.run(repo.get_run(run_id))
    if instance is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {instance.run_id}: {instance.status}")
    if instance.trigger:
        typer.echo(f"Trigger: {instance.trigger}")
    history: Dict[str, List[str]] = {}
    for record in instance.transitions:
        history.setdefault(record.job_id, [JobState.PENDING.value]).append(record.state)
    for job_id, states in history.items():
        typer.echo(f"- {job_id}: {' -> '.join(states)}")
    for name, value in (instance.outputs or {}).items():
        typer.echo(f"output {name}={value}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
