"""Command line interface for cadence schedules, workers and runs."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

import typer

from .config import CadenceConfig, load_config
from .constants import DEFAULT_RECENT_RUNS_LIMIT, DEFAULT_UPCOMING_LIMIT
from .contracts import CronJobRecord
from .errors import NotFoundError
from .generation import trigger_generation
from .runtime import Cadence, build_cadence

app = typer.Typer(help="CLI for cadence recurring jobs and workflow runs")

# Command groups
schedule_app = typer.Typer(help="Commands for managing schedules")
worker_app = typer.Typer(help="Commands for running workers")
runs_app = typer.Typer(help="Commands for inspecting workflow runs")

app.add_typer(schedule_app, name="schedule")
app.add_typer(worker_app, name="worker")
app.add_typer(runs_app, name="runs")

_state: dict = {}


@app.callback()
def main(
    config_path: Optional[str] = typer.Option(
        None, "--config", help="Path to a YAML config file"
    ),
) -> None:
    """Cadence CLI entry point."""
    config = load_config(config_path)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config"] = config


def _cadence() -> Cadence:
    config: CadenceConfig = _state.get("config") or load_config()
    return build_cadence(config)


def _format_job(job: CronJobRecord) -> str:
    kind = "repeating" if job.is_repeating else "once"
    return (
        f"{job.external_job_id}\t{job.scheduled_time.isoformat()}\t"
        f"day {job.day_of_month}\t{kind}\t{job.status.value}"
        + (f"\t{job.error}" if job.error else "")
    )


@schedule_app.command("establish")
def schedule_establish(
    subject_id: str,
    base_time: Optional[str] = typer.Option(
        None, help="ISO 8601 base time for the schedule (default: now)"
    ),
) -> None:
    """
    Cancel a subject's pending jobs and create a fresh schedule.

    Creates a one-time job 25 days after the base time and a repeating job
    30 days after that, whose day of month becomes the recurring day.

    Example:
        cadence schedule establish client-42
        cadence schedule establish client-42 --base-time 2024-01-01T09:00:00+00:00
    """
    base = datetime.fromisoformat(base_time) if base_time else None
    cadence = _cadence()
    try:
        result = asyncio.run(cadence.orchestrator.establish_schedule(subject_id, base))
    except NotFoundError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    if result.scheduled_count == 0:
        typer.echo(f"Scheduling disabled for {subject_id}; nothing scheduled")
        return
    typer.echo(f"Scheduled {result.scheduled_count} jobs (schedule {result.schedule_id})")
    for job_id in result.job_ids:
        typer.echo(f"- {job_id}")


@schedule_app.command("list")
def schedule_list(subject_id: str) -> None:
    """List every job recorded for a subject, oldest first."""
    cadence = _cadence()
    jobs = asyncio.run(cadence.orchestrator.list_jobs(subject_id))
    if not jobs:
        typer.echo("No jobs found")
        return
    for job in jobs:
        typer.echo(_format_job(job))


@schedule_app.command("upcoming")
def schedule_upcoming(
    owner: Optional[str] = typer.Option(None, help="Only jobs owned by this email"),
    limit: int = typer.Option(DEFAULT_UPCOMING_LIMIT, help="Maximum jobs to show"),
) -> None:
    """List scheduled jobs that have not fired yet, soonest first."""
    cadence = _cadence()
    jobs = asyncio.run(cadence.orchestrator.upcoming(owner_email=owner, limit=limit))
    if not jobs:
        typer.echo("No upcoming jobs")
        return
    for job in jobs:
        typer.echo(f"{job.subject_id}\t{_format_job(job)}")


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Worker timeout in seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run a worker that fires due jobs and backstops.

    Overdue scheduled jobs are re-armed on start when
    ``executor.reconcile_on_start`` is enabled.

    Example:
        cadence worker run
        cadence worker run --lifespan 60
    """
    cadence = _cadence()
    typer.echo(f"Starting worker ({type(cadence.executor).__name__})")
    asyncio.run(cadence.run_worker(lifespan=lifespan))


@runs_app.command("list")
def runs_list(
    subject_id: Optional[str] = typer.Argument(None),
    owner: Optional[str] = typer.Option(None, help="Only runs owned by this email"),
    limit: int = typer.Option(DEFAULT_RECENT_RUNS_LIMIT, help="Maximum runs to show"),
) -> None:
    """List workflow runs for a subject, or the most recent runs overall."""
    cadence = _cadence()
    if subject_id:
        runs = asyncio.run(cadence.tracker.list_runs(subject_id, limit=limit))
    else:
        runs = asyncio.run(cadence.tracker.list_recent_runs(owner_email=owner, limit=limit))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.subject_id}\t{run.status.value}\t{run.created_at.isoformat()}")


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """Show a run's status and its full step log."""
    cadence = _cadence()
    run = asyncio.run(cadence.tracker.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.status.value}")
    if run.correlation_id:
        typer.echo(f"Correlation ID: {run.correlation_id}")
    if run.error:
        typer.echo(f"Error: {run.error}")
    for step in run.steps:
        typer.echo(
            f"- {step.name}: {step.status.value} ({step.timestamp.isoformat()})"
            + (f" {step.detail}" if step.detail else "")
        )


@app.command("generate")
def generate(subject_id: str) -> None:
    """
    Trigger generation for a subject now and track it as a run.

    Example:
        cadence generate client-42
    """
    cadence = _cadence()
    subject = asyncio.run(cadence.subjects.get_subject(subject_id))
    if subject is None:
        typer.secho(f"Subject not found: {subject_id}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    run = asyncio.run(trigger_generation(subject, cadence.client, cadence.tracker))
    typer.echo(f"Run {run.id}: {run.status.value}")
    if run.error:
        typer.secho(f"Error: {run.error}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
