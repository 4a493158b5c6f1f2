"""CLI commands for the deferred job queue."""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Any

import click

from .main import Runtime, echo_summary, main, pass_runtime

JOB_TYPES = ("score", "extract-insights", "generate-reflections", "track", "prune")


def _handlers(rt: Runtime) -> dict[str, Any]:
    def score(payload: dict[str, Any]) -> None:
        rt.require(qdrant=True, ollama=True)
        rt.scorer().score_pending(session_id=payload.get("session_id"))

    def extract(payload: dict[str, Any]) -> None:
        rt.require(qdrant=True, ollama=True)
        rt.insight_extractor().extract_insights(dry_run=bool(payload.get("dry_run")))

    def reflect(payload: dict[str, Any]) -> None:
        rt.require(qdrant=True, ollama=True)
        rt.reflection_generator().generate_reflections(session_id=payload.get("session_id"))

    def track(payload: dict[str, Any]) -> None:
        rt.require(qdrant=True, ollama=True)
        rt.reinforcement_tracker().track()

    def prune(payload: dict[str, Any]) -> None:
        rt.rule_manager().prune_stale()

    return {
        "score": score,
        "extract-insights": extract,
        "generate-reflections": reflect,
        "track": track,
        "prune": prune,
    }


@main.group()
def jobs() -> None:
    """Queue pipeline work now, run it later."""


@jobs.command("submit")
@click.argument("job_type", type=click.Choice(JOB_TYPES))
@click.option("--payload", default="{}", help="JSON object passed to the job.")
@click.option("--priority", type=int, default=0, show_default=True)
@click.option("--dedupe-key", default=None, help="Skip if a live job has this key.")
@pass_runtime
def submit(
    rt: Runtime, job_type: str, payload: str, priority: int, dedupe_key: str | None
) -> None:
    """Queue one job."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.BadParameter(str(e), param_hint="--payload") from e
    if not isinstance(data, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--payload")

    job = rt.job_queue().submit(job_type, data, priority=priority, dedupe_key=dedupe_key)
    click.echo(f"Job {job.job_id} ({job.type}) is {job.status.value}.")


@jobs.command("run")
@click.option("--limit", type=int, default=10, show_default=True)
@click.option(
    "--requeue-after",
    type=float,
    default=60.0,
    show_default=True,
    help="Minutes after which a running job counts as abandoned.",
)
@pass_runtime
def run(rt: Runtime, limit: int, requeue_after: float) -> None:
    """Run queued jobs (at-least-once)."""
    queue = rt.job_queue()
    requeued = queue.requeue_stale(timedelta(minutes=requeue_after))
    if requeued:
        click.echo(f"Requeued {requeued} abandoned job(s).")
    counts = queue.run_pending(_handlers(rt), limit=limit)
    echo_summary(
        processed=counts["done"] + counts["failed"],
        applied=counts["done"],
        failed=counts["failed"],
    )


@jobs.command("list")
@pass_runtime
def list_jobs(rt: Runtime) -> None:
    """Show every job in the queue."""
    queued = rt.job_queue().list_jobs()
    if not queued:
        click.echo("No jobs.")
        return
    for job in queued:
        line = (
            f"  {job.job_id}  {job.type:22s} {job.status.value:8s} "
            f"p{job.priority} attempts={job.attempts}"
        )
        if job.error:
            line += f"  error: {job.error}"
        click.echo(line)
