"""CLI commands for the learning stages: score, extract, reflect, track."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import click

from .main import Runtime, echo_summary, main, pass_runtime


@main.command()
@click.option(
    "--pending-only/--all",
    default=True,
    help="Score only pending chunks (default), or every chunk again.",
)
@click.option("--session", "session_id", default=None, help="Only score chunks from this session.")
@click.option("--rescore", is_flag=True, default=False, help="Overwrite existing scores.")
@click.option(
    "--mark-pending",
    is_flag=True,
    default=False,
    help="First flag unscored chunks as pending.",
)
@click.option("--stats", "show_stats", is_flag=True, default=False, help="Only show score stats.")
@click.option(
    "--prefilter/--no-prefilter",
    default=None,
    help="Score obvious noise by heuristics (config default), or send every chunk to the model.",
)
@pass_runtime
def score(
    rt: Runtime,
    pending_only: bool,
    session_id: str | None,
    rescore: bool,
    mark_pending: bool,
    show_stats: bool,
    prefilter: bool | None,
) -> None:
    """Score pending session chunks 0-10 for usefulness.

    By default a heuristic pre-filter scores obvious noise, such as stack
    traces or encoded blobs, without a model call. Only the rest is sent to
    the model. Use --no-prefilter to send every chunk.

    Chunks whose reply cannot be parsed stay pending and are retried by the
    next run.

    \b
    Examples:
        distill score                    # Score one batch of pending chunks
        distill score --session abc123   # Only one session
        distill score --all              # Re-score everything in the batch window
        distill score --stats            # Distribution of stored scores
        distill score --no-prefilter     # Ask the model about every chunk
    """
    scorer = rt.scorer()
    if prefilter is not None:
        scorer.config = replace(scorer.config, prefilter_enabled=prefilter)

    if show_stats:
        rt.require(qdrant=True)
        stats = scorer.score_stats()
        click.echo(f"Total chunks: {stats.total}")
        click.echo(f"Scored:       {stats.scored}  (average {stats.average:.1f})")
        click.echo(f"Pending:      {stats.pending}")
        click.echo(f"Unscored:     {stats.unscored}")
        for value in sorted(stats.distribution):
            count = stats.distribution[value]
            click.echo(f"  {value:2d}: {'#' * min(count, 50)} {count}")
        return

    rt.require(qdrant=True, ollama=True)

    if mark_pending:
        marked = scorer.mark_pending(session_id)
        click.echo(f"Marked {marked} chunk(s) as pending.")

    result = scorer.score_pending(session_id=session_id, rescore=rescore or not pending_only)
    if not result.selected:
        click.echo("No chunks to score.")
        return

    click.echo(
        f"Scored {result.scored} of {result.selected} chunk(s) "
        f"({result.prefiltered} by heuristics)."
    )
    if result.skipped:
        click.echo(f"Time budget exhausted: {result.skipped} chunk(s) left pending.")
    echo_summary(
        processed=result.selected - result.skipped,
        applied=result.scored,
        skipped=result.skipped,
        failed=result.failed,
    )


@main.command("extract-insights")
@click.option("--dry-run", is_flag=True, default=False, help="Show candidates without storing.")
@pass_runtime
def extract_insights(rt: Runtime, dry_run: bool) -> None:
    """Mine rules by contrasting high- and low-quality chunks."""
    rt.require(qdrant=True, ollama=True)
    result = rt.insight_extractor().extract_insights(dry_run=dry_run)

    click.echo(
        f"Found {result.high_count} high-quality and {result.low_count} low-quality chunk(s)."
    )
    if result.status == "insufficient-data":
        click.echo("Insufficient data: need both high- and low-quality chunks. Run `score` first.")
        return

    click.echo(f"Compared {result.pairs} pair(s) in {result.batches} batch(es).")
    if result.batches_failed:
        click.echo(f"{result.batches_failed} batch(es) failed and were skipped.")
    for reason, count in sorted(result.rejected.items()):
        click.echo(f"  {reason}: {count}")
    if dry_run:
        click.echo("Dry run: nothing stored.")
    echo_summary(
        processed=result.candidates_found,
        applied=result.applied,
        proposed=result.proposed,
        skipped=sum(result.rejected.values()),
        failed=result.batches_failed,
    )


@main.command("generate-reflections")
@click.argument("session_id", required=False)
@click.option(
    "--sessions-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory of JSON session exports. Defaults to the configured sessions_dir.",
)
@pass_runtime
def generate_reflections(rt: Runtime, session_id: str | None, sessions_dir: Path | None) -> None:
    """Turn failures found in session transcripts into reflections and rules.

    SESSION_ID may be a session id (looked up in the sessions directory) or a
    path to one JSON export.
    """
    rt.require(qdrant=True, ollama=True)
    result = rt.reflection_generator().generate_reflections(sessions_dir, session_id)

    if not result.sessions:
        click.echo("No sessions found.")
        return
    click.echo(
        f"Processed {result.sessions} session(s), {result.failures} failure signal(s); "
        f"stored {result.reflections_stored} reflection(s)."
    )
    echo_summary(
        processed=result.failures,
        applied=result.reflections_stored,
        rules=result.rules_added,
        failed=result.failed,
    )


@main.command()
@pass_runtime
def track(rt: Runtime) -> None:
    """Reinforce active rules that recent high-quality sessions agree with."""
    rt.require(qdrant=True, ollama=True)
    result = rt.reinforcement_tracker().track()
    for rule_id, count in sorted(result.reinforced.items()):
        click.echo(f"  [{rule_id}] +{count}")
    echo_summary(
        processed=result.rules_checked,
        applied=len(result.reinforced),
        failed=result.failed,
    )


@main.command()
@click.option("--dry-run", is_flag=True, default=False, help="Report without changing rules.")
@pass_runtime
def maintenance(rt: Runtime, dry_run: bool) -> None:
    """Periodic upkeep: extract insights, track reinforcement, prune stale rules."""
    rt.require(qdrant=True, ollama=True)

    click.echo("[1/4] Extracting insights...")
    insights = rt.insight_extractor().extract_insights(dry_run=dry_run)
    if insights.status == "insufficient-data":
        click.echo("  Insufficient data, skipped.")
    else:
        click.echo(
            f"  {insights.candidates_found} candidate(s), {insights.applied} applied, "
            f"{insights.proposed} proposed."
        )

    click.echo("[2/4] Tracking reinforcement...")
    if dry_run:
        click.echo("  Skipped (dry run).")
    else:
        tracked = rt.reinforcement_tracker().track()
        click.echo(f"  {len(tracked.reinforced)} of {tracked.rules_checked} rule(s) reinforced.")

    click.echo("[3/4] Pruning stale rules...")
    manager = rt.rule_manager()
    if dry_run:
        stale = manager.review().stale_prune_candidates
        click.echo(f"  {len(stale)} rule(s) would be pruned.")
    else:
        pruned = manager.prune_stale()
        click.echo(f"  {len(pruned.pruned)} pruned, {len(pruned.flagged)} aging.")

    click.echo("[4/4] Stats")
    stats = rt.reinforcement_tracker().stats()
    click.echo(
        "  " + "  ".join(f"{status}={count}" for status, count in stats.by_status.items())
    )
    click.echo(f"  average reinforcement {stats.average_reinforcement:.1f}, proven {stats.proven}")
