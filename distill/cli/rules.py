"""CLI commands for the rule lifecycle: review, apply, prune, revert."""

from __future__ import annotations

import click

from .main import Runtime, echo_rule, echo_summary, main, pass_runtime


@main.command()
@pass_runtime
def review(rt: Runtime) -> None:
    """Show active and proposed rules and stale prune candidates."""
    report = rt.rule_manager().review()

    counts = report.counts
    click.echo(
        f"Active: {counts.get('active', 0)}/{report.max_active_rules}  |  "
        f"Proposed: {counts.get('proposed', 0)}  |  Pruned: {counts.get('pruned', 0)}"
    )
    if report.active:
        click.echo("\nActive rules:")
        for rule in report.active:
            echo_rule(rule)
    if report.proposed:
        click.echo("\nProposed rules (run `distill apply` to activate):")
        for rule in report.proposed:
            echo_rule(rule)
    if report.stale_prune_candidates:
        click.echo("\nStale (would be pruned):")
        for rule in report.stale_prune_candidates:
            echo_rule(rule)


@main.command()
@click.option("--dry-run", is_flag=True, default=False, help="Show the diff without applying.")
@pass_runtime
def apply(rt: Runtime, dry_run: bool) -> None:
    """Activate proposed rules, oldest first, while capacity remains."""
    diff = rt.rule_manager().apply_pending_proposals(dry_run=dry_run)

    if not diff.activated and not diff.deferred:
        click.echo("No proposed rules.")
        return

    verb = "Would activate" if diff.dry_run else "Activated"
    for rule in diff.activated:
        click.echo(f"  {verb}: [{rule.id}] {rule.text}")
    for rule in diff.deferred:
        click.echo(f"  Deferred (capacity): [{rule.id}] {rule.text}")
    if diff.commit_id:
        click.echo(f"Commit {diff.commit_id}")
    echo_summary(
        processed=len(diff.activated) + len(diff.deferred),
        applied=0 if diff.dry_run else len(diff.activated),
        skipped=len(diff.deferred),
        failed=0,
    )


@main.command()
@click.option("--staleness-days", type=float, default=None, help="Age threshold in days.")
@click.option(
    "--min-reinforcement", type=int, default=None, help="Rules reinforced this often survive."
)
@pass_runtime
def prune(rt: Runtime, staleness_days: float | None, min_reinforcement: int | None) -> None:
    """Prune active rules that are stale and under-reinforced."""
    result = rt.rule_manager().prune_stale(
        staleness_days=staleness_days, min_reinforcement=min_reinforcement
    )
    for rule in result.pruned:
        click.echo(f"  Pruned: [{rule.id}] {rule.text}")
    for rule in result.flagged:
        click.echo(f"  Aging:  [{rule.id}] {rule.text}")
    if result.commit_id:
        click.echo(f"Commit {result.commit_id}")
    echo_summary(processed=len(result.pruned) + len(result.flagged), applied=len(result.pruned))


@main.command()
@pass_runtime
def stats(rt: Runtime) -> None:
    """Reinforcement statistics per rule, origin and category."""
    report = rt.reinforcement_tracker().stats()

    click.echo("Rules by status:")
    for status, count in report.by_status.items():
        click.echo(f"  {status:10s} {count}")
    if report.by_origin:
        click.echo("Active rules by origin:")
        for origin, count in sorted(report.by_origin.items()):
            click.echo(f"  {origin:20s} {count}")
    if report.by_category:
        click.echo("Active rules by category:")
        for category, count in report.by_category.items():
            click.echo(f"  {category:15s} {count}")
    if report.per_rule:
        click.echo("Reinforcement per active rule:")
        for rule_id, count, last in report.per_rule:
            click.echo(f"  [{rule_id}] {count:3d}  last {last:%Y-%m-%d}")
    click.echo(
        f"Average reinforcement: {report.average_reinforcement:.1f}  |  Proven: {report.proven}"
    )


@main.command()
@click.argument("text")
@click.option("--dry-run", is_flag=True, default=False, help="Check without storing.")
@pass_runtime
def add(rt: Runtime, text: str, dry_run: bool) -> None:
    """Add a rule by hand (deduplicated, subject to the approval mode)."""
    result = rt.rule_manager().add_rule(text, dry_run=dry_run)
    if result.rule is None:
        click.echo(f"Not added: {result.reason}")
        return
    prefix = "[dry-run] would store" if dry_run else "Stored"
    click.echo(f"{prefix} {result.rule.status.value} rule [{result.rule.id}]: {result.rule.text}")
    if result.reason == "capacity":
        click.echo("Active rule cap reached; staged as proposed.")
    elif result.reason == "unvalidated":
        click.echo("Rule did not pass validation; staged as proposed.")


@main.command()
@click.argument("commit_id")
@pass_runtime
def revert(rt: Runtime, commit_id: str) -> None:
    """Undo one rule-store commit as a new commit."""
    try:
        commit = rt.rule_manager().revert(commit_id)
    except KeyError:
        raise click.BadParameter(f"no commit {commit_id!r}", param_hint="COMMIT_ID") from None
    if commit is None:
        click.echo("Nothing to revert.")
        return
    click.echo(f"Reverted {commit_id} as commit {commit.id} ({len(commit.changes)} rule(s)).")


@main.command()
@click.option("--limit", type=int, default=20, show_default=True)
@pass_runtime
def history(rt: Runtime, limit: int) -> None:
    """List rule-store commits, newest first."""
    commits = rt.rule_manager().history(limit)
    if not commits:
        click.echo("No commits yet.")
        return
    for commit in commits:
        click.echo(
            f"  {commit.id}  v{commit.version}  {commit.timestamp:%Y-%m-%d %H:%M}  "
            f"{commit.message} ({len(commit.changes)})"
        )


@main.command()
@pass_runtime
def sync(rt: Runtime) -> None:
    """Upsert active rules into the vector store for retrieval."""
    rt.require(qdrant=True, ollama=True)
    synced = rt.rule_manager().sync_to_vector_store(rt.vector_store, rt.llm)
    click.echo(f"Synced {synced} active rule(s) to {rt.config.rules_collection}.")
