"""Root ``distill`` command group and the shared runtime it hands to commands."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import click

from ..config import DistillConfig, load_config
from ..errors import DistillError, ServiceUnavailable

logger = logging.getLogger(__name__)

# Exit status when a required service is unreachable at start
EXIT_UNAVAILABLE = 2


class Runtime:
    """Lazily built services shared by every subcommand.

    Tests pass a Runtime with fakes through ``CliRunner.invoke(..., obj=...)``.
    """

    def __init__(
        self, config: DistillConfig, vector_store: Any = None, llm: Any = None
    ) -> None:
        self.config = config
        self._vector_store = vector_store
        self._llm = llm

    @property
    def vector_store(self) -> Any:
        if self._vector_store is None:
            from ..clients import QdrantVectorStore

            self._vector_store = QdrantVectorStore(
                self.config.qdrant_url,
                timeout=self.config.http_timeout,
                health_timeout=self.config.health_timeout,
            )
        return self._vector_store

    @property
    def llm(self) -> Any:
        """Generation + embedding service."""
        if self._llm is None:
            from ..clients import OllamaClient

            self._llm = OllamaClient(
                self.config.ollama_url,
                model=self.config.generation_model,
                embedding_model=self.config.embedding_model,
                timeout=self.config.generation_timeout,
                embed_timeout=self.config.http_timeout,
                health_timeout=self.config.health_timeout,
            )
        return self._llm

    def require(self, qdrant: bool = False, ollama: bool = False) -> None:
        """Health-check the named services before anything is mutated.

        Raises:
            ServiceUnavailable: A required service did not answer.
        """
        if qdrant and not self.vector_store.health():
            raise ServiceUnavailable("qdrant", f"no answer from {self.config.qdrant_url}")
        if ollama and not self.llm.health():
            raise ServiceUnavailable("ollama", f"no answer from {self.config.ollama_url}")

    def rule_store(self):
        from ..learn.store import RuleStore
        from ..storage import FileSystemDocumentBackend

        return RuleStore(
            FileSystemDocumentBackend(self.config.rules_path), self.config.max_active_rules
        )

    def rule_manager(self):
        from ..learn.rules import RuleManager
        from ..learn.validation import RuleValidator

        validator = None
        if self.config.validate_rules and self.config.approval_mode == "autonomous":
            validator = RuleValidator(self.llm)
        return RuleManager(self.rule_store(), self.config, validator=validator)

    def job_queue(self):
        from ..learn.jobs import JobQueue
        from ..storage import FileSystemDocumentBackend

        return JobQueue(FileSystemDocumentBackend(self.config.jobs_path))

    def scorer(self):
        from ..learn.scorer import QualityScorer

        return QualityScorer(self.vector_store, self.llm, self.config)

    def insight_extractor(self):
        from ..learn.insights import InsightExtractor

        return InsightExtractor(self.vector_store, self.llm, self.rule_manager(), self.config)

    def reflection_generator(self):
        from ..learn.reflections import ReflectionGenerator

        return ReflectionGenerator(
            self.vector_store, self.llm, self.llm, self.rule_manager(), self.config
        )

    def reinforcement_tracker(self):
        from ..learn.reinforcement import ReinforcementTracker

        return ReinforcementTracker(self.rule_store(), self.config, self.vector_store, self.llm)


pass_runtime = click.make_pass_decorator(Runtime)


class DistillGroup(click.Group):
    """Maps distill errors onto exit codes instead of tracebacks."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except ServiceUnavailable as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(EXIT_UNAVAILABLE)
        except DistillError as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(1)


def _configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        name = os.environ.get("DISTILL_LOG_LEVEL", "WARNING").upper()
        level = getattr(logging, name, logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@click.group(cls=DistillGroup)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="DISTILL_CONFIG",
    default=None,
    help="JSON config file (overrides defaults and DISTILL_* environment).",
)
@click.option("-v", "--verbose", count=True, help="Log progress (-v) or debug detail (-vv).")
@click.version_option(package_name="distill")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, verbose: int) -> None:
    """distill turns session logs into durable, reusable rules.

    \b
    Pipeline:
        score  →  extract-insights  →  apply / prune
        generate-reflections  ──────┘
    """
    _configure_logging(verbose)
    if ctx.obj is not None:
        return

    config = load_config(config_path)
    problems = config.validate()
    if problems:
        raise click.UsageError("; ".join(problems))
    ctx.obj = Runtime(config)


def echo_rule(rule, prefix: str = "  ") -> None:
    """One summary line per rule."""
    categories = ",".join(rule.categories) or "general"
    click.echo(
        f"{prefix}[{rule.id}] ({rule.status.value}, {categories}, "
        f"reinforced {rule.reinforcement_count}x) {rule.text}"
    )


def echo_summary(**counts: int) -> None:
    click.echo("Summary: " + "  ".join(f"{name}={value}" for name, value in counts.items()))
