"""Central configuration for distill.

This is the SINGLE SOURCE OF TRUTH for pipeline defaults. Every field can be
overridden by a ``DISTILL_*`` environment variable, and any field can also be
set from a JSON config file.

Usage:
    from distill.config import load_config

    config = load_config()                    # defaults + environment
    config = load_config("distill.json")      # ... + file overrides

    # Environment overrides, evaluated when the config is created:
    # DISTILL_QDRANT_URL=http://qdrant:6333
    # DISTILL_APPROVAL_MODE=autonomous
    # DISTILL_MAX_ACTIVE_RULES=40
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .errors import StoreError

logger = logging.getLogger(__name__)

APPROVAL_MODES = ("autonomous", "supervised", "manual")


def _env_str(name: str, default: str) -> str:
    return os.environ.get(name, default)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class DistillConfig:
    """Runtime configuration for the distill pipeline.

    Attributes:
        qdrant_url: Base URL of the Qdrant REST API.
        ollama_url: Base URL of the Ollama API (generation and embeddings).
        generation_model: Ollama model used for scoring, mining and reflections.
        embedding_model: Ollama model used for embeddings.
        vector_size: Embedding dimensionality, used when creating collections.

        sessions_collection: Collection holding embedded session chunks.
        reflections_collection: Collection holding stored reflections.
        rules_collection: Collection active rules are synced into for retrieval.

        http_timeout: Timeout in seconds for vector store calls.
        generation_timeout: Timeout in seconds for one generation call.
        health_timeout: Timeout in seconds for start-up health checks.

        score_batch_limit: Max pending chunks selected per scoring run.
        score_budget_seconds: Wall-clock budget for one scoring run.
        prefilter_enabled: Score obvious noise with heuristics, no model call.

        high_quality_threshold: Chunks scoring at or above this are "high".
        low_quality_threshold: Chunks scoring at or below this are "low".
        min_chunk_chars: Chunks this short are ignored by the insight extractor.
        insight_scan_limit: Max chunks fetched per partition.
        pairs_per_prompt: Contrastive pairs sent in one generation call.
        max_pairs: Cap on pairs per extraction run (0 = no cap).

        approval_mode: autonomous | supervised | manual.
        max_active_rules: Hard cap on simultaneously active rules.
        staleness_days: Days without reinforcement before a rule is stale.
        min_reinforcement: Rules reinforced fewer times than this can be pruned.
        dedup_similarity: Token-overlap similarity treated as a duplicate.
        validate_rules: In autonomous mode, ask the model to vet a rule before
            activating it. Rules that fail are staged as proposed.

        reinforcement_window_days: Session matches older than this are ignored.
        reinforcement_similarity: Minimum vector similarity for a match.
        reinforcement_quality_min: Minimum chunk quality for a match.
        reinforcement_search_limit: Session chunks searched per rule.

        rules_path: JSON document holding rules and their commit log.
        jobs_path: JSON document holding the job queue.
        sessions_dir: Directory of JSON session exports for reflections.
    """

    qdrant_url: str = field(
        default_factory=lambda: _env_str("DISTILL_QDRANT_URL", "http://localhost:6333")
    )
    ollama_url: str = field(
        default_factory=lambda: _env_str("DISTILL_OLLAMA_URL", "http://localhost:11434")
    )
    generation_model: str = field(
        default_factory=lambda: _env_str("DISTILL_GENERATION_MODEL", "qwen2.5-coder:7b")
    )
    embedding_model: str = field(
        default_factory=lambda: _env_str("DISTILL_EMBEDDING_MODEL", "nomic-embed-text")
    )
    vector_size: int = field(default_factory=lambda: _env_int("DISTILL_VECTOR_SIZE", 768))

    sessions_collection: str = field(
        default_factory=lambda: _env_str("DISTILL_SESSIONS_COLLECTION", "session-embeddings")
    )
    reflections_collection: str = field(
        default_factory=lambda: _env_str("DISTILL_REFLECTIONS_COLLECTION", "reflections")
    )
    rules_collection: str = field(
        default_factory=lambda: _env_str("DISTILL_RULES_COLLECTION", "rules")
    )

    http_timeout: float = field(default_factory=lambda: _env_float("DISTILL_HTTP_TIMEOUT", 30.0))
    generation_timeout: float = field(
        default_factory=lambda: _env_float("DISTILL_GENERATION_TIMEOUT", 120.0)
    )
    health_timeout: float = field(
        default_factory=lambda: _env_float("DISTILL_HEALTH_TIMEOUT", 3.0)
    )

    score_batch_limit: int = field(
        default_factory=lambda: _env_int("DISTILL_SCORE_BATCH_LIMIT", 1000)
    )
    score_budget_seconds: float = field(
        default_factory=lambda: _env_float("DISTILL_SCORE_BUDGET_SECONDS", 300.0)
    )
    prefilter_enabled: bool = field(
        default_factory=lambda: _env_bool("DISTILL_PREFILTER_ENABLED", True)
    )

    high_quality_threshold: int = field(
        default_factory=lambda: _env_int("DISTILL_HIGH_QUALITY_THRESHOLD", 7)
    )
    low_quality_threshold: int = field(
        default_factory=lambda: _env_int("DISTILL_LOW_QUALITY_THRESHOLD", 3)
    )
    min_chunk_chars: int = field(default_factory=lambda: _env_int("DISTILL_MIN_CHUNK_CHARS", 50))
    insight_scan_limit: int = field(
        default_factory=lambda: _env_int("DISTILL_INSIGHT_SCAN_LIMIT", 200)
    )
    pairs_per_prompt: int = field(default_factory=lambda: _env_int("DISTILL_PAIRS_PER_PROMPT", 5))
    max_pairs: int = field(default_factory=lambda: _env_int("DISTILL_MAX_PAIRS", 0))

    approval_mode: str = field(
        default_factory=lambda: _env_str("DISTILL_APPROVAL_MODE", "supervised")
    )
    max_active_rules: int = field(
        default_factory=lambda: _env_int("DISTILL_MAX_ACTIVE_RULES", 30)
    )
    staleness_days: int = field(default_factory=lambda: _env_int("DISTILL_STALENESS_DAYS", 60))
    min_reinforcement: int = field(
        default_factory=lambda: _env_int("DISTILL_MIN_REINFORCEMENT", 1)
    )
    dedup_similarity: float = field(
        default_factory=lambda: _env_float("DISTILL_DEDUP_SIMILARITY", 0.85)
    )
    validate_rules: bool = field(
        default_factory=lambda: _env_bool("DISTILL_VALIDATE_RULES", True)
    )

    reinforcement_window_days: int = field(
        default_factory=lambda: _env_int("DISTILL_REINFORCEMENT_WINDOW_DAYS", 7)
    )
    reinforcement_similarity: float = field(
        default_factory=lambda: _env_float("DISTILL_REINFORCEMENT_SIMILARITY", 0.7)
    )
    reinforcement_quality_min: int = field(
        default_factory=lambda: _env_int("DISTILL_REINFORCEMENT_QUALITY_MIN", 6)
    )
    reinforcement_search_limit: int = field(
        default_factory=lambda: _env_int("DISTILL_REINFORCEMENT_SEARCH_LIMIT", 5)
    )

    rules_path: Path = field(
        default_factory=lambda: Path(_env_str("DISTILL_RULES_PATH", ".distill/rules.json"))
    )
    jobs_path: Path = field(
        default_factory=lambda: Path(_env_str("DISTILL_JOBS_PATH", ".distill/jobs.json"))
    )
    sessions_dir: Path = field(
        default_factory=lambda: Path(_env_str("DISTILL_SESSIONS_DIR", ".claude/logs/sessions"))
    )

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty when valid)."""
        issues = []
        if self.approval_mode not in APPROVAL_MODES:
            issues.append(
                f"approval_mode must be one of {', '.join(APPROVAL_MODES)}, "
                f"got {self.approval_mode!r}"
            )
        if self.max_active_rules < 1:
            issues.append("max_active_rules must be at least 1")
        if not 0 <= self.low_quality_threshold < self.high_quality_threshold <= 10:
            issues.append("quality thresholds must satisfy 0 <= low < high <= 10")
        if self.pairs_per_prompt < 1:
            issues.append("pairs_per_prompt must be at least 1")
        if not 0.0 < self.dedup_similarity <= 1.0:
            issues.append("dedup_similarity must be in (0, 1]")
        return issues


_PATH_FIELDS = {"rules_path", "jobs_path", "sessions_dir"}


def load_config(path: str | Path | None = None, **overrides: Any) -> DistillConfig:
    """Build a config from defaults, environment, an optional JSON file and overrides.

    Args:
        path: Optional JSON file. Keys match DistillConfig field names; unknown
            keys are ignored with a warning.
        **overrides: Field values that win over everything else.

    Returns:
        The resolved DistillConfig.

    Raises:
        StoreError: If the file exists but is not a JSON object.
    """
    config = DistillConfig()
    values: dict[str, Any] = {}

    if path is not None:
        file_path = Path(path)
        try:
            data = json.loads(file_path.read_text())
        except FileNotFoundError:
            logger.warning("Config file %s not found, using defaults", file_path)
            data = {}
        except (json.JSONDecodeError, OSError) as e:
            raise StoreError(f"Cannot read config file {file_path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"Config file {file_path} must contain a JSON object")
        values.update(data)

    values.update(overrides)

    known = {f.name for f in fields(DistillConfig)}
    for key in sorted(set(values) - known):
        logger.warning("Ignoring unknown config key %r", key)
        values.pop(key)
    for key in _PATH_FIELDS & set(values):
        values[key] = Path(values[key])

    return replace(config, **values)
