"""Reflection generation: turn detected failures into root-cause lessons.

One model call per session covers all of its failures, using a numbered
block grammar:

    FAILURE 1:
    ROOT_CAUSE: ...
    REFLECTION: ...
    PREVENTION_RULE: ...

The parser is tolerant: a missing or malformed block yields ``None`` for that
failure and the others are still stored. Reflection ids are derived from
``(session_id, failure_index)``, so re-processing a session overwrites its
reflections instead of duplicating them.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from ..clients import EmbeddingService, GenerationService, VectorStore, point_id
from ..config import DistillConfig
from ..errors import ServiceUnavailable, SoftFailure, StoreError
from .failures import FailureDetector, detect_failures, load_transcript
from .models import FailureSignal, Reflection, ReflectionResult, RuleOrigin, utcnow
from .rules import RuleManager

logger = logging.getLogger(__name__)

_BLOCK_HEADER = re.compile(r"^\s*\**\s*FAILURE\s+(\d+)\s*\**\s*:?", re.IGNORECASE | re.MULTILINE)
_FIELD = {
    name: re.compile(rf"^\s*\**\s*{name}\s*\**\s*:\s*(.*)$", re.MULTILINE)
    for name in ("ROOT_CAUSE", "REFLECTION", "PREVENTION_RULE")
}


@dataclass
class ParsedReflection:
    root_cause: str
    reflection: str
    prevention_rule: str


def build_prompt(failures: Sequence[FailureSignal]) -> str:
    blocks = "\n".join(
        f"FAILURE {i}:\nType: {f.type.value}\nDescription: {f.description}\nContext: {f.context}\n"
        for i, f in enumerate(failures, start=1)
    )
    return (
        "A developer assistant encountered these failures during a session:\n\n"
        f"{blocks}\n"
        "For each failure provide:\n"
        "1. ROOT_CAUSE: What went wrong (one sentence)\n"
        "2. REFLECTION: What should have been done differently (one sentence)\n"
        "3. PREVENTION_RULE: A specific rule to prevent this in the future (under 50 words)\n\n"
        "Format your response exactly as, for every failure N:\n"
        "FAILURE N:\n"
        "ROOT_CAUSE: ...\n"
        "REFLECTION: ...\n"
        "PREVENTION_RULE: ..."
    )


def _parse_block(block: str) -> ParsedReflection | None:
    values = {}
    for name, pattern in _FIELD.items():
        match = pattern.search(block)
        values[name] = match.group(1).strip() if match else ""
    if not values["ROOT_CAUSE"] or not values["REFLECTION"]:
        return None
    return ParsedReflection(values["ROOT_CAUSE"], values["REFLECTION"], values["PREVENTION_RULE"])


def parse_reflections(response: str, count: int) -> list[ParsedReflection | None]:
    """Parse a batched reply into one entry per failure (``None`` when missing)."""
    headers = list(_BLOCK_HEADER.finditer(response or ""))
    blocks: dict[int, str] = {}
    for i, header in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(response)
        number = int(header.group(1))
        # First occurrence wins
        blocks.setdefault(number, response[header.end() : end])

    if not headers and count == 1:
        blocks[1] = response or ""

    parsed = [_parse_block(blocks[n]) if n in blocks else None for n in range(1, count + 1)]
    missing = [n for n, p in enumerate(parsed, start=1) if p is None]
    if missing:
        logger.warning("No usable reflection block for failure(s) %s", missing)
    return parsed


class ReflectionGenerator:
    """Detects failures, asks for root causes, stores reflections and rules.

    Args:
        vector_store: Receives reflections (reflections collection).
        generator: Model asked for the batched analysis.
        embedder: Embeds each reflection summary.
        rules: Receives prevention rules.
        config: Pipeline configuration.
        detector: Failure classifier; defaults to ``detect_failures``.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        generator: GenerationService,
        embedder: EmbeddingService,
        rules: RuleManager,
        config: DistillConfig | None = None,
        detector: FailureDetector = detect_failures,
    ) -> None:
        self._store = vector_store
        self._generator = generator
        self._embedder = embedder
        self._rules = rules
        self.config = config or DistillConfig()
        self._detect = detector
        self._collection_ready = False

    @property
    def collection(self) -> str:
        return self.config.reflections_collection

    def _ensure_collection(self) -> None:
        if not self._collection_ready:
            self._store.ensure_collection(self.collection, self.config.vector_size)
            self._collection_ready = True

    def _store_reflection(self, reflection: Reflection) -> None:
        vector = self._embedder.embed(reflection.summary)
        self._store.upsert(self.collection, point_id(reflection.id), vector, reflection.to_payload())

    def process_session(
        self, session_id: str, transcript: Mapping[str, Any], now: datetime | None = None
    ) -> ReflectionResult:
        """Detect failures in one transcript and store a reflection per failure."""
        result = ReflectionResult(sessions=1)
        failures = self._detect(transcript)
        result.failures = len(failures)
        if not failures:
            return result

        logger.info("Found %d failure signal(s) in session %s", len(failures), session_id)
        try:
            response = self._generator.generate(build_prompt(failures))
        except SoftFailure as e:
            logger.warning("Reflection call failed for session %s: %s", session_id, e)
            result.failed = len(failures)
            return result

        self._ensure_collection()
        now = now or utcnow()

        for index, (failure, parsed) in enumerate(
            zip(failures, parse_reflections(response, len(failures))), start=1
        ):
            if parsed is None:
                result.failed += 1
                continue

            reflection = Reflection(
                id=f"reflection-{session_id}-{index}",
                session_id=session_id,
                failure_index=index,
                date=now,
                failure_description=failure.description,
                root_cause=parsed.root_cause,
                reflection_text=parsed.reflection,
                prevention_rule=parsed.prevention_rule,
            )
            try:
                self._store_reflection(reflection)
            except (SoftFailure, ServiceUnavailable) as e:
                logger.warning("Failed to store %s: %s", reflection.id, e)
                result.failed += 1
                continue

            result.reflections_stored += 1
            logger.info("Stored %s: %s", reflection.id, reflection.root_cause[:80])

            if reflection.prevention_rule:
                outcome = self._rules.add_rule(
                    reflection.prevention_rule, RuleOrigin.REFLECTION, [session_id]
                )
                if outcome.rule is not None:
                    result.rules_added += 1

        return result

    def _session_files(self, sessions_dir: Path, session_id: str | None) -> list[Path]:
        if session_id:
            candidate = Path(session_id)
            if candidate.suffix == ".json" and candidate.is_file():
                return [candidate]
            path = sessions_dir / f"{session_id}.json"
            if not path.is_file():
                raise StoreError(f"No session export at {path}")
            return [path]
        if not sessions_dir.is_dir():
            logger.info("No sessions directory at %s", sessions_dir)
            return []
        return sorted(sessions_dir.glob("*.json"))

    def generate_reflections(
        self, sessions_dir: Path | None = None, session_id: str | None = None
    ) -> ReflectionResult:
        """Process every session export in ``sessions_dir`` (or just one).

        A session that cannot be read or analyzed, or whose results cannot be
        stored, is logged and counted as failed. The walk continues.
        """
        total = ReflectionResult()
        for path in self._session_files(sessions_dir or self.config.sessions_dir, session_id):
            try:
                result = self.process_session(path.stem, load_transcript(path))
            except (StoreError, SoftFailure, ServiceUnavailable) as e:
                logger.warning("Skipping session %s: %s", path.stem, e)
                total.sessions += 1
                total.failed += 1
                continue
            total.sessions += result.sessions
            total.failures += result.failures
            total.reflections_stored += result.reflections_stored
            total.rules_added += result.rules_added
            total.failed += result.failed
        return total

    def search_reflections(
        self, text: str, limit: int = 5, min_score: float = 0.5
    ) -> list[tuple[Reflection, float]]:
        """Past reflections similar to ``text``, best first."""
        hits = self._store.search(
            self.collection, self._embedder.embed(text), score_threshold=min_score, limit=limit
        )
        return [(Reflection.from_payload(hit.payload), hit.score) for hit in hits]
