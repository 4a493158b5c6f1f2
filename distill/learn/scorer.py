"""Quality scorer: rate pending session chunks 0-10.

Pending chunks are polled from the vector store (``pending_score=true``),
scored, and written back with a conditional patch that only matches while the
chunk is still pending. A reply that is not an integer in [0, 10] is a soft
failure: the chunk stays pending and the next run retries it. Nothing is ever
marked scored without a valid score.

Obvious noise is scored by heuristics without a model call:

    Tier 1 (score 1):  empty, binary or encoded content
    Tier 2 (score 2):  stack traces, npm errors, large JSON blobs
    Tier 3 (score 3):  short routine shell operations
    Tier 4 (score 4):  default, nothing suggests it is valuable
    None  (model):     strong insight signals, or two or more weak ones
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable

from ..clients import Filter, GenerationService, VectorStore
from ..config import DistillConfig
from ..errors import ServiceTimeout, ServiceUnavailable, SoftFailure
from .models import ScoreResult, ScoreStats, SessionChunk

logger = logging.getLogger(__name__)

# Characters of chunk text sent to the model
_PROMPT_TEXT_LIMIT = 1500

_SCORE_PROMPT = """Score this session chunk 0-10 for usefulness as a development reference.

Scoring guide:
- 0-2: Noise, errors, failed attempts with no learning
- 3-4: Basic context, routine operations
- 5-6: Useful pattern or solution
- 7-8: Reusable solution, important decision, key insight
- 9-10: Significant architecture, novel solution, critical learning

Reply with a single integer from 0 to 10 and nothing else.

Chunk:
{text}

Score:"""

_SCORE_REPLY = re.compile(
    r"^\s*(?:score\s*[:=]?\s*)?(-?\d+)\s*(?:/\s*10)?\s*\.?\s*$", re.IGNORECASE
)

# =============================================================================
# Heuristic pre-filter
# =============================================================================

_STRONG_SIGNALS = [
    re.compile(p)
    for p in (
        r"the (?:issue|problem|bug|root cause) (?:was|is|turned out)",
        r"(?:fixed|resolved|solved) (?:by|with|using|the)",
        r"(?:figured out|turns out|realized|discovered) (?:that|the|why|how)",
        r"(?:decided|chose|opted) (?:to|for) .{10,}",
        r"design (?:decision|pattern|trade.?off)",
        r"(?:lesson|takeaway|key insight|important thing)",
        r"(?:best practice|anti.?pattern|pitfall|gotcha)",
        r"(?:this works because|the reason (?:is|was)|here's (?:how|why))",
    )
]

_WEAK_SIGNALS = [
    re.compile(p)
    for p in (
        r"\b(?:root cause|workaround|breaking change)\b",
        r"\b(?:refactor|migrate|redesign)\b",
        r"\b(?:optimization|performance (?:issue|improvement|fix))\b",
        r"\bsecurity (?:issue|fix|vulnerability)\b",
        r"\bschema (?:change|migration|design)\b",
        r"\b(?:algorithm|architecture)\b",
    )
]

_ENCODED_RUN = re.compile(r"[A-Za-z0-9+/=]{200,}")
_HEX_RUN = re.compile(r"[0-9a-f]{32,}", re.IGNORECASE)
_STACK_FRAME = re.compile(r"at \w+\.\w+ \(")
_JSON_KEY = re.compile(r'"[^"]+"\s*:')
_FILE_LISTING = re.compile(r"\.(?:ts|js|json|md|tsx|jsx|py)\n")
_ROUTINE_COMMANDS = ("git status", "git add", "git commit", "npm install", "npm run", "cd ")


def prefilter_score(text: str) -> int | None:
    """Heuristic score for obvious cases, or None if the model should decide."""
    if not text or len(text) < 20:
        return 1

    lower = text.lower()

    # Tier 1: noise
    if _ENCODED_RUN.search(text):
        return 1
    if len(_HEX_RUN.findall(text)) > 3:
        return 1

    # Tier 2: error output
    if "at object.<anonymous>" in lower and "at module._compile" in lower:
        return 2
    if len(_STACK_FRAME.findall(lower)) > 8:
        return 2
    if "npm err!" in lower or ("errno" in lower and "syscall" in lower):
        return 2
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}") and len(_JSON_KEY.findall(lower)) > 30:
        return 2

    # Likely valuable: let the model decide
    if any(p.search(lower) for p in _STRONG_SIGNALS):
        return None
    if sum(1 for p in _WEAK_SIGNALS if p.search(lower)) >= 2:
        return None

    # Tier 3: routine operations
    if len(text) < 150 and (
        any(cmd in lower for cmd in _ROUTINE_COMMANDS)
        or lower.startswith("ls ")
        or lower.startswith("$ ")
    ):
        return 3
    if len(_FILE_LISTING.findall(lower)) > 10 and "function" not in lower and "class" not in lower:
        return 3
    if (
        "diff --git" in lower
        and "index " in lower
        and not any(k in lower for k in ("function", "class", "const ", "def "))
    ):
        return 3

    return 4


def parse_score(reply: str) -> int | None:
    """Parse a model reply into an integer score in [0, 10], or None."""
    match = _SCORE_REPLY.match(reply or "")
    if not match:
        return None
    score = int(match.group(1))
    if not 0 <= score <= 10:
        return None
    return score


# =============================================================================
# Scorer
# =============================================================================


class QualityScorer:
    """Scores pending chunks and persists scores with conditional patches.

    Args:
        vector_store: Holds the session chunks.
        generator: Model asked for a score when heuristics don't decide.
        config: Pipeline configuration.
        clock: Monotonic clock used for the wall-clock budget.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        generator: GenerationService,
        config: DistillConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = vector_store
        self._generator = generator
        self.config = config or DistillConfig()
        self._clock = clock

    @property
    def collection(self) -> str:
        return self.config.sessions_collection

    def _selection(self, session_id: str | None, rescore: bool) -> Filter:
        selection = Filter()
        if session_id:
            selection.eq("session_id", session_id)
        if not rescore:
            selection.eq("pending_score", True)
        return selection

    def _score_chunk(self, chunk: SessionChunk, result: ScoreResult) -> int | None:
        if self.config.prefilter_enabled:
            heuristic = prefilter_score(chunk.text)
            if heuristic is not None:
                result.prefiltered += 1
                return heuristic

        prompt = _SCORE_PROMPT.format(text=chunk.text[:_PROMPT_TEXT_LIMIT])
        try:
            reply = self._generator.generate(prompt)
        except (SoftFailure, ServiceUnavailable) as e:
            logger.warning("Scoring call failed for chunk %s: %s", chunk.id, e)
            return None

        score = parse_score(reply)
        if score is None:
            logger.warning("Unparsable score for chunk %s: %r", chunk.id, reply[:80])
        return score

    def score_pending(self, session_id: str | None = None, rescore: bool = False) -> ScoreResult:
        """Score one bounded batch of pending chunks.

        Args:
            session_id: Only score chunks from this session.
            rescore: Select already-scored chunks too and overwrite their score.

        Returns:
            ScoreResult with scored / failed / skipped counts.

        Raises:
            ServiceUnavailable: The vector store is unreachable when selecting
                the batch. Nothing has been written at that point.
        """
        selection = self._selection(session_id, rescore)
        try:
            records = self._store.scroll(
                self.collection, selection, limit=self.config.score_batch_limit
            )
        except ServiceTimeout as e:
            raise ServiceUnavailable(e.service, "timed out selecting pending chunks") from e

        result = ScoreResult(selected=len(records))
        logger.info("Selected %d chunk(s) to score", len(records))
        deadline = self._clock() + self.config.score_budget_seconds

        for index, record in enumerate(records):
            if self._clock() >= deadline:
                result.skipped = len(records) - index
                logger.warning(
                    "Scoring budget exhausted, %d chunk(s) left pending", result.skipped
                )
                break

            chunk = SessionChunk.from_payload(record.id, record.payload)
            score = self._score_chunk(chunk, result)
            if score is None:
                result.failed += 1
                continue

            # Only matches while the chunk is still pending (unless rescoring)
            condition = None if rescore else Filter().eq("pending_score", True)
            try:
                self._store.patch_payload(
                    self.collection,
                    [record.id],
                    {"quality_score": score, "pending_score": False},
                    filter=condition,
                )
            except (SoftFailure, ServiceUnavailable) as e:
                logger.warning("Failed to store score for chunk %s: %s", chunk.id, e)
                result.failed += 1
                continue

            result.scored += 1
            logger.debug("Chunk %s scored %d", chunk.id, score)

        return result

    def mark_pending(self, session_id: str | None = None) -> int:
        """Flag every unscored, not-yet-pending chunk as pending. Returns the count."""
        selection = Filter().is_empty("quality_score").not_eq("pending_score", True)
        if session_id:
            selection.eq("session_id", session_id)

        records = self._store.scroll(self.collection, selection, limit=self.config.score_batch_limit)
        ids = [r.id for r in records]
        for start in range(0, len(ids), 100):
            self._store.patch_payload(
                self.collection, ids[start : start + 100], {"pending_score": True}, filter=selection
            )
        return len(ids)

    def score_stats(self) -> ScoreStats:
        stats = ScoreStats(
            total=self._store.count(self.collection),
            pending=self._store.count(self.collection, Filter().eq("pending_score", True)),
        )
        for score in range(11):
            n = self._store.count(self.collection, Filter().eq("quality_score", score))
            if n:
                stats.distribution[score] = n
        stats.scored = sum(stats.distribution.values())
        return stats
