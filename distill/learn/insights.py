"""Insight extraction: mine rules by contrasting high- and low-quality chunks.

Pairing policy: both partitions are ordered by recency (session date
descending, chunk id as tiebreak) and zipped index-aligned, giving exactly
``min(len(high), len(low))`` pairs, optionally capped by ``max_pairs``.
Pairs are sent in batches, one model call per batch. A failed batch is
logged and skipped; the others still apply.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from ..clients import Filter, GenerationService, VectorStore
from ..config import DistillConfig
from ..errors import ServiceUnavailable, SoftFailure
from .models import InsightResult, Rule, RuleOrigin, RuleStatus, SessionChunk
from .rules import RuleManager

logger = logging.getLogger(__name__)

# Characters of each chunk shown to the model
_PAIR_TEXT_LIMIT = 600

MIN_RULE_CHARS = 10
MAX_RULE_CHARS = 200

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class ChunkPair:
    high: SessionChunk
    low: SessionChunk

    @property
    def session_ids(self) -> list[str]:
        return [s for s in (self.high.session_id, self.low.session_id) if s]


def _by_recency(chunks: Sequence[SessionChunk]) -> list[SessionChunk]:
    # Newest first; ties (and undated chunks) fall back to id order
    by_id = sorted(chunks, key=lambda c: str(c.id))
    return sorted(by_id, key=lambda c: c.session_date or _EPOCH, reverse=True)


def pair_chunks(
    high: Sequence[SessionChunk], low: Sequence[SessionChunk], max_pairs: int = 0
) -> list[ChunkPair]:
    """Zip recency-ordered partitions into contrastive pairs.

    Unequal lengths are fine: the longer list's tail is unused.
    """
    pairs = [ChunkPair(h, l) for h, l in zip(_by_recency(high), _by_recency(low))]
    if max_pairs > 0:
        pairs = pairs[:max_pairs]
    return pairs


def build_prompt(batch: Sequence[ChunkPair]) -> str:
    blocks = []
    for index, pair in enumerate(batch, start=1):
        blocks.append(
            f"=== PAIR {index} ===\n"
            f"HIGH QUALITY (score {pair.high.quality_score}/10):\n"
            f"{pair.high.text[:_PAIR_TEXT_LIMIT]}\n\n"
            f"LOW QUALITY (score {pair.low.quality_score}/10):\n"
            f"{pair.low.text[:_PAIR_TEXT_LIMIT]}\n"
        )
    return (
        "Compare these session chunk pairs and extract actionable rules. For each pair, "
        "provide 1-2 specific rules (under 50 words each) that explain what made the "
        "first chunk successful and the second fail.\n\n"
        + "\n".join(blocks)
        + '\nReturn ONLY the rules, one per line, starting with "- ". Group by pair number.\n'
        "Example:\n"
        "PAIR 1:\n"
        "- Rule about what worked vs what didn't\n"
        "PAIR 2:\n"
        "- Another rule"
    )


def parse_rule_bullets(response: str) -> list[str]:
    """Extract ``- `` bullet lines within the accepted length band."""
    rules = []
    for line in response.splitlines():
        stripped = line.strip()
        if not stripped.startswith("- "):
            continue
        text = stripped[2:].strip()
        if MIN_RULE_CHARS <= len(text) < MAX_RULE_CHARS:
            rules.append(text)
        else:
            logger.debug("Dropping out-of-band bullet (%d chars)", len(text))
    return rules


class InsightExtractor:
    """Contrastive rule miner feeding the RuleManager.

    Args:
        vector_store: Holds the scored session chunks.
        generator: Model asked to contrast each batch of pairs.
        rules: Receives every candidate via ``add_rule``.
        config: Pipeline configuration.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        generator: GenerationService,
        rules: RuleManager,
        config: DistillConfig | None = None,
    ) -> None:
        self._store = vector_store
        self._generator = generator
        self._rules = rules
        self.config = config or DistillConfig()

    def _fetch(self, selection: Filter) -> list[SessionChunk]:
        records = self._store.scroll(
            self.config.sessions_collection, selection, limit=self.config.insight_scan_limit
        )
        chunks = [SessionChunk.from_payload(r.id, r.payload) for r in records]
        return [c for c in chunks if len(c.text) > self.config.min_chunk_chars]

    def fetch_partitions(self) -> tuple[list[SessionChunk], list[SessionChunk]]:
        """Return (high, low) scored chunks. Mid-range scores are excluded."""
        high = self._fetch(Filter().range("quality_score", gte=self.config.high_quality_threshold))
        low = self._fetch(Filter().range("quality_score", lte=self.config.low_quality_threshold))
        return high, low

    def extract_insights(self, dry_run: bool = False) -> InsightResult:
        high, low = self.fetch_partitions()
        result = InsightResult(high_count=len(high), low_count=len(low))
        logger.info("Found %d high-quality and %d low-quality chunk(s)", len(high), len(low))

        if not high or not low:
            result.status = "insufficient-data"
            return result

        pairs = pair_chunks(high, low, self.config.max_pairs)
        result.pairs = len(pairs)
        size = max(1, self.config.pairs_per_prompt)
        staged: list[Rule] = []

        for start in range(0, len(pairs), size):
            batch = pairs[start : start + size]
            result.batches += 1
            try:
                response = self._generator.generate(build_prompt(batch))
            except (SoftFailure, ServiceUnavailable) as e:
                logger.warning("Insight batch %d failed: %s", result.batches, e)
                result.batches_failed += 1
                continue

            candidates = parse_rule_bullets(response)
            session_ids = list(dict.fromkeys(s for pair in batch for s in pair.session_ids))
            logger.info("Batch %d: %d candidate(s)", result.batches, len(candidates))

            for text in candidates:
                result.candidates_found += 1
                outcome = self._rules.add_rule(
                    text,
                    RuleOrigin.INSIGHT_EXTRACTION,
                    session_ids,
                    dry_run=dry_run,
                    staged=staged,
                )
                if dry_run and outcome.rule is not None:
                    staged.append(outcome.rule)
                if outcome.rule is None:
                    result.rejected[outcome.reason] = result.rejected.get(outcome.reason, 0) + 1
                elif outcome.rule.status == RuleStatus.ACTIVE:
                    # Dry runs count the would-be outcome
                    result.applied += 1
                else:
                    result.proposed += 1

        return result
