"""Reinforcement tracking: usage signals that keep useful rules alive.

Two ways a rule gets reinforced:

- ``record()``: an explicit event, e.g. the rule was surfaced and helped.
- ``track()``: recent, high-quality session chunks that are semantically
  close to the rule (and not from the sessions it was mined from).

Reinforcement is monotonic. Duplicate or concurrent calls are acceptable
(at-least-once).
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta

from ..clients import EmbeddingService, Filter, VectorStore
from ..config import DistillConfig
from ..errors import ServiceUnavailable, SoftFailure
from .models import (
    ReinforcementStats,
    Rule,
    RuleStatus,
    TrackResult,
    parse_timestamp,
    utcnow,
)
from .store import RuleStore

logger = logging.getLogger(__name__)

# Rules reinforced at least this often count as "proven"
PROVEN_THRESHOLD = 10


class ReinforcementTracker:
    """Records reinforcement events and reports per-rule usage statistics.

    Args:
        store: The durable rule store.
        config: Pipeline configuration.
        vector_store: Needed only by ``track()``.
        embedder: Needed only by ``track()``.
    """

    def __init__(
        self,
        store: RuleStore,
        config: DistillConfig | None = None,
        vector_store: VectorStore | None = None,
        embedder: EmbeddingService | None = None,
    ) -> None:
        self.store = store
        self.config = config or DistillConfig()
        self._vector_store = vector_store
        self._embedder = embedder

    def record(self, rule_id: str, event: str = "surfaced", now: datetime | None = None) -> bool:
        """Reinforce one rule. Returns False if it does not exist or is pruned."""
        with self.store.transaction(f"reinforce {rule_id} ({event})", now=now) as txn:
            rule = txn.get(rule_id)
            if rule is None or rule.status == RuleStatus.PRUNED:
                logger.debug("Ignoring reinforcement of missing/pruned rule %s", rule_id)
                return False
            rule.reinforcement_count += 1
            rule.last_reinforced_at = txn.now
        return True

    def _matches_for(self, rule: Rule, now: datetime) -> int:
        vector = self._embedder.embed(rule.text)
        hits = self._vector_store.search(
            self.config.sessions_collection,
            vector,
            filter=Filter().range("quality_score", gte=self.config.reinforcement_quality_min),
            score_threshold=self.config.reinforcement_similarity,
            limit=self.config.reinforcement_search_limit,
        )
        window_start = now - timedelta(days=self.config.reinforcement_window_days)
        own_sessions = set(rule.source_session_ids)

        matches = 0
        for hit in hits:
            date = parse_timestamp(hit.payload.get("date"))
            if date is None or date < window_start:
                continue
            if hit.payload.get("session_id") in own_sessions:
                continue
            if hit.score < self.config.reinforcement_similarity:
                continue
            matches += 1
        return matches

    def track(self, now: datetime | None = None) -> TrackResult:
        """Reinforce active rules from recent, similar, high-quality session chunks.

        Searches happen outside the lock; increments are applied in one commit
        and only to rules that are still active at commit time.
        """
        if self._vector_store is None or self._embedder is None:
            raise ValueError("track() needs a vector store and an embedder")

        now = now or utcnow()
        active = [r for r in self.store.rules() if r.status == RuleStatus.ACTIVE]
        result = TrackResult(rules_checked=len(active))

        increments: dict[str, int] = {}
        for rule in active:
            try:
                matches = self._matches_for(rule, now)
            except (SoftFailure, ServiceUnavailable) as e:
                logger.warning("Reinforcement search failed for %s: %s", rule.id, e)
                result.failed += 1
                continue
            if matches:
                increments[rule.id] = matches
                logger.info("[%s] +%d reinforcement(s): %r", rule.id, matches, rule.text[:60])

        if not increments:
            return result

        with self.store.transaction(
            f"track reinforcement for {len(increments)} rule(s)", now=now
        ) as txn:
            for rule_id, count in increments.items():
                rule = txn.get(rule_id)
                if rule is None or rule.status != RuleStatus.ACTIVE:
                    continue
                rule.reinforcement_count += count
                rule.last_reinforced_at = now
                result.reinforced[rule_id] = count

        result.commit_id = txn.commit.id if txn.commit else None
        return result

    def stats(self) -> ReinforcementStats:
        rules = self.store.rules()
        active = [r for r in rules if r.status == RuleStatus.ACTIVE]

        by_status = {status.value: 0 for status in RuleStatus}
        by_status.update(Counter(r.status.value for r in rules))
        by_category: Counter[str] = Counter()
        for rule in active:
            by_category.update(rule.categories or ["general"])

        return ReinforcementStats(
            by_status=by_status,
            by_origin=dict(Counter(r.origin.value for r in active)),
            by_category=dict(by_category.most_common()),
            per_rule=sorted(
                ((r.id, r.reinforcement_count, r.last_reinforced_at) for r in active),
                key=lambda item: -item[1],
            ),
            average_reinforcement=(
                sum(r.reinforcement_count for r in active) / len(active) if active else 0.0
            ),
            proven=sum(1 for r in active if r.reinforcement_count >= PROVEN_THRESHOLD),
        )
