"""Rule manager: the single authority over the rule lifecycle.

    candidate ──add_rule──► proposed ──apply──► active ──prune_stale──► pruned
                    └──(autonomous mode, validated)──┘

All writes go through RuleStore transactions, so every add, apply, prune and
revert is one named commit that can be reverted on its own. Deduplication and
capacity are decided inside the transaction, against the latest document,
never against a stale in-memory copy.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime

from ..clients import EmbeddingService, VectorStore, point_id
from ..config import DistillConfig
from ..errors import ServiceUnavailable, SoftFailure
from .categorizer import categorize_rule
from .models import (
    AddResult,
    ApplyDiff,
    ApprovalMode,
    Commit,
    PruneResult,
    Rule,
    RuleOrigin,
    RuleReview,
    RuleStatus,
    utcnow,
)
from .similarity import normalize_rule_text, token_similarity
from .store import RuleStore
from .validation import RuleValidator

logger = logging.getLogger(__name__)


def find_duplicate(text: str, rules: Sequence[Rule], threshold: float) -> Rule | None:
    """Return the active/proposed rule that ``text`` duplicates, if any.

    Exact normalized match always counts; otherwise token overlap at or above
    ``threshold`` does.
    """
    key = normalize_rule_text(text)
    live = [r for r in rules if r.status in (RuleStatus.ACTIVE, RuleStatus.PROPOSED)]
    for rule in live:
        if normalize_rule_text(rule.text) == key:
            return rule
    for rule in live:
        if token_similarity(text, rule.text) >= threshold:
            return rule
    return None


class RuleManager:
    """Adds, applies, prunes, reviews and reverts rules.

    Args:
        store: The durable rule store.
        config: Pipeline configuration (mode, capacity, staleness, dedup).
        mode: Overrides ``config.approval_mode``.
        categorizer: Maps rule text to categories.
        validator: Vets autonomous-mode rules before they become active.
            Without one, every non-duplicate rule within capacity activates.
    """

    def __init__(
        self,
        store: RuleStore,
        config: DistillConfig | None = None,
        mode: ApprovalMode | str | None = None,
        categorizer: Callable[[str], list[str]] = categorize_rule,
        validator: RuleValidator | None = None,
    ) -> None:
        self.config = config or DistillConfig()
        self.store = store
        self.mode = ApprovalMode(mode or self.config.approval_mode)
        self._categorize = categorizer
        self._validator = validator

    @property
    def max_active_rules(self) -> int:
        return self.store.max_active_rules

    # -------------------------------------------------------------------------
    # Add
    # -------------------------------------------------------------------------

    def _decide(self, text: str, rules: Sequence[Rule]) -> tuple[RuleStatus | None, str]:
        duplicate = find_duplicate(text, rules, self.config.dedup_similarity)
        if duplicate is not None:
            logger.debug("Rejecting duplicate of %s: %r", duplicate.id, text)
            return None, "duplicate"

        if self.mode != ApprovalMode.AUTONOMOUS:
            return RuleStatus.PROPOSED, "proposed"

        active = sum(1 for r in rules if r.status == RuleStatus.ACTIVE)
        if active >= self.max_active_rules:
            return RuleStatus.PROPOSED, "capacity"
        return RuleStatus.ACTIVE, "active"

    def _new_rule(
        self,
        text: str,
        status: RuleStatus,
        origin: RuleOrigin,
        source_session_ids: Sequence[str],
        now: datetime,
    ) -> Rule:
        return Rule(
            id=uuid.uuid4().hex[:8],
            text=text,
            status=status,
            origin=origin,
            created_at=now,
            last_reinforced_at=now,
            categories=self._categorize(text),
            source_session_ids=list(dict.fromkeys(s for s in source_session_ids if s)),
        )

    def _passes_validation(self, text: str, rules: Sequence[Rule]) -> bool:
        if self._validator is None:
            return True
        verdict = self._validator.validate(text, rules)
        if not verdict.valid:
            logger.info("Staging %r as proposed: %s", text[:60], verdict.reason)
        return verdict.valid

    def add_rule(
        self,
        text: str,
        origin: RuleOrigin | str = RuleOrigin.MANUAL,
        source_session_ids: Sequence[str] = (),
        dry_run: bool = False,
        staged: Sequence[Rule] = (),
    ) -> AddResult:
        """Deduplicate a candidate and store it as active or proposed.

        With ``dry_run`` nothing is written. ``staged`` holds the would-be rules
        of earlier dry-run candidates, which count as stored.

        Returns:
            AddResult. ``applied`` is True only if the rule became active;
            ``reason`` explains the outcome (duplicate, capacity, unvalidated,
            proposed, ...).
        """
        text = text.strip()
        origin = RuleOrigin(origin)
        if not text:
            return AddResult(applied=False, reason="empty")

        if dry_run:
            rules = self.store.rules() + list(staged)
            status, reason = self._decide(text, rules)
            if status == RuleStatus.ACTIVE and not self._passes_validation(text, rules):
                status = RuleStatus.PROPOSED
            rule = None
            if status is not None:
                rule = self._new_rule(text, status, origin, source_session_ids, utcnow())
                logger.info("[dry-run] would store %s rule: %r", status.value, text)
            return AddResult(applied=False, reason="dry-run" if rule else reason, rule=rule)

        # The model call happens before the lock is taken
        validated = True
        if self._validator is not None and self.mode == ApprovalMode.AUTONOMOUS:
            rules = self.store.rules()
            status, _ = self._decide(text, rules)
            validated = status == RuleStatus.ACTIVE and self._passes_validation(text, rules)

        verb = "add" if self.mode == ApprovalMode.AUTONOMOUS else "propose"
        with self.store.transaction(f"{verb} rule: {text[:60]}") as txn:
            status, reason = self._decide(text, txn.rules)
            if status == RuleStatus.ACTIVE and not validated:
                status, reason = RuleStatus.PROPOSED, "unvalidated"
            rule = None
            if status is not None:
                rule = self._new_rule(text, status, origin, source_session_ids, txn.now)
                txn.add(rule)

        if rule is None:
            return AddResult(applied=False, reason=reason)

        commit_id = txn.commit.id if txn.commit else None
        if reason == "capacity":
            logger.info(
                "Active rule cap (%d) reached, staged as proposed: %r", self.max_active_rules, text
            )
        return AddResult(
            applied=status == RuleStatus.ACTIVE, reason=reason, rule=rule, commit_id=commit_id
        )

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    @staticmethod
    def _plan_apply(rules: Sequence[Rule], capacity: int) -> tuple[list[Rule], list[Rule]]:
        proposed = sorted(
            (r for r in rules if r.status == RuleStatus.PROPOSED),
            key=lambda r: (r.created_at, r.id),
        )
        room = max(0, capacity - sum(1 for r in rules if r.status == RuleStatus.ACTIVE))
        return proposed[:room], proposed[room:]

    def apply_pending_proposals(self, dry_run: bool = False) -> ApplyDiff:
        """Activate proposed rules, oldest first, while capacity remains.

        One commit per call. With ``dry_run`` the same diff is computed and
        nothing is written.
        """
        if dry_run:
            activate, deferred = self._plan_apply(self.store.rules(), self.max_active_rules)
            return ApplyDiff(activated=activate, deferred=deferred, dry_run=True)

        with self.store.transaction("apply pending proposals") as txn:
            activate, deferred = self._plan_apply(txn.rules, self.max_active_rules)
            for rule in activate:
                rule.status = RuleStatus.ACTIVE
                rule.categories = self._categorize(rule.text)
            txn.message = f"apply {len(activate)} proposal(s)"

        commit_id = txn.commit.id if txn.commit else None
        if deferred:
            logger.info("%d proposal(s) deferred: active rule cap reached", len(deferred))
        return ApplyDiff(activated=activate, deferred=deferred, commit_id=commit_id)

    # -------------------------------------------------------------------------
    # Prune
    # -------------------------------------------------------------------------

    def prune_stale(
        self,
        now: datetime | None = None,
        staleness_days: float | None = None,
        min_reinforcement: int | None = None,
    ) -> PruneResult:
        """Move stale, under-reinforced active rules to pruned in one commit.

        A rule is pruned when ``now - last_reinforced_at > staleness_days`` and
        ``reinforcement_count < min_reinforcement``. Active rules past half the
        threshold that survive are reported as ``flagged``.
        """
        now = now or utcnow()
        days = self.config.staleness_days if staleness_days is None else staleness_days
        min_reinf = self.config.min_reinforcement if min_reinforcement is None else min_reinforcement

        pruned: list[Rule] = []
        flagged: list[Rule] = []
        with self.store.transaction("prune stale rules", now=now) as txn:
            for rule in txn.with_status(RuleStatus.ACTIVE):
                if rule.is_stale(now, days, min_reinf):
                    rule.status = RuleStatus.PRUNED
                    pruned.append(rule)
                    logger.info(
                        "Pruned %s (%.0fd, %d reinforcements): %r",
                        rule.id,
                        rule.days_since_reinforced(now),
                        rule.reinforcement_count,
                        rule.text[:60],
                    )
                elif rule.days_since_reinforced(now) > days / 2:
                    flagged.append(rule)
            txn.message = f"prune {len(pruned)} stale rule(s)"

        commit_id = txn.commit.id if txn.commit else None
        return PruneResult(pruned=pruned, flagged=flagged, commit_id=commit_id)

    # -------------------------------------------------------------------------
    # Read-only views
    # -------------------------------------------------------------------------

    def review(self, now: datetime | None = None) -> RuleReview:
        now = now or utcnow()
        rules = self.store.rules()
        counts = {status.value: 0 for status in RuleStatus}
        for rule in rules:
            counts[rule.status.value] += 1
        return RuleReview(
            counts=counts,
            active=[r for r in rules if r.status == RuleStatus.ACTIVE],
            proposed=[r for r in rules if r.status == RuleStatus.PROPOSED],
            stale_prune_candidates=[
                r
                for r in rules
                if r.is_stale(now, self.config.staleness_days, self.config.min_reinforcement)
            ],
            max_active_rules=self.max_active_rules,
        )

    def history(self, limit: int = 20) -> list[Commit]:
        return list(reversed(self.store.commits()))[:limit]

    # -------------------------------------------------------------------------
    # Revert
    # -------------------------------------------------------------------------

    def revert(self, commit_id: str) -> Commit | None:
        """Undo one commit by restoring every rule it touched, as a new commit.

        Raises:
            KeyError: No commit with that id.
            InvariantViolation: Restoring would break a store invariant.
        """
        target = self.store.get_commit(commit_id)
        if target is None:
            raise KeyError(commit_id)

        with self.store.transaction(f"revert {commit_id}: {target.message}") as txn:
            for change in target.changes:
                if change.before is None:
                    txn.remove(change.rule_id)
                else:
                    txn.replace(Rule.from_dict(change.before))
        return txn.commit

    # -------------------------------------------------------------------------
    # Retrieval sync
    # -------------------------------------------------------------------------

    def sync_to_vector_store(self, vector_store: VectorStore, embedder: EmbeddingService) -> int:
        """Upsert every active rule (embedding + payload) into the rules collection.

        Per-rule failures are logged and skipped. Returns the number synced.
        """
        active = [r for r in self.store.rules() if r.status == RuleStatus.ACTIVE]
        if not active:
            return 0

        vector_store.ensure_collection(self.config.rules_collection, self.config.vector_size)
        synced = 0
        for rule in active:
            try:
                vector = embedder.embed(rule.text)
                vector_store.upsert(
                    self.config.rules_collection,
                    point_id(f"rule-{rule.id}"),
                    vector,
                    {
                        "rule_id": rule.id,
                        "text": rule.text,
                        "status": rule.status.value,
                        "origin": rule.origin.value,
                        "categories": rule.categories,
                        "reinforcement_count": rule.reinforcement_count,
                        "created_at": rule.created_at.isoformat(),
                    },
                )
                synced += 1
            except (SoftFailure, ServiceUnavailable) as e:
                logger.warning("Failed to sync rule %s: %s", rule.id, e)
        return synced

