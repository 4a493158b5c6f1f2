"""Tests for the rule manager: dedup, capacity, apply, prune, revert."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from distill.errors import InvariantViolation
from distill.learn.models import Rule, RuleOrigin, RuleStatus
from distill.learn.rules import RuleManager, find_duplicate
from distill.learn.store import RuleStore
from distill.storage import FileSystemDocumentBackend

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

TOPICS = [
    "imports", "migrations", "fixtures", "lockfiles", "branches", "schemas", "timeouts",
    "retries", "logging", "paths", "secrets", "caches", "builds", "linters", "hooks",
    "queues", "indexes", "configs", "headers", "tokens", "cookies", "sockets", "threads",
    "streams", "buffers", "signals", "locks", "plugins", "routes", "models", "views",
    "templates", "workers", "tasks", "metrics",
]


def _rule_text(i: int) -> str:
    return f"Double check {TOPICS[i]} before shipping"


def _seed(store: RuleStore, rule: Rule) -> None:
    with store.transaction("seed", now=rule.created_at) as txn:
        txn.add(rule)


def _active(rule_id: str, days_since_reinforced: float, count: int = 0) -> Rule:
    when = NOW - timedelta(days=days_since_reinforced)
    return Rule(
        id=rule_id,
        text=f"Rule {rule_id} keeps the build green",
        status=RuleStatus.ACTIVE,
        origin=RuleOrigin.MANUAL,
        created_at=when,
        last_reinforced_at=when,
        reinforcement_count=count,
    )


class TestAddRule:
    def test_duplicate_is_rejected_case_insensitively(self, autonomous):
        first = autonomous.add_rule("Always check imports")
        second = autonomous.add_rule("always check imports")

        assert first.applied is True
        assert second.applied is False
        assert second.reason == "duplicate"
        assert len(autonomous.store.rules()) == 1
        assert autonomous.store.rules()[0].text == "Always check imports"

    def test_near_duplicate_is_rejected(self, manager):
        manager.add_rule("Run the full test suite before every commit to main")

        result = manager.add_rule("Run the full test suite before every commit to main.")

        assert result.reason == "duplicate"

    def test_pruned_rules_do_not_block_re_adding(self, manager, rule_store):
        _seed(rule_store, replace(_active("old", 90), status=RuleStatus.PRUNED))

        result = manager.add_rule("Rule old keeps the build green")

        assert result.rule is not None

    def test_supervised_always_proposes(self, manager):
        result = manager.add_rule("Read the error before retrying a command")

        assert result.applied is False
        assert result.reason == "proposed"
        assert result.rule.status == RuleStatus.PROPOSED
        assert result.commit_id is not None

    def test_manual_mode_also_proposes(self, rule_store, config):
        manager = RuleManager(rule_store, config, mode="manual")

        assert manager.add_rule("Pin dependency versions in CI").rule.status == RuleStatus.PROPOSED

    def test_autonomous_capacity_never_exceeded(self, autonomous):
        outcomes = [autonomous.add_rule(_rule_text(i)) for i in range(35)]

        rules = autonomous.store.rules()
        assert sum(1 for r in rules if r.status == RuleStatus.ACTIVE) == 30
        assert [o.reason for o in outcomes[30:]] == ["capacity"] * 5
        assert all(r.status == RuleStatus.PROPOSED for r in rules[30:])

    def test_empty_text(self, manager):
        assert manager.add_rule("   ").reason == "empty"

    def test_dry_run_mutates_nothing(self, autonomous):
        result = autonomous.add_rule("Prefer explicit imports", dry_run=True)

        assert result.reason == "dry-run"
        assert result.rule.status == RuleStatus.ACTIVE
        assert autonomous.store.rules() == []
        assert autonomous.store.commits() == []

    def test_dry_run_reports_duplicate(self, manager):
        manager.add_rule("Prefer explicit imports")

        assert manager.add_rule("prefer explicit imports", dry_run=True).reason == "duplicate"

    def test_categories_and_provenance(self, manager):
        result = manager.add_rule(
            "Run git status before every commit", RuleOrigin.REFLECTION, ["s1", "s1", "s2"]
        )

        assert "git" in result.rule.categories
        assert result.rule.origin == RuleOrigin.REFLECTION
        assert result.rule.source_session_ids == ["s1", "s2"]


class TestApplyPendingProposals:
    def test_activates_oldest_first_within_capacity(self, rule_store, config):
        manager = RuleManager(rule_store, replace(config, max_active_rules=2))
        rule_store.max_active_rules = 2
        for i in range(3):
            manager.add_rule(_rule_text(i))

        diff = manager.apply_pending_proposals()

        assert [r.text for r in diff.activated] == [_rule_text(0), _rule_text(1)]
        assert [r.text for r in diff.deferred] == [_rule_text(2)]
        statuses = {r.text: r.status for r in rule_store.rules()}
        assert statuses[_rule_text(2)] == RuleStatus.PROPOSED
        assert rule_store.commits()[-1].message == "apply 2 proposal(s)"

    def test_one_commit_per_apply(self, manager, rule_store):
        for i in range(3):
            manager.add_rule(_rule_text(i))
        before = len(rule_store.commits())

        manager.apply_pending_proposals()

        assert len(rule_store.commits()) == before + 1
        assert len(rule_store.commits()[-1].changes) == 3

    def test_dry_run_returns_diff_without_mutation(self, manager, rule_store):
        manager.add_rule(_rule_text(0))
        version = rule_store.version()

        diff = manager.apply_pending_proposals(dry_run=True)

        assert diff.dry_run is True
        assert len(diff.activated) == 1
        assert rule_store.version() == version
        assert rule_store.rules()[0].status == RuleStatus.PROPOSED

    def test_nothing_to_apply_makes_no_commit(self, manager, rule_store):
        diff = manager.apply_pending_proposals()

        assert diff.activated == []
        assert diff.commit_id is None
        assert rule_store.commits() == []


class TestPruneStale:
    def test_old_unreinforced_rule_is_pruned(self, manager, rule_store):
        _seed(rule_store, _active("old", 61))
        _seed(rule_store, _active("young", 10))

        result = manager.prune_stale(NOW, 60, 1)

        assert [r.id for r in result.pruned] == ["old"]
        statuses = {r.id: r.status for r in rule_store.rules()}
        assert statuses == {"old": RuleStatus.PRUNED, "young": RuleStatus.ACTIVE}

    def test_reinforced_rule_survives(self, manager, rule_store):
        _seed(rule_store, _active("used", 61, count=3))

        assert manager.prune_stale(NOW, 60, 1).pruned == []

    def test_aging_rules_are_flagged(self, manager, rule_store):
        _seed(rule_store, _active("aging", 40))

        result = manager.prune_stale(NOW, 60, 1)

        assert [r.id for r in result.flagged] == ["aging"]
        assert result.commit_id is None

    def test_pruned_rules_stay_for_audit(self, manager, rule_store):
        _seed(rule_store, _active("old", 61))

        manager.prune_stale(NOW, 60, 1)

        assert manager.review(NOW).counts == {"proposed": 0, "active": 0, "pruned": 1}

    def test_prune_after_cap_is_lowered(self, tmp_path, config):
        path = tmp_path / "r.json"
        seeded = RuleStore(FileSystemDocumentBackend(path), max_active_rules=5)
        for i, days in enumerate([90, 1, 2, 3, 4]):
            _seed(seeded, _active(f"r{i}", days))

        store = RuleStore(FileSystemDocumentBackend(path), max_active_rules=2)
        manager = RuleManager(store, replace(config, max_active_rules=2))
        result = manager.prune_stale(NOW, 60, 1)

        assert [r.id for r in result.pruned] == ["r0"]
        assert manager.review(NOW).counts["active"] == 4

        # Still over the lowered cap: proposals can be staged, nothing more activates
        assert manager.add_rule("Keep secrets out of the repository").reason == "proposed"
        assert manager.apply_pending_proposals().activated == []


class TestReview:
    def test_counts_and_candidates(self, manager, rule_store):
        _seed(rule_store, _active("old", 70))
        _seed(rule_store, _active("young", 1))
        manager.add_rule("Keep secrets out of the repository")

        review = manager.review(NOW)

        assert review.counts == {"proposed": 1, "active": 2, "pruned": 0}
        assert [r.id for r in review.stale_prune_candidates] == ["old"]
        assert review.max_active_rules == 30


class TestRevert:
    def test_revert_add_removes_rule(self, manager, rule_store):
        added = manager.add_rule("Keep secrets out of the repository")

        commit = manager.revert(added.commit_id)

        assert rule_store.rules() == []
        assert commit.message.startswith(f"revert {added.commit_id}")

    def test_revert_prune_restores_active(self, manager, rule_store):
        _seed(rule_store, _active("old", 61))
        pruned = manager.prune_stale(NOW, 60, 1)

        manager.revert(pruned.commit_id)

        assert rule_store.rules()[0].status == RuleStatus.ACTIVE

    def test_unknown_commit(self, manager):
        with pytest.raises(KeyError):
            manager.revert("nope")

    def test_revert_that_breaks_capacity_is_refused(self, tmp_path, config):
        store = RuleStore(FileSystemDocumentBackend(tmp_path / "r.json"), max_active_rules=1)
        manager = RuleManager(store, replace(config, max_active_rules=1), mode="autonomous")
        manager.add_rule(_rule_text(0))
        pruned = manager.prune_stale(
            datetime.now(timezone.utc) + timedelta(days=1), staleness_days=0, min_reinforcement=1
        )
        manager.add_rule(_rule_text(1))
        version = store.version()

        # Restoring the pruned rule would make two active rules
        with pytest.raises(InvariantViolation):
            manager.revert(pruned.commit_id)

        assert store.version() == version

    def test_history_is_newest_first(self, manager):
        manager.add_rule(_rule_text(0))
        manager.add_rule(_rule_text(1))

        history = manager.history()

        assert [c.version for c in history] == [2, 1]


class TestFindDuplicate:
    def test_ignores_pruned(self):
        pruned = replace(_active("p", 1), status=RuleStatus.PRUNED)

        assert find_duplicate(pruned.text, [pruned], 0.85) is None

    def test_exact_normalized_match(self):
        rule = _active("a", 1)

        assert find_duplicate("  " + rule.text.upper() + "  ", [rule], 0.99) is rule


class TestSyncToVectorStore:
    def test_upserts_active_rules(self, autonomous, vector_store, llm):
        autonomous.add_rule("Keep secrets out of the repository")

        synced = autonomous.sync_to_vector_store(vector_store, llm)

        assert synced == 1
        (record,) = vector_store.collections["rules"].values()
        assert record.payload["text"] == "Keep secrets out of the repository"

    def test_embed_failure_is_skipped(self, autonomous, vector_store, llm):
        from distill.errors import ServiceTimeout

        autonomous.add_rule("Keep secrets out of the repository")
        llm.embed_error = ServiceTimeout("ollama")

        assert autonomous.sync_to_vector_store(vector_store, llm) == 0
